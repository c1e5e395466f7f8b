"""Deep Research - command line runner

Runs one research session and prints its progress events.
"""

import argparse
import asyncio

from deepresearch.agents.orchestrator import ResearchOrchestrator


async def run_research(
    query: str,
    force_complexity: str | None = None,
    max_rounds: int | None = None,
    use_llm_classification: bool = False,
):
    """Run research on the given query."""
    print(f"Research query: {query}")
    print("-" * 50)

    orchestrator = ResearchOrchestrator()

    async for event in orchestrator.research(
        query,
        force_complexity=force_complexity,
        max_rounds=max_rounds,
        use_llm_classification=use_llm_classification,
    ):
        event_type = event.event.value
        data = event.data

        if event_type == "classify":
            print(f"[*] Complexity: {data.get('complexity')} ({data.get('confidence', 0):.2f})")

        elif event_type == "plan":
            sub_questions = data.get("subQuestions", [])
            print(f"\n[*] Research Plan v{data.get('version')} ({len(sub_questions)} sub-questions):")
            for sq in sub_questions:
                print(f"  {sq.get('id')}. {sq.get('question', '')[:80]}")

        elif event_type == "round_start":
            print(f"\n[~] Starting round {data.get('round')}...")

        elif event_type == "search_start":
            print(f"  [~] Searching {data.get('subQuestionId')}...")

        elif event_type == "search_complete":
            print(f"  [+] {data.get('subQuestionId')} done: {data.get('citationsCount')} sources")

        elif event_type == "search_error":
            print(f"  [-] {data.get('subQuestionId')} failed: {data.get('error')}")

        elif event_type == "synthesize_start":
            print(f"\n[+] Synthesizing answer from {data.get('notesCount')} notes...")

        elif event_type == "synthesize_progress":
            print(".", end="", flush=True)

        elif event_type == "gap_found":
            print(f"\n  [?] Gap: {data.get('gap', {}).get('description')}")

        elif event_type == "research_complete":
            metrics = data.get("metrics", {})
            print(f"\n\n[*] Research Complete!")
            print(f"   Runtime: {data.get('totalTime')}ms")
            print(f"   Queries: {metrics.get('total_queries')}")
            print(f"   Cost: ${metrics.get('estimated_cost_usd', 0):.3f}")
            print(f"\n{'='*50}")
            print("ANSWER:")
            print(f"{'='*50}")
            print(data.get("answer", ""))
            citations = data.get("citations", [])
            if citations:
                print(f"\n{'='*50}")
                print("SOURCES:")
                for citation in citations:
                    print(f"  [{citation.get('display_number')}] {citation.get('title')} - {citation.get('url')}")

        elif event_type == "error":
            print(f"\n[!] Error: {data.get('message', 'Unknown error')}")


def main():
    parser = argparse.ArgumentParser(description="Deep Research Tool")
    parser.add_argument("--query", "-q", required=True, help="Research query")
    parser.add_argument(
        "--complexity",
        "-c",
        choices=["simple", "moderate", "complex"],
        help="Skip classification and force a complexity level",
    )
    parser.add_argument("--max-rounds", type=int, help="Maximum research rounds (default: from config)")
    parser.add_argument(
        "--llm-classify",
        action="store_true",
        help="Ask the LLM when heuristic classification is unsure",
    )

    args = parser.parse_args()

    asyncio.run(
        run_research(
            args.query,
            force_complexity=args.complexity,
            max_rounds=args.max_rounds,
            use_llm_classification=args.llm_classify,
        )
    )


if __name__ == "__main__":
    main()
