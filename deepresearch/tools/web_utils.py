from __future__ import annotations

from urllib.parse import urlparse, urlunparse


def is_valid_url(url: str) -> bool:
    """Basic URL validation."""
    try:
        result = urlparse(url)
        # Raises on an out-of-range port.
        result.port
        return all([result.scheme in ("http", "https"), result.netloc])
    except ValueError:
        return False


def extract_domain(url: str) -> str:
    """Extract the display domain (no port, no leading www.)."""
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        return ""
    host = host.lower()
    if host.startswith("www."):
        host = host[4:]
    return host


def normalize_url(url: str) -> str:
    """Canonical form used to deduplicate citations.

    Lower-cases scheme and host, drops a leading www., the fragment, default
    ports and trailing slashes. Query strings are kept.
    """
    raw = (url or "").strip()
    try:
        parsed = urlparse(raw)
        port = parsed.port
    except ValueError:
        return raw.lower()
    if not parsed.netloc:
        return raw.lower()
    scheme = "https" if parsed.scheme.lower() in ("http", "https") else parsed.scheme.lower()
    host = extract_domain(raw)
    if port and port not in (80, 443):
        host = f"{host}:{port}"
    path = parsed.path.rstrip("/")
    return urlunparse((scheme, host, path, "", parsed.query, ""))


def favicon_url(domain: str) -> str:
    return f"https://www.google.com/s2/favicons?domain={domain}&sz=32"
