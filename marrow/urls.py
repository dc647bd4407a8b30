"""
URL normalization shared by the registry, the vault and the orchestrator.
"""

import re
from urllib.parse import urlsplit

from .exceptions import InvalidUrl
from .models import NormalizedUrl

_SCHEME = re.compile(r"^https?://", re.IGNORECASE)


def to_full_url(url: str) -> str:
    """Prefix a bare host/path with https:// so a browser can open it."""
    url = url.strip()
    if not url:
        raise InvalidUrl("URL is empty")
    return url if _SCHEME.match(url) else f"https://{url}"


def normalize_url(value: str) -> NormalizedUrl:
    """
    Reduce a URL to the registry key.

    Drops protocol, fragment, port and any leading ``www.`` labels, lowercases
    the host, keeps path and query, and strips a trailing slash from the path.
    IPv6 hosts stay bracketed so the key parses back to the same host.
    ``normalize_url(normalize_url(x).url) == normalize_url(x)`` holds for any
    accepted input.
    """
    if value is None:
        raise InvalidUrl("URL is empty")

    try:
        parts = urlsplit(to_full_url(value))
        host = parts.hostname
    except ValueError as e:
        raise InvalidUrl(f"Invalid URL '{value}': {e}") from e

    if not host:
        raise InvalidUrl(f"Invalid URL '{value}': no host")

    host = host.lower()
    if ":" in host:
        domain = f"[{host}]"
    else:
        domain = re.sub(r"^(www\.)+", "", host)
    if not domain:
        raise InvalidUrl(f"Invalid URL '{value}': no host")

    path = parts.path.rstrip("/")
    url = domain + path
    if parts.query:
        url += f"?{parts.query}"

    return NormalizedUrl(domain=domain, url=url)


def domain_of(value: str) -> str:
    return normalize_url(value).domain
