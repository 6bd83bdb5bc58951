# backend/recon/services/url_rules.py
"""
URL helpers for source scraping

- Structured platforms whose useful content sits in one region of the page
- Search-engine redirect links that point into such a platform
"""

from typing import Iterable, Optional
from urllib.parse import parse_qs, unquote, urlparse

# host suffix -> CSS selector of the content region
CONTENT_REGIONS = {
    "linkedin.com": "main",
}

PROFILE_PLATFORMS = ("linkedin.com",)

# search engine host -> query parameters that may carry the destination
REDIRECT_PARAMS = {
    "google.": ("url", "q"),
    "bing.com": ("u", "url"),
    "duckduckgo.com": ("uddg",),
}


def host_of(url: str) -> str:
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def _host_matches(host: str, suffix: str) -> bool:
    return host == suffix or host.endswith("." + suffix)


def content_selector(url: str) -> Optional[str]:
    """Selector of the content region to extract, or None for the whole document"""
    host = host_of(url)
    for suffix, selector in CONTENT_REGIONS.items():
        if _host_matches(host, suffix):
            return selector
    return None


def redirect_destination(url: str) -> Optional[str]:
    """Destination of a search-engine redirect link, if this is one"""
    parsed = urlparse(url)
    host = host_of(url)
    params = parse_qs(parsed.query)

    for engine, names in REDIRECT_PARAMS.items():
        if engine in host:
            for name in names:
                values = params.get(name)
                if values and values[0].startswith("http"):
                    return unquote(values[0])
    return None


def profile_platform(url: str) -> Optional[str]:
    host = host_of(url)
    for platform in PROFILE_PLATFORMS:
        if _host_matches(host, platform):
            return platform
    return None


def substitute_profile_url(url: str, known_profiles: Iterable[str]) -> Optional[str]:
    """
    A directly known profile URL to scrape instead of a search redirect.

    Only applies when the link is a search-engine redirect into a profile
    platform and a mapped contact has a profile on that same platform.
    """
    destination = redirect_destination(url)
    platform = profile_platform(destination) if destination else None
    if platform is None:
        return None

    for profile in known_profiles:
        if profile and profile_platform(profile) == platform:
            return profile
    return None
