from __future__ import annotations

PLACEHOLDER_URL = "chrome://newtab/"

IGNORED_URLS = frozenset({PLACEHOLDER_URL, "about:blank"})
IGNORED_PREFIXES = ("chrome-devtools://", "devtools://")


def normalize_url(url: str | None) -> str:
    # Stripping fragments here proved unsafe; comparisons stay exact.
    return url if url else ""


def should_ignore_url(url: str | None) -> bool:
    if not url:
        return True
    if url in IGNORED_URLS:
        return True
    return url.startswith(IGNORED_PREFIXES)


def strip_fragment(url: str | None) -> str:
    if not url:
        return ""
    pos = url.find("#")
    return url[:pos] if pos >= 0 else url


def first_syncable(urls: list[str | None]) -> str | None:
    for url in urls:
        if not should_ignore_url(url):
            return url
    return None
