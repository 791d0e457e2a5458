"""URL helpers that keep credentials out of logs and error messages."""

from __future__ import annotations

from urllib.parse import unquote, urlsplit

import aiohttp


def sanitize_url(raw_url: str) -> str:
    """Strip user-info from a URL, leaving every other byte untouched.

    ``http://u:p@host/path`` becomes ``http://host/path``.
    """
    scheme_end = raw_url.find("://")
    if scheme_end < 0:
        return raw_url
    start = scheme_end + 3
    end = len(raw_url)
    for delimiter in "/?#":
        index = raw_url.find(delimiter, start)
        if index != -1 and index < end:
            end = index
    at = raw_url.rfind("@", start, end)
    if at == -1:
        return raw_url
    return raw_url[:start] + raw_url[at + 1 :]


def split_credentials(raw_url: str) -> tuple[str, aiohttp.BasicAuth | None]:
    """Separate embedded credentials from a URL.

    Returns:
        Tuple of (URL without user-info, BasicAuth or None).
    """
    parts = urlsplit(raw_url)
    if parts.username is None:
        return raw_url, None
    auth = aiohttp.BasicAuth(unquote(parts.username), unquote(parts.password or ""))
    return sanitize_url(raw_url), auth
