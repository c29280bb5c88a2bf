"""Helpers that keep upstream URLs and credentials readable but short in logs."""

from http.cookies import SimpleCookie, CookieError

__all__ = [
    "truncate_url",
    "cookie_names",
]


def truncate_url(url: str, limit: int = 120) -> str:
    """Shorten a URL for log lines, keeping the start where the host and path live."""
    if not url:
        return "-"
    if len(url) <= limit:
        return url
    return f"{url[:limit]}..."


def cookie_names(cookie_header: str | None) -> str:
    """Render a Cookie header as its cookie names only.

    Values are never logged; an unparseable header shows as '***'.
    """
    if not cookie_header:
        return "-"
    cookie = SimpleCookie()
    try:
        cookie.load(cookie_header)
    except CookieError:
        return "***"
    names = list(cookie.keys())
    if not names:
        return "***"
    return ",".join(names)
