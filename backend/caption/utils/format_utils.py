"""
Formatting helpers for API responses and logs.
"""

from urllib.parse import urlsplit, urlunsplit


def format_views(views: int | str | None) -> str:
    """
    Format a view count compactly: 999, 1.2K, 3M, 1.5B.

    Values that are not numbers are returned unchanged.

    Args:
        views: View count as reported by the upstream

    Returns:
        Human-readable count
    """
    if views is None:
        return ""
    try:
        num = int(views)
    except (TypeError, ValueError):
        return str(views)

    for threshold, suffix in ((1_000_000_000, "B"), (1_000_000, "M"), (1_000, "K")):
        if num >= threshold:
            # One decimal, then drop a trailing ".0"
            formatted = f"{num / threshold:.1f}"
            if formatted.endswith(".0"):
                formatted = formatted[:-2]
            return f"{formatted}{suffix}"

    return str(num)


def seconds_to_timestamp(seconds: float) -> str:
    """
    Format seconds as MM:SS, or HH:MM:SS from one hour on.

    Args:
        seconds: Offset in seconds (fractions are truncated)

    Returns:
        Timestamp string
    """
    total = int(max(0.0, seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)

    if hours > 0:
        return f"{hours:02d}:{minutes:02d}:{secs:02d}"
    return f"{minutes:02d}:{secs:02d}"


def mask_proxy_url(url: str | None) -> str:
    """
    Hide credentials in a proxy URL for logs and status output.

    Args:
        url: Proxy URL, or None for a direct connection

    Returns:
        URL with the password replaced by '***', or 'direct'
    """
    if not url:
        return "direct"

    parts = urlsplit(url)
    if not parts.username and not parts.password:
        return url

    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    userinfo = f"{parts.username}:***" if parts.password else f"{parts.username}"
    return urlunsplit((parts.scheme, f"{userinfo}@{host}", parts.path, parts.query, parts.fragment))
