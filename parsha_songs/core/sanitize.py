import re
from urllib.parse import urlparse

TITLE_MAX_LENGTH = 200
URL_MAX_LENGTH = 2048
VERSE_REF_MAX_LENGTH = 60
ADDED_BY_MAX_LENGTH = 80
REFERENCE_ID_RE = re.compile(r"^[a-z0-9-]{2,50}$")

_ANGLE_BRACKETS_RE = re.compile(r"[<>]")


def clean_title(raw_title: str | None) -> str:
    """Trim a song title, drop angle brackets and clamp it to the column bound."""
    if raw_title is None:
        return ""
    return _ANGLE_BRACKETS_RE.sub("", raw_title.strip())[:TITLE_MAX_LENGTH].strip()


def clean_song_url(raw_url: str | None) -> str | None:
    """Return the trimmed url, or None when absent.

    Raises ValueError for anything that is not an absolute http(s) url.
    """
    if raw_url is None:
        return None
    candidate = raw_url.strip()
    if not candidate:
        return None
    if len(candidate) > URL_MAX_LENGTH:
        raise ValueError("url too long")

    parsed = urlparse(candidate)
    if parsed.scheme.lower() not in {"http", "https"} or not parsed.netloc:
        raise ValueError("url must be an absolute http(s) url")
    return candidate


def clean_optional_text(raw_value: str | None, *, max_length: int) -> str | None:
    if raw_value is None:
        return None
    stripped = raw_value.strip()
    if not stripped:
        return None
    return stripped[:max_length]
