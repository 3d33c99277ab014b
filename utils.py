#!/usr/bin/env python3
"""
Utility functions shared by the fetch pipeline, the search index and the API.
"""

from datetime import datetime, timezone
from typing import Optional
import calendar
import time

from bs4 import BeautifulSoup

from config import get_logger

# Module-specific logger
logger = get_logger("utils")


def validate_url(url: str) -> bool:
    """Validate if a string is a properly formatted http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    url = url.strip()
    if not url:
        return False

    return url.startswith(('http://', 'https://')) and len(url.split('://', 1)[1]) > 0


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def struct_time_to_datetime(value: Optional[time.struct_time]) -> Optional[datetime]:
    """Convert a UTC ``time.struct_time`` (as produced by feedparser) to an aware datetime."""
    if not value:
        return None
    try:
        return datetime.fromtimestamp(calendar.timegm(value), tz=timezone.utc)
    except (OverflowError, ValueError, OSError, TypeError) as e:
        logger.debug(f"Discarding unrepresentable date {value!r}: {e}")
        return None


def html_to_text(html_content: str) -> str:
    """Return the visible text of an HTML fragment.

    Plain text is returned unchanged; only strings that look like markup go
    through BeautifulSoup.
    """
    if not html_content:
        return ""
    if '<' not in html_content or '>' not in html_content:
        return html_content

    soup = BeautifulSoup(html_content, 'html.parser')
    for tag in soup(["script", "style"]):
        tag.decompose()
    return soup.get_text(" ")


def format_timestamp(value: Optional[datetime]) -> str:
    """Return a human-readable UTC timestamp for diagnostics."""
    if value is None or value.year == 1:
        return "never"
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")
