"""
Site host helpers. Templates are scoped by the hostname of the page they were captured on.
"""

import logging
from typing import Optional
from urllib.parse import urlsplit

from errors import ValidationError

logger = logging.getLogger(__name__)


def host_from_url(url: str) -> Optional[str]:
    """Return the hostname of url, or None when it has none."""
    try:
        host = urlsplit(url).hostname
    except ValueError as exc:
        logger.error("Invalid URL %r: %s", url, exc)
        return None
    return host or None


def normalize_host(value: str) -> str:
    """
    Accept a page URL or a bare hostname and return the hostname.

    Raises:
        ValidationError: no hostname can be derived
    """
    value = (value or "").strip()
    if "://" in value:
        host = host_from_url(value)
    else:
        host = host_from_url("//" + value) if value else None
    if not host:
        raise ValidationError(f"cannot derive a host from {value!r}")
    return host
