"""
Shared text utilities for the Inbox Matching Engine

Helpers used by several components: log sanitization and the small text
normalizations applied before embedding.
"""

import re
from typing import Optional
from urllib.parse import urlparse


def sanitize_for_logging(text: str) -> str:
    """Sanitize user input for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.

    Args:
        text: User input text

    Returns:
        Sanitized text safe for logging
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500] if len(sanitized) > 500 else sanitized


def extract_domain(website: Optional[str]) -> Optional[str]:
    """Return the bare host of a website field ("www.acme.com/x" -> "acme.com")."""
    if not website or not website.strip():
        return None
    value = website.strip()
    if '://' not in value:
        value = f"http://{value}"
    host = urlparse(value).hostname
    if not host:
        return None
    return host[4:] if host.startswith('www.') else host
