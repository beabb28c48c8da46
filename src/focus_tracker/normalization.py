"""Utilities to normalize domains and classify them against the site lists."""

from __future__ import annotations

import re
from typing import Iterable, Optional
from urllib.parse import urlsplit

from .errors import ValidationError
from .models import Category

_SCHEME_PATTERN = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)


def host_from_url(url: str) -> Optional[str]:
    """Return the lowercased host of ``url``, or None when it has none."""
    if not url:
        return None
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return None
    return host or None


def normalize_domain(value: Optional[str]) -> str:
    """Clean up a user-supplied domain entry.

    Accepts bare hosts as well as pasted URLs; raises ``ValidationError`` for
    anything that leaves nothing to match on.
    """
    if value is None:
        raise ValidationError("domain must not be empty")
    cleaned = value.strip().lower()
    if _SCHEME_PATTERN.match(cleaned):
        cleaned = host_from_url(cleaned) or ""
    cleaned = cleaned.split("/", 1)[0].strip(" .")
    if not cleaned:
        raise ValidationError("domain must not be empty")
    if re.search(r"\s", cleaned):
        raise ValidationError(f"invalid domain: {value!r}")
    return cleaned


def domain_matches(domain: str, entry: str) -> bool:
    """Bidirectional substring containment, as used for blocking."""
    if not domain or not entry:
        return False
    return entry in domain or domain in entry


def matches_any(domain: str, entries: Iterable[str]) -> bool:
    return any(domain_matches(domain, entry) for entry in entries)


def classify_domain(
    domain: str,
    productive_sites: Iterable[str],
    distracting_sites: Iterable[str],
) -> Category:
    """Classify ``domain``; productive entries take precedence."""
    if any(entry and entry in domain for entry in productive_sites):
        return Category.PRODUCTIVE
    if any(entry and entry in domain for entry in distracting_sites):
        return Category.DISTRACTING
    return Category.NEUTRAL
