"""
Client-side name filtering for principal lookups.

A filter string containing ``*`` or ``?`` switches to glob matching;
any other non-empty string must match exactly. An empty or absent filter
returns the full listing.
"""

from fnmatch import fnmatchcase
from typing import Callable, Iterable, List, Optional, TypeVar

T = TypeVar('T')

WILDCARD_CHARACTERS = ('*', '?')


def has_wildcard(pattern: Optional[str]) -> bool:
    return bool(pattern) and any(ch in pattern for ch in WILDCARD_CHARACTERS)


def name_matches(name: str, pattern: Optional[str]) -> bool:
    """Return True if ``name`` is selected by ``pattern``."""
    if not pattern:
        return True
    if has_wildcard(pattern):
        return fnmatchcase(name, pattern)
    return name == pattern


def filter_by_name(items: Iterable[T], pattern: Optional[str],
                   key: Callable[[T], str] = lambda item: item.name) -> List[T]:
    """
    Filter a listing by name.

    Args:
        items: Full listing returned by the remote call
        pattern: Exact name, glob pattern, or None/'' for everything
        key: Extracts the candidate name from an item

    Returns:
        Items selected by the pattern, in listing order
    """
    return [item for item in items if name_matches(key(item), pattern)]
