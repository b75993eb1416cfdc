"""
Endpoint pattern matching.

Decides per URL whether an exchange is encrypted. Pattern shapes:
- '*'                     matches every URL
- '/api/*'                URL contains '/api'
- '/exact/path'           URL contains '/exact/path'
- '/path/{ignore}/items'  regex search, each {ignore} = one path segment

Every shape is a containment test, never a full-string match, so patterns
also hit URLs with a host prefix or a query string suffix.
"""

import re
from collections.abc import Iterable
from functools import lru_cache

from secure_fetch._logging import get_logger
from secure_fetch.constants import GLOB_SUFFIX, PLACEHOLDER_REGEX, PLACEHOLDER_TOKEN, WILDCARD_PATTERN

__all__ = [
    "compile_placeholder_pattern",
    "matches",
    "pattern_matches",
]

_logger = get_logger(__name__)


@lru_cache(maxsize=256)
def compile_placeholder_pattern(pattern: str) -> re.Pattern[str]:
    """
    Compile a '{ignore}' template into a search regex.

    Literal parts are escaped; each placeholder becomes one run of
    non-'/' characters.

    Example:
        'v1/{ignore}/users' -> r'v1/[^/]+/users'
    """
    literal_parts = pattern.split(PLACEHOLDER_TOKEN)
    return re.compile(PLACEHOLDER_REGEX.join(re.escape(part) for part in literal_parts))


def pattern_matches(url: str, pattern: str) -> bool:
    """Test a single pattern against a URL."""
    if pattern == WILDCARD_PATTERN:
        return True
    if pattern.endswith(GLOB_SUFFIX):
        return pattern[: -len(GLOB_SUFFIX)] in url
    if PLACEHOLDER_TOKEN in pattern:
        matched = compile_placeholder_pattern(pattern).search(url) is not None
        _logger.debug("Pattern %r %s for %s", pattern, "matched" if matched else "failed", url)
        return matched
    return pattern in url


def matches(url: str, include_patterns: Iterable[str], skip_patterns: Iterable[str] = ()) -> bool:
    """
    Decide whether a URL is subject to encryption.

    Skip-patterns take absolute precedence over include-patterns.

    Args:
        url: URL as seen by the client (absolute or relative)
        include_patterns: Patterns that enable encryption
        skip_patterns: Patterns that disable encryption

    Returns:
        True if some include-pattern matches and no skip-pattern does
    """
    if any(pattern_matches(url, pattern) for pattern in skip_patterns):
        _logger.debug("Skipped %s", url)
        return False
    return any(pattern_matches(url, pattern) for pattern in include_patterns)
