"""Feature identifier derivation.

A feature id namespaces one pipeline run and its artifact directory. It is
derived from the triggering issue's title:

- Unicode is folded to its closest ASCII form ("Café" → "cafe")
- Text is lower-cased
- Every run of characters outside [a-z0-9] collapses to a single "-"
- Leading and trailing separators are trimmed

The function is total (any string yields a usable id), deterministic, and
idempotent: ``feature_id(feature_id(t)) == feature_id(t)``. Two issues whose
titles derive the same id are told apart by :func:`item_feature_id`.
"""

import re
import unicodedata

FEATURE_ID_SEPARATOR = "-"
FEATURE_ID_MAX_LENGTH = 80
FALLBACK_FEATURE_ID = "untitled"

_NON_ALPHANUMERIC = re.compile(r"[^a-z0-9]+")
_VALID_FEATURE_ID = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def feature_id(title: str) -> str:
    """Derive a path-safe feature id from an issue title.

    Args:
        title: The issue title. ``None`` and empty strings are accepted.

    Returns:
        A non-empty id made of ``[a-z0-9]`` groups joined by ``-``.

    Example:
        >>> feature_id("Add rate limiting to API endpoints")
        'add-rate-limiting-to-api-endpoints'
    """
    folded = unicodedata.normalize("NFKD", title or "")
    ascii_text = folded.encode("ascii", "ignore").decode("ascii").lower()

    slug = _NON_ALPHANUMERIC.sub(FEATURE_ID_SEPARATOR, ascii_text)
    slug = slug.strip(FEATURE_ID_SEPARATOR)

    if len(slug) > FEATURE_ID_MAX_LENGTH:
        slug = slug[:FEATURE_ID_MAX_LENGTH].rstrip(FEATURE_ID_SEPARATOR)

    return slug or FALLBACK_FEATURE_ID


def is_valid_feature_id(value: str) -> bool:
    """Check that a value is a feature id as produced by :func:`feature_id`."""
    if not isinstance(value, str) or len(value) > FEATURE_ID_MAX_LENGTH:
        return False
    return bool(_VALID_FEATURE_ID.match(value))


def item_feature_id(base: str, item_number: int) -> str:
    """Qualify a feature id with its issue number.

    Used when another issue's title already derived ``base``. The result
    stays within the length limit and remains a valid feature id.

    Example:
        >>> item_feature_id("untitled", 8)
        'untitled-8'
    """
    suffix = f"{FEATURE_ID_SEPARATOR}{item_number}"
    head = feature_id(base)[: FEATURE_ID_MAX_LENGTH - len(suffix)]
    return f"{head.rstrip(FEATURE_ID_SEPARATOR) or FALLBACK_FEATURE_ID}{suffix}"
