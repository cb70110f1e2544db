"""ISRC validation and deterministic point identifiers."""

from __future__ import annotations

import hashlib
import re

from .errors import InvalidIdentifier

__all__ = ["ID_NAMESPACE", "validate_isrc", "normalize_isrc", "derive_id"]

ID_NAMESPACE = "6ba7b810-9dad-11d1-80b4-00c04fd430c8"

_ISRC_PATTERN = re.compile(r"[A-Za-z0-9]{12}")


def validate_isrc(value: object) -> bool:
    """Return ``True`` when ``value`` is exactly 12 ASCII alphanumeric characters."""
    return isinstance(value, str) and _ISRC_PATTERN.fullmatch(value) is not None


def normalize_isrc(value: object) -> str:
    """Return the uppercase ISRC or raise :class:`InvalidIdentifier`."""
    if not validate_isrc(value):
        raise InvalidIdentifier(value)
    return value.upper()  # type: ignore[union-attr]


def derive_id(isrc: object) -> str:
    """Return the UUID-shaped index key for ``isrc``.

    Args:
        isrc: Track identifier in any letter case.

    Returns:
        The first 128 bits of ``sha256(namespace + ISRC)`` rendered as
        ``8-4-4-4-12`` lowercase hex, which the vector store accepts as a
        point id.

    Raises:
        InvalidIdentifier: If ``isrc`` is not a valid ISRC.
    """
    normalized = normalize_isrc(isrc)
    digest = hashlib.sha256(f"{ID_NAMESPACE}{normalized}".encode("utf-8")).hexdigest()
    return f"{digest[0:8]}-{digest[8:12]}-{digest[12:16]}-{digest[16:20]}-{digest[20:32]}"
