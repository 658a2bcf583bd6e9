"""
Document hash normalization and validation.
"""

import string

from shared.errors import ValidationError

HEX_DIGITS = frozenset(string.hexdigits.lower())
ALGORITHM_LENGTHS = {64: "sha256", 128: "sha512"}


def normalize(document_hash: str) -> str:
    return document_hash.strip().lower()


def validate_hash(document_hash: str) -> str:
    """Return the normalized hash or raise ValidationError."""
    if not isinstance(document_hash, str):
        raise ValidationError("Document hash must be a string")

    normalized = normalize(document_hash)
    if not normalized:
        raise ValidationError("Document hash is empty")

    if len(normalized) not in ALGORITHM_LENGTHS:
        raise ValidationError(
            "Document hash has the wrong length",
            details={"expected": sorted(ALGORITHM_LENGTHS), "actual": len(normalized)}
        )

    for position, character in enumerate(normalized):
        if character not in HEX_DIGITS:
            raise ValidationError(
                "Document hash contains a non-hex character",
                details={"position": position, "character": character}
            )

    return normalized
