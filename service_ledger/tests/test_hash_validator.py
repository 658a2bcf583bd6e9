"""
Unit tests for document hash validation.
"""

import hashlib

import pytest

from service_ledger.app.hash_validator import validate_hash
from shared.errors import ValidationError

SHA256 = hashlib.sha256(b"doc").hexdigest()
SHA512 = hashlib.sha512(b"doc").hexdigest()


def test_accepts_sha256_and_sha512():
    assert validate_hash(SHA256) == SHA256
    assert validate_hash(SHA512) == SHA512


def test_normalizes_case_and_whitespace():
    assert validate_hash(f"  {SHA256.upper()}\n") == SHA256


@pytest.mark.parametrize("value", ["", "   ", SHA256[:-1], SHA256 + "0", SHA512 + "ab"])
def test_rejects_bad_length(value):
    with pytest.raises(ValidationError) as exc_info:
        validate_hash(value)

    assert exc_info.value.http_status == 400


def test_reports_position_of_non_hex_character():
    value = SHA256[:10] + "g" + SHA256[11:]

    with pytest.raises(ValidationError) as exc_info:
        validate_hash(value)

    assert exc_info.value.details == {"position": 10, "character": "g"}


def test_rejects_non_string():
    with pytest.raises(ValidationError):
        validate_hash(None)
