from __future__ import annotations
import sys
from pathlib import Path

import pytest

# Ensure project root on sys.path so 'supplydesk' package is importable when running pytest
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from supplydesk.core.v1.rules import (
    is_valid_email,
    is_valid_phone,
    is_valid_url,
    is_valid_postal_code,
)


@pytest.mark.parametrize("value,expected", [
    ("sales@acme.test", True),
    ("first.last+tag@sub.example.co.uk", True),
    ("a@b", False),
    ("not-an-email", False),
    ("a b@c.d", False),
    ("a@b c.d", False),
    ("", False),
])
def test_email(value, expected):
    assert is_valid_email(value) is expected


@pytest.mark.parametrize("value,expected", [
    ("+1 (555) 123-4567", True),
    ("5551234", True),
    ("555-CALL", False),
    ("555.123.4567", False),
    ("", False),
])
def test_phone(value, expected):
    assert is_valid_phone(value) is expected


@pytest.mark.parametrize("value,expected", [
    ("https://example.com", True),
    ("http://example.com:8080/path?q=1", True),
    ("mailto:sales@acme.test", True),
    ("example.com", False),
    ("http://", False),
    ("https://exa mple.com", False),
    ("https://example.com:99999", False),
    ("", False),
])
def test_url(value, expected):
    assert is_valid_url(value) is expected


@pytest.mark.parametrize("code,country,expected", [
    ("12345", "US", True),
    ("12345-6789", "US", True),
    ("1234", "US", False),
    ("K1A 0B1", "CA", True),
    ("K1A0B1", "CA", True),
    ("12345", "CA", False),
    ("M1 1AE", "UK", True),
    ("B33 8TH", "UK", True),
    ("12345", "UK", False),
    # Unknown countries use the loose 3-10 character fallback
    ("1234AB", "NL", True),
    ("12", "NL", False),
    ("ABCDEFGHIJK", "NL", False),
])
def test_postal_code_by_country(code, country, expected):
    assert is_valid_postal_code(code, country) is expected


def test_postal_code_country_is_case_insensitive_and_gb_aliases_uk():
    assert is_valid_postal_code("12345", " us ")
    assert is_valid_postal_code("M1 1AE", "gb")
    assert not is_valid_postal_code("12345", "GB")


def test_rules_never_raise_on_non_strings():
    for fn in (is_valid_email, is_valid_phone, is_valid_url):
        assert fn(None) is False
        assert fn(12345) is False
    assert is_valid_postal_code(12345, "US") is False
    assert is_valid_postal_code("12345", None) is True  # fallback pattern
