from __future__ import annotations
import re
from typing import Callable, Dict
from urllib.parse import urlsplit

# -------------------------------
# Field rule library
# -------------------------------
# Stateless shape checks on a single value. Every predicate returns a bool and
# never raises; non-string input is simply not well-formed.

EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
PHONE_RE = re.compile(r"[\d\s\-+()]+", re.ASCII)
SCHEME_RE = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*", re.ASCII)

# Schemes whose URLs must carry a host (scheme://host/...)
AUTHORITY_SCHEMES = {"http", "https", "ftp", "ftps", "ws", "wss"}

POSTAL_CODE_PATTERNS: Dict[str, re.Pattern] = {
    "US": re.compile(r"\d{5}(-\d{4})?", re.ASCII),
    "CA": re.compile(r"[A-Z]\d[A-Z]\s?\d[A-Z]\d", re.ASCII),
    "UK": re.compile(r"[A-Z]{1,2}\d{1,2}\s?\d[A-Z]{2}", re.ASCII),
}
# ISO 3166 code for the United Kingdom
POSTAL_CODE_PATTERNS["GB"] = POSTAL_CODE_PATTERNS["UK"]

# Unknown countries fall back to a deliberately loose pattern.
DEFAULT_POSTAL_CODE_RE = re.compile(r"[\w\s-]{3,10}", re.ASCII)


def is_valid_email(s) -> bool:
    if not isinstance(s, str):
        return False
    return EMAIL_RE.fullmatch(s) is not None


def is_valid_phone(s) -> bool:
    if not isinstance(s, str):
        return False
    return PHONE_RE.fullmatch(s) is not None


def is_valid_url(s) -> bool:
    """Return True when s is an absolute URL with a scheme.

    Authority-based schemes (http, https, ftp, ws...) also need a host.
    """
    if not isinstance(s, str) or not s:
        return False
    scheme, sep, rest = s.partition(":")
    if not sep or not rest or SCHEME_RE.fullmatch(scheme) is None:
        return False
    try:
        parts = urlsplit(s)
        # Accessing .port validates the port number
        parts.port
    except ValueError:
        return False
    if parts.scheme.lower() in AUTHORITY_SCHEMES:
        host = parts.hostname or ""
        if not host or any(ch.isspace() for ch in parts.netloc):
            return False
    return True


def is_valid_postal_code(s, country) -> bool:
    """Check a postal code against the pattern for country.

    Country codes are matched case-insensitively (US, CA, UK/GB); anything else
    uses the generic 3-10 character fallback.
    """
    if not isinstance(s, str):
        return False
    code = country.strip().upper() if isinstance(country, str) else ""
    pattern = POSTAL_CODE_PATTERNS.get(code, DEFAULT_POSTAL_CODE_RE)
    return pattern.fullmatch(s) is not None


# Name -> predicate for single-value rules that rule sets may bind to a field.
# postal_code is bound separately since it needs the country as well.
FORMAT_RULES: Dict[str, Callable[[object], bool]] = {
    "email": is_valid_email,
    "phone": is_valid_phone,
    "url": is_valid_url,
}
