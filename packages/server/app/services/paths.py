"""
Path helpers: phone-number normalisation and email address checks.
"""

from __future__ import annotations

import re
from typing import Optional

from email_validator import EmailNotValidError, validate_email

E164_PATTERN = re.compile(r"^\+\d+$")
PLAIN_NUMBER_PATTERN = re.compile(r"^\d+$")
NUMBER_AT_DOMAIN_PATTERN = re.compile(r"^(?P<number>\d+)@(?P<domain>.+)$")


def e164_representation(path: str, default_country_code: str) -> Optional[str]:
    """Best-effort E.164 form of an SMS path.

    ``+15551234567`` is returned unchanged; ``5551234567`` and
    ``5551234567@txt.example.com`` get the default country code prefixed.
    Anything else has no representation.
    """
    if E164_PATTERN.match(path):
        return path

    domain_match = NUMBER_AT_DOMAIN_PATTERN.match(path)
    if domain_match:
        number = domain_match.group("number")
    elif PLAIN_NUMBER_PATTERN.match(path):
        number = path
    else:
        return None

    return f"+{default_country_code}{number}"


def otp_impaired(path_type: str, path: str, default_country_code: str) -> bool:
    """True for SMS paths outside the default country (OTP delivery is unreliable)."""
    if path_type != "sms":
        return False
    e164 = e164_representation(path, default_country_code)
    if not e164:
        return False
    return not e164.removeprefix("+").startswith(default_country_code)


def email_domain(path: str) -> Optional[str]:
    """The lower-cased domain of a syntactically valid address, else None."""
    try:
        result = validate_email(path, check_deliverability=False)
    except EmailNotValidError:
        return None
    return result.domain.lower()
