from __future__ import annotations

import re
import unicodedata
from typing import Optional

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128
MAX_DISPLAY_NAME_LENGTH = 100
MAX_PROFILE_IMAGE_REF_LENGTH = 2048

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")

_ZERO_WIDTH = "\u200b\u200c\u200d\ufeff"
_BIDI_OVERRIDES = frozenset(
    [chr(c) for c in range(0x202A, 0x202F)] + [chr(c) for c in range(0x2066, 0x206A)]
)


def normalize_unicode(value: str) -> str:
    """Drop zero-width and bidi override characters, then apply NFKC.

    Both are used to make two visually identical strings compare unequal.
    """
    cleaned = "".join(
        c for c in value if c not in _ZERO_WIDTH and c not in _BIDI_OVERRIDES
    )
    return unicodedata.normalize("NFKC", cleaned)


def normalize_email(value: str) -> str:
    """Canonical form used for storage and every lookup."""
    return normalize_unicode(value or "").strip().lower()


def validate_email(value: str) -> str:
    """Return the normalized address or raise ``ValueError``."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


def validate_password(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("password must be a string")
    if len(value) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        raise ValueError(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    return value


def validate_display_name(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("display name must be a string")
    cleaned = normalize_unicode(value).strip()
    if not cleaned:
        raise ValueError("display name is required")
    if len(cleaned) > MAX_DISPLAY_NAME_LENGTH:
        raise ValueError(
            f"display name must be at most {MAX_DISPLAY_NAME_LENGTH} characters"
        )
    return cleaned


def validate_profile_image_ref(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    cleaned = value.strip()
    if not cleaned:
        return None
    if len(cleaned) > MAX_PROFILE_IMAGE_REF_LENGTH:
        raise ValueError("profile image reference too long")
    return cleaned
