"""
captionai/features/entitlements/identity.py
Email -> identity normalization shared by every entry point.
"""

from typing import Optional

MAX_IDENTITY_LENGTH = 320


def normalize_identity(email: Optional[str]) -> str:
    """
    Normalize an email into the account key used by entitlements and billing.

    Lowercases and trims, so "Foo@Bar.com" and " foo@bar.com " map to one record.

    Raises:
        ValueError: If the value is empty or does not look like an email
    """
    if email is None:
        raise ValueError("email is required")
    normalized = str(email).strip().lower()
    if not normalized:
        raise ValueError("email is required")
    if not is_valid_identity(normalized):
        raise ValueError("email is not a valid address")
    return normalized


def is_valid_identity(identity: str) -> bool:
    """Check if an already-normalized identity has a plausible email shape"""
    if len(identity) > MAX_IDENTITY_LENGTH or any(ch.isspace() for ch in identity):
        return False
    local, sep, domain = identity.rpartition("@")
    return bool(sep and local and domain)


def try_normalize_identity(email: Optional[str]) -> Optional[str]:
    """Normalize, returning None instead of raising (billing payloads)."""
    try:
        return normalize_identity(email)
    except ValueError:
        return None
