"""
Input validation utilities for checkout contact fields.

pydantic enforces types and lengths on request bodies; these helpers add the
format checks and normalization the order records rely on.
"""
import re

from fastapi import HTTPException

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")
_PHONE_ALLOWED_RE = re.compile(r"^\+?[0-9 ()\-.]{7,25}$")
_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def validate_email_address(email: str) -> str:
    """
    Validate and lower-case an email address.

    Raises:
        HTTPException(400) if the address is malformed
    """
    if not email:
        raise HTTPException(status_code=400, detail="Email address is required")
    email = email.strip().lower()
    if len(email) > 320 or not _EMAIL_RE.match(email):
        raise HTTPException(status_code=400, detail=f"Invalid email address: {email[:40]}")
    return email


def normalize_phone(phone: str | None) -> str | None:
    """Strip formatting from a phone number; keeps a leading +."""
    if phone is None or not phone.strip():
        return None
    phone = phone.strip()
    if not _PHONE_ALLOWED_RE.match(phone):
        raise HTTPException(status_code=400, detail="Invalid phone number")
    digits = re.sub(r"[^0-9]", "", phone)
    if not 7 <= len(digits) <= 15:
        raise HTTPException(status_code=400, detail="Invalid phone number")
    return ("+" if phone.startswith("+") else "") + digits


def validate_slug(slug: str) -> str:
    if not _SLUG_RE.match(slug or ""):
        raise HTTPException(
            status_code=400,
            detail="Slug must be lowercase letters, digits and single hyphens",
        )
    return slug
