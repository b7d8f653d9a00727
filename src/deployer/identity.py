"""Caller identity resolution.

Session issuance lives outside this service; a bearer token is accepted
when it is a well-formed user identity string.
"""

import re

from .errors import ValidationError

USER_ID_PATTERN = re.compile(r"^user_[A-Za-z0-9_-]+$")
INSTANCE_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def is_valid_user_id(user_id: str | None) -> bool:
    return bool(user_id) and USER_ID_PATTERN.match(user_id) is not None


def validate_user_id(user_id: str | None) -> str:
    """Return ``user_id`` unchanged or raise ``ValidationError``."""
    if not is_valid_user_id(user_id):
        raise ValidationError("Invalid userId - must be a valid user ID (user_...)")
    return user_id


def resolve_identity(token: str | None) -> str | None:
    """Resolve a bearer token to a stable caller identity, or ``None``."""
    if token is None:
        return None
    candidate = token.strip()
    return candidate if is_valid_user_id(candidate) else None


def is_valid_instance_id(instance_id: str | None) -> bool:
    return bool(instance_id) and INSTANCE_ID_PATTERN.match(instance_id) is not None
