# pos_client/roles.py

from __future__ import annotations

from typing import Iterable, Optional


# =========================================================
# ROLE CONSTANTS
# =========================================================
ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_CASHIER = "cashier"
ROLE_USER = "user"

DEFAULT_ROLE = ROLE_USER

# The super-role: holding it satisfies every required role or capability.
SUPER_ROLES = frozenset({ROLE_ADMIN})


def role_from_claims(user_metadata: Optional[dict], app_metadata: Optional[dict]) -> str:
    """user_metadata.role wins over app_metadata.role; unknown users are plain users."""
    for claims in (user_metadata, app_metadata):
        role = (claims or {}).get("role")
        if role:
            return str(role)
    return DEFAULT_ROLE


def has_capability(role: Optional[str], required: str) -> bool:
    if not role:
        return False
    if role in SUPER_ROLES:
        return True
    return role == required


def has_any_capability(role: Optional[str], required: Iterable[str]) -> bool:
    if not role:
        return False
    if role in SUPER_ROLES:
        return True
    return role in set(required)
