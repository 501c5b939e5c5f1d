from __future__ import annotations

STUDENT = "student"
COMMITTEE = "committee"
ADMIN = "admin"
SUPER_ADMIN = "super_admin"

ADMIN_ROLES = frozenset({ADMIN, SUPER_ADMIN})

ROLE_ALIASES: dict[str, str] = {
    "committee-delegate": COMMITTEE,
    "committee_delegate": COMMITTEE,
    "super-admin": SUPER_ADMIN,
    "superadmin": SUPER_ADMIN,
}


def normalize_role(role: str | None) -> str:
    if not role:
        return ""
    r = role.strip().lower()
    return ROLE_ALIASES.get(r, r)


def is_admin(role: str | None) -> bool:
    return normalize_role(role) in ADMIN_ROLES
