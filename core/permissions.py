"""
Role definitions and the mobile client's role gate.
"""
from __future__ import annotations

from typing import Any

ROLE_SYSTEM_ADMIN = "system_admin"
ROLE_DOCTOR = "doctor"
ROLE_NURSE = "nurse"
ROLE_MINISTRY_OFFICIAL = "ministry_official"
ROLE_HEALTHCARE_PROVIDER = "healthcare_provider"
ROLE_PATIENT = "patient"

ROLE_CHOICES = [
    (ROLE_SYSTEM_ADMIN, 'System Administrator'),
    (ROLE_DOCTOR, 'Doctor'),
    (ROLE_NURSE, 'Nurse'),
    (ROLE_MINISTRY_OFFICIAL, 'Ministry Official'),
    (ROLE_HEALTHCARE_PROVIDER, 'Healthcare Provider'),
    (ROLE_PATIENT, 'Patient'),
]

STAFF_ROLES = {ROLE_SYSTEM_ADMIN, ROLE_DOCTOR, ROLE_NURSE, ROLE_MINISTRY_OFFICIAL, ROLE_HEALTHCARE_PROVIDER}

# Only these roles may hold a session on the mobile client
MOBILE_ROLES = {ROLE_PATIENT}


def _role_of(user: Any) -> str | None:
    if user is None:
        return None
    if isinstance(user, dict):
        return user.get("role")
    return getattr(user, "role", None)


def has_mobile_access(user: Any) -> bool:
    """Allow a session on the mobile client only for mobile roles."""
    return _role_of(user) in MOBILE_ROLES


def is_staff_role(user: Any) -> bool:
    """Roles that belong on the admin dashboard rather than the mobile app."""
    return _role_of(user) in STAFF_ROLES
