"""
auth/roles.py -- The single capability check.

Every privileged operation (impersonation, admin routes, CLI admin actions)
goes through require_role(). No module compares Subject.role inline.
"""

from __future__ import annotations

import logging
from typing import Protocol

from auth.models import Subject
from core.errors import InsufficientPrivilege

logger = logging.getLogger("sessionguard.roles")


class RoleStore(Protocol):
    """Read-only lookup of a subject's privilege level."""

    def get_subject(self, subject_id: str) -> Subject | None: ...


def require_role(role_store: RoleStore, subject_id: str, role: str) -> Subject:
    """Return the subject if it exists, is active, and holds `role`.

    Unknown, inactive, and under-privileged subjects all fail the same way so
    the caller learns only which role was required.
    """
    subject = role_store.get_subject(subject_id)
    if subject is None or not subject.is_active or subject.role != role:
        logger.warning("Role check failed: required=%s subject=%s...", role, subject_id[:8])
        raise InsufficientPrivilege(required_role=role)
    return subject
