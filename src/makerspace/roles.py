from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, field_validator


class Role(StrEnum):
    PARTICIPANT = "participant"
    TENDER = "tender"
    OPERATOR = "operator"


# Legacy role names still issued by older accounts
LEGACY_ROLES: dict[str, Role] = {
    "guest": Role.PARTICIPANT,
    "member": Role.PARTICIPANT,
    "certified": Role.PARTICIPANT,
    "instructor": Role.PARTICIPANT,
    "steward": Role.PARTICIPANT,
    "admin": Role.TENDER,
    "superadmin": Role.OPERATOR,
    "participant": Role.PARTICIPANT,
    "tender": Role.TENDER,
    "operator": Role.OPERATOR,
}


def normalize_role(role: str | None) -> Role:
    if not role:
        return Role.PARTICIPANT
    return LEGACY_ROLES.get(role.strip().lower(), Role.PARTICIPANT)


class Identity(BaseModel):
    user_id: str = Field(..., min_length=1)
    email: str | None = None
    role: Role = Role.PARTICIPANT
    certifications: frozenset[str] = frozenset()
    # Resource ids a tender manages; empty means all of them
    tool_grants: frozenset[str] = frozenset()

    @field_validator("role", mode="before")
    @classmethod
    def _normalize(cls, value: object) -> Role:
        return normalize_role(value if isinstance(value, str) else None)

    @property
    def is_tender(self) -> bool:
        return self.role in (Role.TENDER, Role.OPERATOR)

    @property
    def is_operator(self) -> bool:
        return self.role is Role.OPERATOR

    def can_manage(self, resource_id: str) -> bool:
        if self.is_operator:
            return True
        if self.role is not Role.TENDER:
            return False
        return not self.tool_grants or resource_id in self.tool_grants

    def holds(self, certification_id: str | None) -> bool:
        return certification_id is None or certification_id in self.certifications
