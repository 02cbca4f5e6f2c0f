import uuid
from dataclasses import dataclass
from typing import Optional

from signoff.domain.enums import ELEVATED_ROLES, Role, role_rank


def _as_uuid(value) -> Optional[uuid.UUID]:
    if value is None or value == "":
        return None
    if isinstance(value, uuid.UUID):
        return value
    return uuid.UUID(str(value))


@dataclass(frozen=True)
class Actor:
    """The authenticated caller, as resolved from the access token."""

    user_id: uuid.UUID
    organisation_id: uuid.UUID
    role: Role
    branch_id: Optional[uuid.UUID] = None
    email: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: dict) -> "Actor":
        return cls(
            user_id=_as_uuid(claims["user_id"]),
            organisation_id=_as_uuid(claims["organisation_id"]),
            role=Role(claims["role"]),
            branch_id=_as_uuid(claims.get("branch_id")),
            email=claims.get("email"),
        )

    @property
    def is_elevated(self) -> bool:
        return self.role in ELEVATED_ROLES

    @property
    def rank(self) -> int:
        return role_rank(self.role)
