from enum import Enum

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    STUDENT = "student"
    GURU = "guru"
    ADMIN = "admin"


class Principal(BaseModel):
    """Authenticated caller as asserted by the identity provider's token."""

    model_config = ConfigDict(frozen=True)

    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN

    @property
    def is_guru(self) -> bool:
        return self.role == Role.GURU
