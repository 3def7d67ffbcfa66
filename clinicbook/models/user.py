from enum import Enum

from sqlalchemy import Column
from sqlalchemy import Enum as SAEnum
from sqlmodel import Field, SQLModel


class UserRole(str, Enum):
    PATIENT = "patient"
    DOCTOR = "doctor"
    ADMIN = "admin"
    NURSE = "nurse"


PRACTITIONER_ROLES = (UserRole.DOCTOR, UserRole.ADMIN)
STAFF_ROLES = (UserRole.DOCTOR, UserRole.ADMIN, UserRole.NURSE)


class UserBase(SQLModel):
    email: str = Field(unique=True, index=True)
    full_name: str | None = None
    phone: str | None = None
    is_active: bool = Field(default=True, index=True)


class User(UserBase, table=True):
    """Accounts are owned by the identity service; this table mirrors what booking needs."""

    __tablename__ = "users"
    id: int | None = Field(default=None, primary_key=True)
    role: UserRole = Field(
        default=UserRole.PATIENT,
        sa_column=Column(
            SAEnum(UserRole, values_callable=lambda e: [m.value for m in e], native_enum=False, length=16),
            nullable=False,
            index=True,
        ),
    )

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES

