"""Domain records exchanged with the REST backend.

The backend speaks Spanish field names (``_id``, ``correo``, ``estado`` ...).
Each model maps them to Python attribute names through pydantic aliases, so
``Model.model_validate(payload)`` accepts the wire format and
``to_wire()`` produces it again. Unknown fields are kept as extras, which
lets profile data the client does not model (phone, address ...) survive a
round trip through the local store.
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

logger = logging.getLogger(__name__)


class Role(str, Enum):
    ADMIN = "admin"
    USER = "user"


class LoanStatus(str, Enum):
    ACTIVE = "activo"
    RETURNED = "devuelto"
    OVERDUE = "vencido"


class ReturnStatus(str, Enum):
    ON_TIME = "a_tiempo"
    LATE = "retrasado"


class BookCondition(str, Enum):
    GOOD = "bueno"
    FAIR = "regular"
    DAMAGED = "dañado"
    LOST = "perdido"


Reference = Union[str, Dict[str, Any], None]


def ref_id(value: Reference) -> Optional[str]:
    """Return the id of a reference that may be a bare id or an embedded record."""
    if isinstance(value, dict):
        found = value.get("_id") or value.get("id")
        return str(found) if found is not None else None
    if value in (None, ""):
        return None
    return str(value)


def as_date(value: Union[date, datetime, None]) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    return value


class WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Identity(WireModel):
    """An authenticated user as held by the session store."""
    id: str = Field(alias="_id")
    name: str = Field("", alias="nombre")
    email: str = Field(alias="correo")
    role: Role = Field(Role.USER, alias="rol")
    created_at: Optional[str] = Field(None, alias="createdAt")

    @field_validator("role", mode="before")
    @classmethod
    def _known_role(cls, value: Any) -> Any:
        if isinstance(value, Role):
            return value
        normalized = str(value or "").strip().lower()
        if normalized in (Role.ADMIN.value, Role.USER.value):
            return normalized
        # Unknown roles get the least privileged one
        logger.warning(f"Unknown role {value!r}, treating as 'user'")
        return Role.USER.value


class Author(WireModel):
    id: str = Field(alias="_id")
    name: str = Field(alias="nombre")
    nationality: Optional[str] = Field(None, alias="nacionalidad")
    birth_date: Optional[datetime] = Field(None, alias="fechaNacimiento")
    website: Optional[str] = Field(None, alias="sitioWeb")
    biography: Optional[str] = Field(None, alias="biografia")
    image_url: Optional[str] = Field(None, alias="imagenUrl")


class Book(WireModel):
    id: str = Field(alias="_id")
    title: str = Field(alias="titulo")
    author: Reference = Field(None, alias="autor")
    genre: Optional[str] = Field(None, alias="genero")
    publication_year: Optional[int] = Field(None, alias="anioPublicacion")
    isbn: Optional[str] = None
    image_url: Optional[str] = Field(None, alias="imagenUrl")
    original_language: Optional[str] = Field(None, alias="idiomaOriginal")
    stock: int = Field(0, alias="existencias")
    status: Optional[str] = Field(None, alias="estado")


class Loan(WireModel):
    """A book lent to a borrower.

    ``return_date`` is the expected return date while the loan is active and
    the actual return date once a Return has been registered.
    """
    id: str = Field(alias="_id")
    borrower: Reference = Field(alias="usuario")
    book: Reference = Field(alias="libro")
    loan_date: Optional[datetime] = Field(None, alias="fechaPrestamo")
    return_date: Optional[datetime] = Field(None, alias="fechaDevolucion")
    status: LoanStatus = Field(LoanStatus.ACTIVE, alias="estado")

    @property
    def borrower_id(self) -> Optional[str]:
        return ref_id(self.borrower)

    @property
    def book_id(self) -> Optional[str]:
        return ref_id(self.book)

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE


class Return(WireModel):
    """The record finalizing a Loan."""
    id: str = Field(alias="_id")
    loan: Reference = Field(None, alias="prestamo")
    borrower: Reference = Field(None, alias="usuario")
    book: Reference = Field(None, alias="libro")
    actual_return_date: Optional[datetime] = Field(None, alias="fechaDevolucionReal")
    expected_return_date: Optional[datetime] = Field(None, alias="fechaDevolucionEsperada")
    status: ReturnStatus = Field(ReturnStatus.ON_TIME, alias="estado")
    condition: BookCondition = Field(BookCondition.GOOD, alias="condicionLibro")
    fine: Optional[float] = Field(None, alias="multa")
    notes: Optional[str] = Field(None, alias="observaciones")

    @field_validator("status", "condition", mode="before")
    @classmethod
    def _null_means_default(cls, value: Any, info: ValidationInfo) -> Any:
        if value is None:
            return cls.model_fields[info.field_name].default
        return value

    @property
    def loan_id(self) -> Optional[str]:
        return ref_id(self.loan)
