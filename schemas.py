"""
Request schemas for the AutoParc API

One pydantic model per request body. JSON keys are camelCase (the aliases);
every failing field is reported at once by the validation handler.
"""
import re
from datetime import datetime
from typing import Annotated, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, StringConstraints, field_validator, model_validator
from pydantic.alias_generators import to_camel

from models import (
    PHONE_PATTERN,
    ContactPriority,
    ContactStatus,
    ContactType,
    DocumentType,
    FuelType,
    Role,
    Transmission,
    VehicleCategory,
    VehicleStatus,
    utcnow,
)

PASSWORD_RULE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")


def Text(min_length: Optional[int] = None, max_length: Optional[int] = None):
    return Annotated[str, StringConstraints(strip_whitespace=True, min_length=min_length, max_length=max_length)]


Phone = Annotated[str, StringConstraints(strip_whitespace=True, pattern=PHONE_PATTERN)]
Tag = Text(1, 50)


def check_password_strength(value: str) -> str:
    if len(value) < 6:
        raise ValueError("Le mot de passe doit contenir au moins 6 caractères")
    if not PASSWORD_RULE.match(value):
        raise ValueError("Le mot de passe doit contenir au moins une minuscule, une majuscule et un chiffre")
    return value


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Auth ----------

class RegisterRequest(RequestModel):
    name: Text(2, 50)
    email: EmailStr
    password: str
    company: Optional[Text(max_length=100)] = None
    phone: Optional[Phone] = None

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return check_password_strength(v)


class LoginRequest(RequestModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class ForgotPasswordRequest(RequestModel):
    email: EmailStr


class NewPasswordRequest(RequestModel):
    password: str
    confirm_password: Optional[str] = None

    @field_validator("password")
    @classmethod
    def strong_password(cls, v: str) -> str:
        return check_password_strength(v)

    @model_validator(mode="after")
    def passwords_match(self):
        if self.confirm_password is not None and self.confirm_password != self.password:
            raise ValueError("Les mots de passe ne correspondent pas")
        return self


class ChangePasswordRequest(NewPasswordRequest):
    current_password: str = Field(..., min_length=1)


class ProfileUpdate(RequestModel):
    name: Optional[Text(2, 50)] = None
    company: Optional[Text(max_length=100)] = None
    phone: Optional[Phone] = None


# ---------- Users (admin) ----------

class UserCreate(RegisterRequest):
    role: Role = "user"


class UserUpdate(ProfileUpdate):
    email: Optional[EmailStr] = None
    role: Optional[Role] = None


class RoleUpdate(RequestModel):
    role: Role


# ---------- Vehicles ----------

class SpecificationsIn(RequestModel):
    engine: Optional[Text(max_length=100)] = None
    transmission: Optional[Transmission] = None
    fuel_type: Optional[FuelType] = None
    mileage: Optional[int] = Field(None, ge=0)
    color: Optional[Text(max_length=50)] = None
    doors: Optional[int] = Field(None, ge=2, le=5)
    seats: Optional[int] = Field(None, ge=2, le=9)


class LocationIn(RequestModel):
    address: Optional[Text(max_length=200)] = None
    city: Optional[Text(max_length=100)] = None
    postal_code: Optional[Text(max_length=20)] = None


class VehicleIn(RequestModel):
    brand: Text(2, 50)
    model: Text(2, 100)
    year: int = Field(..., ge=1900)
    price: float = Field(..., ge=0)
    price_eur: Optional[float] = Field(None, ge=0, alias="priceEUR")
    category: VehicleCategory
    description: Optional[Text(max_length=1000)] = None
    status: Optional[VehicleStatus] = None
    specifications: Optional[SpecificationsIn] = None
    location: Optional[LocationIn] = None

    @field_validator("year")
    @classmethod
    def year_not_in_future(cls, v: int) -> int:
        if v > utcnow().year + 1:
            raise ValueError("L'année doit être comprise entre 1900 et l'année prochaine")
        return v


class VehicleUpdate(RequestModel):
    brand: Optional[Text(2, 50)] = None
    model: Optional[Text(2, 100)] = None
    year: Optional[int] = Field(None, ge=1900)
    price: Optional[float] = Field(None, ge=0)
    price_eur: Optional[float] = Field(None, ge=0, alias="priceEUR")
    category: Optional[VehicleCategory] = None
    description: Optional[Text(max_length=1000)] = None
    specifications: Optional[SpecificationsIn] = None
    location: Optional[LocationIn] = None

    @field_validator("year")
    @classmethod
    def year_not_in_future(cls, v: Optional[int]) -> Optional[int]:
        if v is not None and v > utcnow().year + 1:
            raise ValueError("L'année doit être comprise entre 1900 et l'année prochaine")
        return v


class VehicleStatusUpdate(RequestModel):
    status: VehicleStatus
    details: Optional[Text(max_length=500)] = None


class HistoryIn(RequestModel):
    action: Text(1, 200)
    details: Optional[Text(max_length=500)] = None


class MaintenanceIn(RequestModel):
    date: datetime
    type: Text(1, 100)
    description: Optional[Text(max_length=500)] = None
    cost: Optional[float] = Field(None, ge=0)
    garage: Optional[Text(max_length=100)] = None
    next_service: Optional[datetime] = None


class PrimaryImageIn(RequestModel):
    image_id: str = Field(..., min_length=1)


class VehicleDocumentIn(RequestModel):
    name: Text(1, 200)
    type: DocumentType
    expiry_date: Optional[datetime] = None


# ---------- Contacts ----------

class ContactIn(RequestModel):
    name: Text(2, 100)
    email: EmailStr
    subject: Text(1, 200)
    message: Text(10, 2000)
    phone: Optional[Phone] = None
    company: Optional[Text(max_length=100)] = None
    type: Optional[ContactType] = None


class ContactStatusUpdate(RequestModel):
    status: ContactStatus


class ContactResponseIn(RequestModel):
    message: Text(1, 2000)
    is_internal: bool = False


class AssignIn(RequestModel):
    assigned_to: str = Field(..., pattern=r"^[0-9a-fA-F]{24}$")


class TagsUpdate(RequestModel):
    action: Literal["add", "remove"]
    tags: List[Tag] = Field(..., min_length=1)


class FollowUpIn(RequestModel):
    follow_up_date: datetime


class ContactUpdate(RequestModel):
    status: Optional[ContactStatus] = None
    priority: Optional[ContactPriority] = None
    type: Optional[ContactType] = None
    notes: Optional[Text(max_length=1000)] = None
