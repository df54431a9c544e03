"""
Domain entities for the AutoParc API

Each top-level model maps to a MongoDB collection (users, vehicles, contacts).
Stored keys are camelCase; Python attributes are snake_case. Entities are plain
data: the operations below mutate the in-memory object only, persistence is
done by the services.
"""
from datetime import datetime, timedelta, timezone
from typing import Annotated, Any, ClassVar, Dict, Iterable, List, Literal, Optional, Tuple

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, ValidationError as PydanticValidationError, field_validator
from pydantic.alias_generators import to_camel

from errors import NotFoundError, ValidationError

# ---------- Field types ----------

Role = Literal["user", "manager", "admin"]
VehicleCategory = Literal["Achat", "Location", "Option d'achat", "Deux-roues", "Électrique/Hybride"]
VehicleStatus = Literal["Disponible", "En maintenance", "Affecté", "Vendu", "Réservé"]
Transmission = Literal["Manuelle", "Automatique", "Semi-automatique"]
FuelType = Literal["Essence", "Diesel", "Électrique", "Hybride", "GPL", "Hydrogène"]
DocumentType = Literal["Carte grise", "Assurance", "Contrôle technique", "Facture", "Autre"]
ContactType = Literal["Demande d'information", "Devis", "Réservation", "Réclamation", "Autre"]
ContactPriority = Literal["Faible", "Normale", "Élevée", "Urgente"]
ContactStatus = Literal["Nouveau", "En cours", "Répondu", "Fermé"]
ContactSource = Literal["Site web", "Email", "Téléphone", "Réseaux sociaux", "Autre"]

PHONE_PATTERN = r"^[\+]?[1-9][\d]{0,15}$"
EXPIRY_WINDOW = timedelta(days=30)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Mongo hands back naive UTC datetimes
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_id() -> str:
    return str(ObjectId())


def _object_id_to_str(value: Any) -> Any:
    return str(value) if isinstance(value, ObjectId) else value


UTCDateTime = Annotated[datetime, AfterValidator(ensure_utc)]
ObjectIdStr = Annotated[str, BeforeValidator(_object_id_to_str)]


def to_store_datetime(value: datetime) -> datetime:
    """Naive UTC, the form MongoDB stores and compares."""
    return ensure_utc(value).replace(tzinfo=None)


def _store_values(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_store_datetime(value)
    if isinstance(value, dict):
        return {k: _store_values(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_store_values(v) for v in value]
    return value


def _rename_ids(value: Any) -> Any:
    if isinstance(value, dict):
        return {("id" if k == "_id" else k): _rename_ids(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_rename_ids(v) for v in value]
    return value


def format_amount(amount: float, decimals: int) -> str:
    text = f"{amount:,.{decimals}f}"
    # fr-FR grouping: narrow no-break space (U+202F) between thousands, comma before decimals
    return text.replace(",", "\u202f").replace(".", ",")


class Entity(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_document(self) -> Dict[str, Any]:
        """Dump for storage: aliased keys, ``_id`` as an ObjectId."""
        doc = _store_values(self.model_dump(by_alias=True))
        if "_id" in doc:
            if doc["_id"] is None:
                doc.pop("_id")
            else:
                doc["_id"] = ObjectId(doc["_id"])
        return doc

    def to_public(self) -> Dict[str, Any]:
        """JSON-ready dump for API responses, ``_id`` renamed to ``id``."""
        return _rename_ids(self.model_dump(by_alias=True, mode="json"))

    def check(self) -> None:
        """Re-run field validation on the current state before persisting."""
        try:
            type(self).model_validate(self.model_dump(by_alias=True))
        except PydanticValidationError as exc:
            raise ValidationError(errors=[
                {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                for err in exc.errors()
            ])


# ---------- User ----------

class User(Entity):
    id: Optional[ObjectIdStr] = Field(None, alias="_id")
    name: str = Field(..., min_length=2, max_length=50)
    email: str = Field(..., min_length=3, max_length=254)
    password: str = Field(..., description="bcrypt hash, never serialized")
    role: Role = "user"
    company: Optional[str] = Field(None, max_length=100)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    is_active: bool = True
    email_verified: bool = False
    password_reset_token: Optional[str] = None
    password_reset_expires: Optional[UTCDateTime] = None
    last_login: Optional[UTCDateTime] = None
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    PRIVATE_FIELDS: ClassVar[Tuple[str, ...]] = ("password", "passwordResetToken", "passwordResetExpires")

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()

    def public_profile(self) -> Dict[str, Any]:
        profile = self.to_public()
        for key in self.PRIVATE_FIELDS:
            profile.pop(key, None)
        return profile

    def record_login(self, at: Optional[datetime] = None) -> None:
        self.last_login = at or utcnow()

    def change_password(self, password_hash: str) -> None:
        self.password = password_hash
        self.clear_password_reset()

    def start_password_reset(self, token_hash: str, expires: datetime) -> None:
        self.password_reset_token = token_hash
        self.password_reset_expires = ensure_utc(expires)

    def clear_password_reset(self) -> None:
        self.password_reset_token = None
        self.password_reset_expires = None

    def reset_token_valid(self, token_hash: str, now: Optional[datetime] = None) -> bool:
        if not self.password_reset_token or self.password_reset_token != token_hash:
            return False
        if self.password_reset_expires is None:
            return False
        return self.password_reset_expires > (now or utcnow())


# ---------- Vehicle ----------

class Specifications(Entity):
    engine: Optional[str] = None
    transmission: Optional[Transmission] = None
    fuel_type: Optional[FuelType] = None
    mileage: Optional[int] = Field(None, ge=0)
    color: Optional[str] = None
    doors: Optional[int] = Field(None, ge=2, le=5)
    seats: Optional[int] = Field(None, ge=2, le=9)


class Location(Entity):
    address: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None


class VehicleImage(Entity):
    id: ObjectIdStr = Field(default_factory=new_id, alias="_id")
    url: str
    media_id: str
    is_primary: bool = False
    width: Optional[int] = None
    height: Optional[int] = None
    format: Optional[str] = None
    size: Optional[int] = None


class VehicleDocument(Entity):
    id: ObjectIdStr = Field(default_factory=new_id, alias="_id")
    name: str = Field(..., min_length=1)
    type: DocumentType
    url: str
    media_id: str
    expiry_date: Optional[UTCDateTime] = None
    uploaded_at: UTCDateTime = Field(default_factory=utcnow)


class HistoryEntry(Entity):
    id: ObjectIdStr = Field(default_factory=new_id, alias="_id")
    action: str = Field(..., min_length=1)
    timestamp: UTCDateTime = Field(default_factory=utcnow)
    actor_user_id: Optional[str] = None
    details: str = ""


class MaintenanceService(Entity):
    id: ObjectIdStr = Field(default_factory=new_id, alias="_id")
    date: UTCDateTime
    type: str = Field(..., min_length=1)
    description: Optional[str] = None
    cost: Optional[float] = Field(None, ge=0)
    garage: Optional[str] = None


class Maintenance(Entity):
    last_service: Optional[UTCDateTime] = None
    next_service: Optional[UTCDateTime] = None
    service_history: List[MaintenanceService] = Field(default_factory=list)


class Vehicle(Entity):
    id: Optional[ObjectIdStr] = Field(None, alias="_id")
    brand: str = Field(..., min_length=1, max_length=50)
    model: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1900)
    price: float = Field(..., ge=0)
    price_eur: Optional[float] = Field(None, ge=0, alias="priceEUR")
    category: VehicleCategory
    description: Optional[str] = Field(None, max_length=1000)
    specifications: Specifications = Field(default_factory=Specifications)
    status: VehicleStatus = "Disponible"
    location: Location = Field(default_factory=Location)
    images: List[VehicleImage] = Field(default_factory=list)
    documents: List[VehicleDocument] = Field(default_factory=list)
    history: List[HistoryEntry] = Field(default_factory=list)
    maintenance: Maintenance = Field(default_factory=Maintenance)
    is_active: bool = True
    created_by: str
    updated_by: Optional[str] = None
    version: int = 0
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @field_validator("year")
    @classmethod
    def year_not_too_far(cls, v: int) -> int:
        if v > utcnow().year + 1:
            raise ValueError("L'année ne peut pas être dans le futur")
        return v

    # history / maintenance

    def append_history(self, action: str, actor_id: Optional[str], details: str = "") -> HistoryEntry:
        entry = HistoryEntry(action=action, actor_user_id=actor_id, details=details or "")
        self.history.append(entry)
        return entry

    def add_maintenance_service(self, entry: MaintenanceService) -> None:
        self.maintenance.service_history.append(entry)
        self.maintenance.last_service = entry.date

    # images

    def primary_image(self) -> Optional[VehicleImage]:
        for image in self.images:
            if image.is_primary:
                return image
        return None

    def primary_image_url(self) -> Optional[str]:
        image = self.primary_image()
        if image:
            return image.url
        return self.images[0].url if self.images else None

    def find_image(self, image_id: str) -> Optional[VehicleImage]:
        return next((img for img in self.images if img.id == image_id), None)

    def _normalize_primary(self) -> None:
        # exactly one primary whenever images exist; earliest flagged image wins
        seen = False
        for image in self.images:
            if image.is_primary and not seen:
                seen = True
            else:
                image.is_primary = False
        if self.images and not seen:
            self.images[0].is_primary = True

    def add_images(self, images: Iterable[VehicleImage]) -> List[VehicleImage]:
        added = list(images)
        for image in added:
            image.is_primary = False
        self.images.extend(added)
        self._normalize_primary()
        return added

    def set_primary_image(self, image_id: str) -> VehicleImage:
        target = self.find_image(image_id)
        if target is None:
            raise NotFoundError("Image non trouvée")
        for image in self.images:
            image.is_primary = image is target
        return target

    def remove_image(self, image_id: str) -> VehicleImage:
        target = self.find_image(image_id)
        if target is None:
            raise NotFoundError("Image non trouvée")
        self.images = [img for img in self.images if img is not target]
        self._normalize_primary()
        return target

    # documents

    def add_document(self, document: VehicleDocument) -> None:
        self.documents.append(document)

    def expired_documents(self, as_of: Optional[datetime] = None) -> List[VehicleDocument]:
        now = ensure_utc(as_of) or utcnow()
        return [d for d in self.documents if d.expiry_date and d.expiry_date < now]

    def documents_expiring_within(self, window: timedelta = EXPIRY_WINDOW,
                                  as_of: Optional[datetime] = None) -> List[VehicleDocument]:
        now = ensure_utc(as_of) or utcnow()
        limit = now + window
        return [d for d in self.documents if d.expiry_date and now < d.expiry_date <= limit]

    # derived attributes

    @property
    def full_name(self) -> str:
        return f"{self.brand} {self.model}"

    @property
    def age(self) -> int:
        return utcnow().year - self.year

    @property
    def is_available(self) -> bool:
        return self.status == "Disponible" and self.is_active

    def needs_service(self, as_of: Optional[datetime] = None) -> bool:
        if not self.maintenance.next_service:
            return False
        now = ensure_utc(as_of) or utcnow()
        return self.maintenance.next_service <= now + EXPIRY_WINDOW

    def formatted_price_fcfa(self) -> str:
        return f"{format_amount(self.price, 0)} FCFA"

    def formatted_price_eur(self) -> str:
        if not self.price_eur:
            return "Non disponible"
        return f"{format_amount(self.price_eur, 2)} €"

    def to_public(self) -> Dict[str, Any]:
        data = super().to_public()
        data.update({
            "fullName": self.full_name,
            "age": self.age,
            "formattedPriceFCFA": self.formatted_price_fcfa(),
            "formattedPriceEUR": self.formatted_price_eur(),
            "isAvailable": self.is_available,
            "needsService": self.needs_service(),
            "primaryImage": self.primary_image_url(),
        })
        return data


# ---------- Contact ----------

class ContactResponse(Entity):
    id: ObjectIdStr = Field(default_factory=new_id, alias="_id")
    message: str = Field(..., min_length=1, max_length=2000)
    sent_by_user_id: str
    sent_at: UTCDateTime = Field(default_factory=utcnow)
    is_internal: bool = False


class Contact(Entity):
    id: Optional[ObjectIdStr] = Field(None, alias="_id")
    name: str = Field(..., min_length=2, max_length=100)
    email: str = Field(..., min_length=3, max_length=254)
    phone: Optional[str] = Field(None, pattern=PHONE_PATTERN)
    subject: str = Field(..., min_length=1, max_length=200)
    message: str = Field(..., min_length=10, max_length=2000)
    company: Optional[str] = Field(None, max_length=100)
    type: ContactType = "Demande d'information"
    priority: ContactPriority = "Normale"
    status: ContactStatus = "Nouveau"
    source: ContactSource = "Site web"
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    assigned_to: Optional[str] = None
    responses: List[ContactResponse] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_read: bool = False
    read_at: Optional[UTCDateTime] = None
    read_by: Optional[str] = None
    follow_up_date: Optional[UTCDateTime] = None
    notes: Optional[str] = Field(None, max_length=1000)
    created_at: UTCDateTime = Field(default_factory=utcnow)
    updated_at: UTCDateTime = Field(default_factory=utcnow)

    @field_validator("email")
    @classmethod
    def lowercase_email(cls, v: str) -> str:
        return v.strip().lower()

    def mark_read(self, actor_id: str, at: Optional[datetime] = None) -> bool:
        """Mark as read. Returns False when it was already read."""
        if self.is_read:
            return False
        self.is_read = True
        self.read_at = at or utcnow()
        self.read_by = actor_id
        return True

    def add_response(self, message: str, actor_id: str, is_internal: bool = False) -> ContactResponse:
        response = ContactResponse(message=message, sent_by_user_id=actor_id, is_internal=is_internal)
        self.responses.append(response)
        if not is_internal and self.status == "Nouveau":
            self.status = "En cours"
        return response

    def assign_to(self, user_id: str) -> None:
        self.assigned_to = user_id

    def set_status(self, status: ContactStatus) -> None:
        self.status = status

    def add_tags(self, tags: Iterable[str]) -> None:
        for tag in tags:
            tag = tag.strip()
            if tag and tag not in self.tags:
                self.tags.append(tag)

    def remove_tags(self, tags: Iterable[str]) -> None:
        drop = {t.strip() for t in tags}
        self.tags = [t for t in self.tags if t not in drop]

    def schedule_follow_up(self, when: datetime) -> None:
        self.follow_up_date = ensure_utc(when)

    def is_follow_up_overdue(self, now: Optional[datetime] = None) -> bool:
        if not self.follow_up_date:
            return False
        return (ensure_utc(now) or utcnow()) > self.follow_up_date

    def time_since_creation(self, now: Optional[datetime] = None) -> str:
        elapsed = (ensure_utc(now) or utcnow()) - self.created_at
        hours = int(elapsed.seconds // 3600)
        if elapsed.days > 0:
            return f"{elapsed.days} jour(s) et {hours} heure(s)"
        return f"{hours} heure(s)"

    def to_public(self) -> Dict[str, Any]:
        data = super().to_public()
        data.update({
            "hasResponses": bool(self.responses),
            "lastResponse": data["responses"][-1] if self.responses else None,
            "timeSinceCreation": self.time_since_creation(),
            "isFollowUpOverdue": self.is_follow_up_overdue(),
        })
        return data
