"""
Business operations for users, vehicles and contacts.

Entities are plain data; each service loads them through its Repository,
applies the entity methods and persists explicitly. Emails go through the
Notifier once the write has been acknowledged.
"""
import logging
import math
import re
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from fastapi import BackgroundTasks

from config import Settings
from database import Datastore, Repositories, count_occurrences, to_object_id
from errors import AuthenticationError, ConflictError, NotFoundError, ValidationError
from media import MediaStore
from models import (
    Contact,
    Location,
    MaintenanceService,
    Specifications,
    User,
    Vehicle,
    to_store_datetime,
    utcnow,
)
from notifications import EmailSender, Notifier
from permissions import ensure_owner_or_role, has_role
from schemas import (
    ContactIn,
    ContactUpdate,
    MaintenanceIn,
    ProfileUpdate,
    RegisterRequest,
    UserCreate,
    UserUpdate,
    VehicleIn,
    VehicleUpdate,
)
from security import AuthProvider
from uploads import UploadService

logger = logging.getLogger(__name__)

VEHICLE_SORTS = {"price", "year", "brand", "createdAt"}
CONTACT_SORTS = {"createdAt", "priority", "status"}
USER_SORTS = {"name", "email", "role", "createdAt", "lastLogin"}


def pagination(page: int, limit: int, total: int) -> Dict[str, int]:
    return {"page": page, "limit": limit, "total": total, "pages": math.ceil(total / limit) if limit else 0}


def check_sort(sort: Optional[str], allowed: Iterable[str]) -> Optional[str]:
    if sort and sort.lstrip("-") not in allowed:
        raise ValidationError.for_field("sort", f"Tri invalide. Valeurs possibles : {', '.join(sorted(allowed))}")
    return sort


def contains(text: str) -> Dict[str, str]:
    """Case-insensitive substring match on user input."""
    return {"$regex": re.escape(text), "$options": "i"}


# ---------- Users ----------

class UserService:
    def __init__(self, repos: Repositories, auth: AuthProvider, notifier: Notifier, settings: Settings):
        self.repo = repos.users
        self.auth = auth
        self.notifier = notifier
        self.submitter_email = settings.public_submitter_email

    def get(self, user_id: str) -> User:
        user = self.repo.get(user_id)
        if user is None:
            raise NotFoundError("Utilisateur non trouvé")
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        return self.repo.find_one({"email": email.strip().lower()})

    def _ensure_email_free(self, email: str, exclude_id: Optional[str] = None) -> None:
        existing = self.find_by_email(email)
        if existing is not None and existing.id != exclude_id:
            raise ConflictError("Un utilisateur avec cet email existe déjà")

    def issue_token(self, user: User) -> str:
        return self.auth.create_token(user.id, user.role)

    # self-service

    def register(self, body: RegisterRequest, tasks: Optional[BackgroundTasks] = None) -> Tuple[User, str]:
        self._ensure_email_free(body.email)
        user = User(
            name=body.name,
            email=body.email,
            password=self.auth.hash_password(body.password),
            company=body.company,
            phone=body.phone,
        )
        self.repo.insert(user)
        logger.info("User %s registered", user.id)
        self.notifier.dispatch(tasks, "welcome", self.notifier.sender.send_welcome, user.email, user.name)
        return user, self.issue_token(user)

    def login(self, email: str, password: str) -> Tuple[User, str]:
        user = self.find_by_email(email)
        if user is None:
            raise AuthenticationError("Email ou mot de passe incorrect")
        if not user.is_active:
            raise AuthenticationError("Compte désactivé. Contactez l'administrateur.")
        if not self.auth.verify_password(password, user.password):
            raise AuthenticationError("Email ou mot de passe incorrect")
        user.record_login()
        self.repo.save(user)
        return user, self.issue_token(user)

    def touch(self, user: User) -> User:
        user.record_login()
        return self.repo.save(user)

    def forgot_password(self, email: str, tasks: Optional[BackgroundTasks] = None) -> None:
        user = self.find_by_email(email)
        if user is None or not user.is_active:
            logger.info("Password reset requested for an unknown address")
            return
        raw, token_hash, expires = self.auth.generate_reset_token()
        user.start_password_reset(token_hash, expires)
        self.repo.save(user)
        self.notifier.dispatch(tasks, "password-reset", self.notifier.sender.send_password_reset,
                               user.email, user.name, raw)

    def reset_password(self, token: str, password: str) -> Tuple[User, str]:
        token_hash = self.auth.hash_reset_token(token)
        user = self.repo.find_one({"passwordResetToken": token_hash})
        if user is None:
            raise ValidationError("Token invalide ou expiré")
        if not user.reset_token_valid(token_hash):
            user.clear_password_reset()
            self.repo.save(user)
            raise ValidationError("Token invalide ou expiré")
        user.change_password(self.auth.hash_password(password))
        self.repo.save(user)
        logger.info("Password reset completed for user %s", user.id)
        return user, self.issue_token(user)

    def change_password(self, user: User, current: str, new: str) -> Tuple[User, str]:
        if not self.auth.verify_password(current, user.password):
            raise ValidationError("Mot de passe actuel incorrect")
        user.change_password(self.auth.hash_password(new))
        self.repo.save(user)
        return user, self.issue_token(user)

    def update_profile(self, user: User, body: ProfileUpdate) -> User:
        for field, value in body.model_dump(exclude_unset=True).items():
            setattr(user, field, value)
        return self.repo.save(user)

    def public_submitter(self) -> User:
        """System account that owns publicly submitted vehicles. Cannot log in."""
        user = self.find_by_email(self.submitter_email)
        if user is not None:
            return user
        user = User(
            name="Soumission publique",
            email=self.submitter_email,
            password=self.auth.unusable_password(),
            is_active=False,
        )
        try:
            return self.repo.insert(user)
        except ConflictError:
            # created concurrently by another request
            return self.find_by_email(self.submitter_email)

    # administration

    def list(self, role: Optional[str] = None, is_active: Optional[bool] = None, page: int = 1,
             limit: int = 10, sort: Optional[str] = None) -> Tuple[List[User], int]:
        check_sort(sort, USER_SORTS)
        filt: Dict[str, Any] = {}
        if role:
            filt["role"] = role
        if is_active is not None:
            filt["isActive"] = is_active
        users = self.repo.find(filt, sort=sort, skip=(page - 1) * limit, limit=limit)
        return users, self.repo.count(filt)

    def get_for(self, caller: User, user_id: str) -> User:
        ensure_owner_or_role(caller, user_id, "admin")
        return self.get(user_id)

    def create(self, body: UserCreate) -> User:
        self._ensure_email_free(body.email)
        user = User(
            name=body.name,
            email=body.email,
            password=self.auth.hash_password(body.password),
            role=body.role,
            company=body.company,
            phone=body.phone,
        )
        self.repo.insert(user)
        logger.info("User %s created with role %s", user.id, user.role)
        return user

    def update(self, caller: User, user_id: str, body: UserUpdate) -> User:
        ensure_owner_or_role(caller, user_id, "admin")
        user = self.get(user_id)
        changes = body.model_dump(exclude_unset=True)
        if "role" in changes and not has_role(caller, "admin"):
            changes.pop("role")
        if changes.get("email"):
            changes["email"] = changes["email"].strip().lower()
            if changes["email"] != user.email:
                self._ensure_email_free(changes["email"], exclude_id=user.id)
        for field, value in changes.items():
            if value is not None:
                setattr(user, field, value)
        return self.repo.save(user)

    def change_role(self, user_id: str, role: str) -> User:
        user = self.get(user_id)
        user.role = role
        self.repo.save(user)
        logger.info("User %s role changed to %s", user.id, role)
        return user

    def deactivate(self, caller: User, user_id: str) -> User:
        if caller.id == user_id:
            raise ConflictError("Vous ne pouvez pas désactiver votre propre compte")
        user = self.get(user_id)
        user.is_active = False
        return self.repo.save(user)

    def activate(self, user_id: str) -> User:
        user = self.get(user_id)
        user.is_active = True
        return self.repo.save(user)

    def stats(self) -> Dict[str, Any]:
        return {
            "totalUsers": self.repo.count({}),
            "activeUsers": self.repo.count({"isActive": True}),
            "verifiedEmails": self.repo.count({"emailVerified": True}),
            "byRole": count_occurrences(self.repo.field_values("role", {})),
        }

    def search(self, q: str, page: int = 1, limit: int = 10) -> Tuple[List[User], int]:
        if len(q.strip()) < 2:
            raise ValidationError.for_field("q", "La recherche doit contenir au moins 2 caractères")
        filt = {"$or": [{"name": contains(q)}, {"email": contains(q)}, {"company": contains(q)}]}
        users = self.repo.find(filt, sort="name", skip=(page - 1) * limit, limit=limit)
        return users, self.repo.count(filt)

    def summaries(self, user_ids: Iterable[Optional[str]]) -> Dict[str, Dict[str, Any]]:
        """{id: {id, name, email}} for the given ids, unknown ids left out."""
        oids = [oid for oid in (to_object_id(i) for i in set(user_ids) if i) if oid is not None]
        if not oids:
            return {}
        return {
            u.id: {"id": u.id, "name": u.name, "email": u.email}
            for u in self.repo.find({"_id": {"$in": oids}})
        }


# ---------- Vehicles ----------

class VehicleService:
    def __init__(self, repos: Repositories, users: UserService, notifier: Notifier):
        self.repo = repos.vehicles
        self.users = users
        self.notifier = notifier

    def get_active(self, vehicle_id: str) -> Vehicle:
        vehicle = self.repo.get(vehicle_id)
        if vehicle is None or not vehicle.is_active:
            raise NotFoundError("Véhicule non trouvé")
        return vehicle

    def get_visible(self, vehicle_id: str, caller: Optional[User] = None) -> Vehicle:
        """Active vehicles for everyone; soft-deleted ones for managers and up."""
        vehicle = self.repo.get(vehicle_id)
        if vehicle is None or (not vehicle.is_active and not (caller and has_role(caller, "manager"))):
            raise NotFoundError("Véhicule non trouvé")
        return vehicle

    def _owned(self, vehicle_id: str, actor: User) -> Vehicle:
        vehicle = self.get_active(vehicle_id)
        ensure_owner_or_role(actor, vehicle.created_by, "admin")
        return vehicle

    def present(self, vehicle: Vehicle) -> Dict[str, Any]:
        """Public view with user references expanded to {id, name, email}.

        createdBy/updatedBy are replaced in place; every history entry gains an
        ``actor`` next to its ``actorUserId``.
        """
        return self.present_many([vehicle])[0]

    def present_many(self, vehicles: Sequence[Vehicle]) -> List[Dict[str, Any]]:
        people = self.users.summaries(
            ref
            for v in vehicles
            for ref in [v.created_by, v.updated_by, *(h.actor_user_id for h in v.history)]
        )
        views = []
        for vehicle in vehicles:
            data = vehicle.to_public()
            data["createdBy"] = people.get(vehicle.created_by, vehicle.created_by)
            if vehicle.updated_by:
                data["updatedBy"] = people.get(vehicle.updated_by, vehicle.updated_by)
            for entry in data["history"]:
                entry["actor"] = people.get(entry["actorUserId"])
            views.append(data)
        return views

    @staticmethod
    def _build(body: VehicleIn, created_by: str, status: str) -> Vehicle:
        fields = body.model_dump(exclude_none=True, exclude={"status", "specifications", "location"})
        return Vehicle(
            **fields,
            status=status,
            specifications=Specifications(**(body.specifications.model_dump() if body.specifications else {})),
            location=Location(**(body.location.model_dump() if body.location else {})),
            created_by=created_by,
        )

    # queries

    def list(self, category: Optional[str] = None, status: Optional[str] = None,
             min_price: Optional[float] = None, max_price: Optional[float] = None,
             min_year: Optional[int] = None, max_year: Optional[int] = None,
             brand: Optional[str] = None, fuel_type: Optional[str] = None,
             page: int = 1, limit: int = 10, sort: Optional[str] = None) -> Tuple[List[Vehicle], int, Dict[str, Any]]:
        check_sort(sort, VEHICLE_SORTS)
        filt: Dict[str, Any] = {"isActive": True}
        if category:
            filt["category"] = category
        if status:
            filt["status"] = status
        if brand:
            filt["brand"] = contains(brand)
        if fuel_type:
            filt["specifications.fuelType"] = fuel_type
        if min_price is not None or max_price is not None:
            filt["price"] = {}
            if min_price is not None:
                filt["price"]["$gte"] = min_price
            if max_price is not None:
                filt["price"]["$lte"] = max_price
        if min_year is not None or max_year is not None:
            filt["year"] = {}
            if min_year is not None:
                filt["year"]["$gte"] = min_year
            if max_year is not None:
                filt["year"]["$lte"] = max_year
        vehicles = self.repo.find(filt, sort=sort, skip=(page - 1) * limit, limit=limit)
        total = self.repo.count(filt)
        return vehicles, total, self.price_summary(filt)

    def price_summary(self, filt: Dict[str, Any]) -> Dict[str, Any]:
        rows = self.repo.aggregate([
            {"$match": filt},
            {"$group": {
                "_id": None,
                "count": {"$sum": 1},
                "totalValue": {"$sum": "$price"},
                "avgPrice": {"$avg": "$price"},
                "minPrice": {"$min": "$price"},
                "maxPrice": {"$max": "$price"},
            }},
        ])
        summary = rows[0] if rows else {}
        return {
            "count": summary.get("count", 0),
            "totalValue": summary.get("totalValue", 0),
            "avgPrice": round(summary.get("avgPrice") or 0, 2),
            "minPrice": summary.get("minPrice", 0),
            "maxPrice": summary.get("maxPrice", 0),
            "byCategory": count_occurrences(self.repo.field_values("category", filt)),
            "byStatus": count_occurrences(self.repo.field_values("status", filt)),
        }

    def search(self, q: str, page: int = 1, limit: int = 10) -> Tuple[List[Vehicle], int]:
        if len(q.strip()) < 2:
            raise ValidationError.for_field("q", "La recherche doit contenir au moins 2 caractères")
        term = contains(q.strip())
        filt = {
            "isActive": True,
            "$or": [
                {"brand": term},
                {"model": term},
                {"description": term},
                {"specifications.engine": term},
                {"specifications.color": term},
            ],
        }
        vehicles = self.repo.find(filt, skip=(page - 1) * limit, limit=limit)
        return vehicles, self.repo.count(filt)

    def overview(self) -> Dict[str, Any]:
        active = {"isActive": True}
        summary = self.price_summary(active)
        return {
            "totalVehicles": summary.pop("count"),
            **summary,
            "byFuelType": count_occurrences(self.repo.field_values("specifications.fuelType", active)),
            "byYear": count_occurrences(self.repo.field_values("year", active)),
        }

    def document_alerts(self, vehicle_id: str) -> Dict[str, Any]:
        vehicle = self.get_active(vehicle_id)
        return {
            "expired": [d.to_public() for d in vehicle.expired_documents()],
            "expiringSoon": [d.to_public() for d in vehicle.documents_expiring_within()],
        }

    # mutations

    def create(self, body: VehicleIn, actor: User) -> Vehicle:
        vehicle = self._build(body, actor.id, body.status or "Disponible")
        vehicle.append_history("Véhicule créé", actor.id, "Création initiale du véhicule")
        self.repo.insert(vehicle)
        logger.info("Vehicle %s created by %s", vehicle.id, actor.id)
        return vehicle

    def submit_public(self, body: VehicleIn) -> Vehicle:
        submitter = self.users.public_submitter()
        vehicle = self._build(body, submitter.id, "Disponible")
        vehicle.append_history("Véhicule soumis", None, "Soumission publique du véhicule")
        self.repo.insert(vehicle)
        logger.info("Vehicle %s submitted publicly", vehicle.id)
        return vehicle

    def update(self, vehicle_id: str, body: VehicleUpdate, actor: User) -> Vehicle:
        vehicle = self._owned(vehicle_id, actor)
        changes = body.model_dump(exclude_unset=True, exclude={"specifications", "location"})
        for field, value in changes.items():
            if value is not None:
                setattr(vehicle, field, value)
        if body.specifications is not None:
            vehicle.specifications = vehicle.specifications.model_copy(
                update=body.specifications.model_dump(exclude_unset=True))
        if body.location is not None:
            vehicle.location = vehicle.location.model_copy(update=body.location.model_dump(exclude_unset=True))
        vehicle.updated_by = actor.id
        vehicle.append_history("Véhicule modifié", actor.id, "Informations du véhicule mises à jour")
        return self.repo.save(vehicle)

    def soft_delete(self, vehicle_id: str, actor: User) -> Vehicle:
        vehicle = self._owned(vehicle_id, actor)
        vehicle.is_active = False
        vehicle.updated_by = actor.id
        vehicle.append_history("Véhicule supprimé", actor.id, "Véhicule retiré du catalogue")
        self.repo.save(vehicle)
        logger.info("Vehicle %s soft-deleted by %s", vehicle.id, actor.id)
        return vehicle

    def change_status(self, vehicle_id: str, status: str, details: Optional[str], actor: User) -> Vehicle:
        vehicle = self.get_active(vehicle_id)
        previous = vehicle.status
        vehicle.status = status
        vehicle.updated_by = actor.id
        vehicle.append_history("Changement de statut", actor.id,
                               details or f"Statut changé de {previous} à {status}")
        return self.repo.save(vehicle)

    def add_history(self, vehicle_id: str, action: str, details: Optional[str], actor: User) -> Vehicle:
        vehicle = self.get_active(vehicle_id)
        vehicle.append_history(action, actor.id, details or "")
        return self.repo.save(vehicle)

    def add_maintenance(self, vehicle_id: str, body: MaintenanceIn, actor: User,
                        tasks: Optional[BackgroundTasks] = None) -> Vehicle:
        vehicle = self.get_active(vehicle_id)
        entry = MaintenanceService(**body.model_dump(exclude={"next_service"}))
        vehicle.add_maintenance_service(entry)
        if body.next_service is not None:
            vehicle.maintenance.next_service = body.next_service
        vehicle.updated_by = actor.id
        vehicle.append_history("Maintenance ajoutée", actor.id, f"Service : {entry.type}")
        self.repo.save(vehicle)
        if body.next_service is not None:
            self.notifier.dispatch(tasks, "maintenance", self.notifier.sender.send_maintenance_notification,
                                   vehicle, entry)
        return vehicle


# ---------- Contacts ----------

class ContactService:
    def __init__(self, repos: Repositories, users: UserService, notifier: Notifier):
        self.repo = repos.contacts
        self.users = users
        self.notifier = notifier

    def get(self, contact_id: str) -> Contact:
        contact = self.repo.get(contact_id)
        if contact is None:
            raise NotFoundError("Message de contact non trouvé")
        return contact

    def present(self, contact: Contact) -> Dict[str, Any]:
        return self.present_many([contact])[0]

    def present_many(self, contacts: Sequence[Contact]) -> List[Dict[str, Any]]:
        """assignedTo/readBy expanded to {id, name, email}; responses gain ``sentBy``."""
        people = self.users.summaries(
            ref
            for c in contacts
            for ref in [c.assigned_to, c.read_by, *(r.sent_by_user_id for r in c.responses)]
        )
        views = []
        for contact in contacts:
            data = contact.to_public()
            for field in ("assignedTo", "readBy"):
                if data[field]:
                    data[field] = people.get(data[field], data[field])
            for response in data["responses"]:
                response["sentBy"] = people.get(response["sentByUserId"])
            data["lastResponse"] = data["responses"][-1] if data["responses"] else None
            views.append(data)
        return views

    def create(self, body: ContactIn, ip_address: Optional[str], user_agent: Optional[str],
               tasks: Optional[BackgroundTasks] = None) -> Contact:
        contact = Contact(**body.model_dump(exclude_none=True), ip_address=ip_address, user_agent=user_agent)
        self.repo.insert(contact)
        logger.info("Contact %s received (%s)", contact.id, contact.type)
        self.notifier.dispatch(tasks, "contact-notification",
                               self.notifier.sender.send_contact_notification, contact)
        return contact

    def list(self, status: Optional[str] = None, priority: Optional[str] = None, contact_type: Optional[str] = None,
             page: int = 1, limit: int = 10, sort: Optional[str] = None) -> Tuple[List[Contact], int, Dict[str, Any]]:
        check_sort(sort, CONTACT_SORTS)
        filt: Dict[str, Any] = {}
        if status:
            filt["status"] = status
        if priority:
            filt["priority"] = priority
        if contact_type:
            filt["type"] = contact_type
        contacts = self.repo.find(filt, sort=sort, skip=(page - 1) * limit, limit=limit)
        return contacts, self.repo.count(filt), self.stats()

    def stats(self) -> Dict[str, Any]:
        return {
            "total": self.repo.count({}),
            "unread": self.repo.count({"isRead": False}),
            "byStatus": count_occurrences(self.repo.field_values("status", {})),
            "byPriority": count_occurrences(self.repo.field_values("priority", {})),
            "byType": count_occurrences(self.repo.field_values("type", {})),
        }

    def overview(self) -> Dict[str, Any]:
        stats = self.stats()
        stats["overdueFollowUps"] = self.repo.count({
            "followUpDate": {"$lt": to_store_datetime(utcnow())},
            "status": {"$ne": "Fermé"},
        })
        stats["unreadContacts"] = stats["unread"]
        return stats

    def open_for(self, contact_id: str, reader: User) -> Contact:
        contact = self.get(contact_id)
        if contact.mark_read(reader.id):
            self.repo.save(contact)
        return contact

    def set_status(self, contact_id: str, status: str) -> Contact:
        contact = self.get(contact_id)
        contact.set_status(status)
        return self.repo.save(contact)

    def update(self, contact_id: str, body: ContactUpdate) -> Contact:
        contact = self.get(contact_id)
        for field, value in body.model_dump(exclude_none=True).items():
            setattr(contact, field, value)
        return self.repo.save(contact)

    def respond(self, contact_id: str, message: str, is_internal: bool, actor: User,
                tasks: Optional[BackgroundTasks] = None) -> Contact:
        contact = self.get(contact_id)
        contact.add_response(message, actor.id, is_internal)
        self.repo.save(contact)
        if not is_internal:
            self.notifier.dispatch(tasks, "contact-response",
                                   self.notifier.sender.send_contact_response, contact, message)
        return contact

    def assign(self, contact_id: str, user_id: str) -> Contact:
        contact = self.get(contact_id)
        assignee = self.users.get(user_id)
        if not assignee.is_active or not has_role(assignee, "manager"):
            raise ValidationError.for_field("assignedTo", "L'utilisateur assigné doit être un manager actif")
        contact.assign_to(assignee.id)
        return self.repo.save(contact)

    def update_tags(self, contact_id: str, action: str, tags: List[str]) -> Contact:
        contact = self.get(contact_id)
        if action == "add":
            contact.add_tags(tags)
        else:
            contact.remove_tags(tags)
        return self.repo.save(contact)

    def schedule_follow_up(self, contact_id: str, when) -> Contact:
        contact = self.get(contact_id)
        contact.schedule_follow_up(when)
        return self.repo.save(contact)

    def assigned_to(self, user_id: str, page: int = 1, limit: int = 10) -> Tuple[List[Contact], int]:
        filt = {"assignedTo": user_id}
        contacts = self.repo.find(filt, skip=(page - 1) * limit, limit=limit)
        return contacts, self.repo.count(filt)


# ---------- Wiring ----------

class Services:
    """Process-wide service objects, built once and attached to app.state."""

    def __init__(self, settings: Settings, store: Optional[Datastore] = None,
                 media: Optional[MediaStore] = None, email: Optional[EmailSender] = None):
        self.settings = settings
        self.store = store or Datastore(settings.database_url, settings.database_name)
        self.media = media or MediaStore(settings)
        self.email = email or EmailSender(settings)
        self.auth = AuthProvider(settings)
        self.notifier = Notifier(self.email)
        self.repos = Repositories(self.store)
        self.users = UserService(self.repos, self.auth, self.notifier, settings)
        self.vehicles = VehicleService(self.repos, self.users, self.notifier)
        self.contacts = ContactService(self.repos, self.users, self.notifier)
        self.uploads = UploadService(self.vehicles, self.media)

    def startup(self) -> None:
        self.store.connect()
        if not self.media.configured:
            logger.warning("Cloudinary credentials missing, uploads will fail")
        if not self.email.configured:
            logger.warning("SMTP host missing, emails will only be logged")

    def shutdown(self) -> None:
        self.media.close()
        self.store.close()
