import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from errors import ValidationError, ok, setup_exception_handlers
from models import User
from permissions import get_current_user, get_optional_user, require_admin, require_manager
from ratelimit import RateLimitMiddleware, client_key
from schemas import (
    AssignIn,
    ChangePasswordRequest,
    ContactIn,
    ContactResponseIn,
    ContactStatusUpdate,
    ContactUpdate,
    FollowUpIn,
    ForgotPasswordRequest,
    HistoryIn,
    LoginRequest,
    MaintenanceIn,
    NewPasswordRequest,
    PrimaryImageIn,
    ProfileUpdate,
    RegisterRequest,
    RoleUpdate,
    TagsUpdate,
    UserCreate,
    UserUpdate,
    VehicleDocumentIn,
    VehicleIn,
    VehicleStatusUpdate,
    VehicleUpdate,
)
from services import Services, pagination
from uploads import MAX_FILE_SIZE, IncomingFile

logger = logging.getLogger(__name__)


def get_services(request: Request) -> Services:
    return request.app.state.services


def read_files(files: Optional[List[UploadFile]]) -> List[IncomingFile]:
    # one byte past the ceiling is enough to reject an oversized file
    return [
        IncomingFile(
            filename=f.filename or "fichier",
            content_type=f.content_type or "application/octet-stream",
            content=f.file.read(MAX_FILE_SIZE + 1),
        )
        for f in files or []
    ]


def auth_payload(user: User, token: str) -> dict:
    return {"user": user.public_profile(), "token": token}


# ---------- Auth ----------

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])


@auth_router.post("/register", status_code=201)
def register(body: RegisterRequest, tasks: BackgroundTasks, services: Services = Depends(get_services)):
    user, token = services.users.register(body, tasks)
    return ok(auth_payload(user, token), "Utilisateur créé avec succès")


@auth_router.post("/login")
def login(body: LoginRequest, services: Services = Depends(get_services)):
    user, token = services.users.login(body.email, body.password)
    return ok(auth_payload(user, token), "Connexion réussie")


@auth_router.get("/me")
def me(user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    user = services.users.touch(user)
    return ok({"user": user.public_profile()})


@auth_router.post("/forgot-password")
def forgot_password(body: ForgotPasswordRequest, tasks: BackgroundTasks,
                    services: Services = Depends(get_services)):
    services.users.forgot_password(body.email, tasks)
    return ok(message="Si cet email existe, un lien de réinitialisation a été envoyé")


@auth_router.post("/reset-password/{token}")
def reset_password(token: str, body: NewPasswordRequest, services: Services = Depends(get_services)):
    user, session_token = services.users.reset_password(token, body.password)
    return ok(auth_payload(user, session_token), "Mot de passe réinitialisé avec succès")


@auth_router.put("/change-password")
def change_password(body: ChangePasswordRequest, user: User = Depends(get_current_user),
                    services: Services = Depends(get_services)):
    user, token = services.users.change_password(user, body.current_password, body.password)
    return ok({"token": token}, "Mot de passe modifié avec succès")


@auth_router.put("/profile")
def update_profile(body: ProfileUpdate, user: User = Depends(get_current_user),
                   services: Services = Depends(get_services)):
    user = services.users.update_profile(user, body)
    return ok({"user": user.public_profile()}, "Profil mis à jour avec succès")


@auth_router.post("/logout")
def logout(user: User = Depends(get_current_user)):
    # tokens are stateless; the client discards its copy
    logger.info("User %s logged out", user.id)
    return ok(message="Déconnexion réussie")


# ---------- Vehicles ----------

vehicle_router = APIRouter(prefix="/api/vehicles", tags=["vehicles"])


@vehicle_router.get("")
def list_vehicles(
    category: Optional[str] = None,
    status: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice", ge=0),
    max_price: Optional[float] = Query(None, alias="maxPrice", ge=0),
    min_year: Optional[int] = Query(None, alias="minYear"),
    max_year: Optional[int] = Query(None, alias="maxYear"),
    brand: Optional[str] = None,
    fuel_type: Optional[str] = Query(None, alias="fuelType"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Optional[str] = "-createdAt",
    services: Services = Depends(get_services),
):
    vehicles, total, stats = services.vehicles.list(
        category=category, status=status, min_price=min_price, max_price=max_price,
        min_year=min_year, max_year=max_year, brand=brand, fuel_type=fuel_type,
        page=page, limit=limit, sort=sort,
    )
    return ok({
        "vehicles": services.vehicles.present_many(vehicles),
        "pagination": pagination(page, limit, total),
        "stats": stats,
    })


@vehicle_router.get("/search")
def search_vehicles(q: str = Query(..., min_length=2), page: int = Query(1, ge=1),
                    limit: int = Query(10, ge=1, le=50), services: Services = Depends(get_services)):
    vehicles, total = services.vehicles.search(q, page, limit)
    return ok({"vehicles": services.vehicles.present_many(vehicles), "pagination": pagination(page, limit, total)})


@vehicle_router.get("/stats/overview")
def vehicle_stats(user: User = Depends(require_manager), services: Services = Depends(get_services)):
    return ok(services.vehicles.overview())


@vehicle_router.post("/public", status_code=201)
def submit_vehicle(body: VehicleIn, services: Services = Depends(get_services)):
    vehicle = services.vehicles.submit_public(body)
    return ok({"vehicle": vehicle.to_public()}, "Véhicule soumis avec succès")


@vehicle_router.post("", status_code=201)
def create_vehicle(body: VehicleIn, user: User = Depends(require_manager),
                   services: Services = Depends(get_services)):
    vehicle = services.vehicles.create(body, user)
    return ok({"vehicle": services.vehicles.present(vehicle)}, "Véhicule créé avec succès")


@vehicle_router.get("/{vehicle_id}")
def get_vehicle(vehicle_id: str, user: Optional[User] = Depends(get_optional_user),
                services: Services = Depends(get_services)):
    vehicle = services.vehicles.get_visible(vehicle_id, user)
    return ok({"vehicle": services.vehicles.present(vehicle)})


@vehicle_router.get("/{vehicle_id}/documents/expiring")
def expiring_documents(vehicle_id: str, user: User = Depends(require_manager),
                       services: Services = Depends(get_services)):
    return ok(services.vehicles.document_alerts(vehicle_id))


@vehicle_router.put("/{vehicle_id}")
def update_vehicle(vehicle_id: str, body: VehicleUpdate, user: User = Depends(require_manager),
                   services: Services = Depends(get_services)):
    vehicle = services.vehicles.update(vehicle_id, body, user)
    return ok({"vehicle": services.vehicles.present(vehicle)}, "Véhicule mis à jour avec succès")


@vehicle_router.delete("/{vehicle_id}")
def delete_vehicle(vehicle_id: str, user: User = Depends(require_manager),
                   services: Services = Depends(get_services)):
    services.vehicles.soft_delete(vehicle_id, user)
    return ok(message="Véhicule supprimé avec succès")


@vehicle_router.put("/{vehicle_id}/status")
def change_vehicle_status(vehicle_id: str, body: VehicleStatusUpdate, user: User = Depends(require_manager),
                          services: Services = Depends(get_services)):
    vehicle = services.vehicles.change_status(vehicle_id, body.status, body.details, user)
    return ok({"vehicle": services.vehicles.present(vehicle)}, "Statut mis à jour avec succès")


@vehicle_router.post("/{vehicle_id}/history")
def add_vehicle_history(vehicle_id: str, body: HistoryIn, user: User = Depends(require_manager),
                        services: Services = Depends(get_services)):
    vehicle = services.vehicles.add_history(vehicle_id, body.action, body.details, user)
    return ok({"history": services.vehicles.present(vehicle)["history"]}, "Historique ajouté avec succès")


@vehicle_router.post("/{vehicle_id}/maintenance")
def add_vehicle_maintenance(vehicle_id: str, body: MaintenanceIn, tasks: BackgroundTasks,
                            user: User = Depends(require_manager), services: Services = Depends(get_services)):
    vehicle = services.vehicles.add_maintenance(vehicle_id, body, user, tasks)
    return ok({"maintenance": vehicle.to_public()["maintenance"]}, "Maintenance ajoutée avec succès")


# ---------- Contacts ----------

contact_router = APIRouter(prefix="/api/contact", tags=["contact"])


@contact_router.post("", status_code=201)
def create_contact(body: ContactIn, request: Request, tasks: BackgroundTasks,
                   services: Services = Depends(get_services)):
    contact = services.contacts.create(body, client_key(request), request.headers.get("User-Agent"), tasks)
    return ok({"id": contact.id}, "Votre message a été envoyé avec succès. Nous vous répondrons rapidement.")


@contact_router.get("")
def list_contacts(
    status: Optional[str] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Optional[str] = "-createdAt",
    user: User = Depends(require_manager),
    services: Services = Depends(get_services),
):
    contacts, total, stats = services.contacts.list(status, priority, type, page, limit, sort)
    return ok({
        "contacts": services.contacts.present_many(contacts),
        "pagination": pagination(page, limit, total),
        "stats": stats,
    })


@contact_router.get("/stats/overview")
def contact_stats(user: User = Depends(require_manager), services: Services = Depends(get_services)):
    return ok(services.contacts.overview())


@contact_router.get("/assigned/{user_id}")
def assigned_contacts(user_id: str, page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100),
                      user: User = Depends(require_manager), services: Services = Depends(get_services)):
    contacts, total = services.contacts.assigned_to(user_id, page, limit)
    return ok({"contacts": services.contacts.present_many(contacts), "pagination": pagination(page, limit, total)})


@contact_router.get("/{contact_id}")
def get_contact(contact_id: str, user: User = Depends(require_manager),
                services: Services = Depends(get_services)):
    contact = services.contacts.open_for(contact_id, user)
    return ok({"contact": services.contacts.present(contact)})


@contact_router.put("/{contact_id}")
def update_contact(contact_id: str, body: ContactUpdate, user: User = Depends(require_manager),
                   services: Services = Depends(get_services)):
    contact = services.contacts.update(contact_id, body)
    return ok({"contact": services.contacts.present(contact)}, "Contact mis à jour avec succès")


@contact_router.put("/{contact_id}/status")
def change_contact_status(contact_id: str, body: ContactStatusUpdate, user: User = Depends(require_manager),
                          services: Services = Depends(get_services)):
    contact = services.contacts.set_status(contact_id, body.status)
    return ok({"contact": services.contacts.present(contact)}, "Statut mis à jour avec succès")


@contact_router.post("/{contact_id}/response")
def respond_to_contact(contact_id: str, body: ContactResponseIn, tasks: BackgroundTasks,
                       user: User = Depends(require_manager), services: Services = Depends(get_services)):
    contact = services.contacts.respond(contact_id, body.message, body.is_internal, user, tasks)
    return ok({"contact": services.contacts.present(contact)}, "Réponse ajoutée avec succès")


@contact_router.put("/{contact_id}/assign")
def assign_contact(contact_id: str, body: AssignIn, user: User = Depends(require_manager),
                   services: Services = Depends(get_services)):
    contact = services.contacts.assign(contact_id, body.assigned_to)
    return ok({"contact": services.contacts.present(contact)}, "Contact assigné avec succès")


@contact_router.put("/{contact_id}/tags")
def update_contact_tags(contact_id: str, body: TagsUpdate, user: User = Depends(require_manager),
                        services: Services = Depends(get_services)):
    contact = services.contacts.update_tags(contact_id, body.action, body.tags)
    return ok({"tags": contact.tags}, "Tags mis à jour avec succès")


@contact_router.put("/{contact_id}/follow-up")
def schedule_contact_follow_up(contact_id: str, body: FollowUpIn, user: User = Depends(require_manager),
                               services: Services = Depends(get_services)):
    contact = services.contacts.schedule_follow_up(contact_id, body.follow_up_date)
    return ok({"contact": services.contacts.present(contact)}, "Suivi programmé avec succès")


# ---------- Users (admin) ----------

user_router = APIRouter(prefix="/api/users", tags=["users"])


@user_router.get("")
def list_users(
    role: Optional[str] = None,
    is_active: Optional[bool] = Query(None, alias="isActive"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    sort: Optional[str] = "-createdAt",
    admin: User = Depends(require_admin),
    services: Services = Depends(get_services),
):
    users, total = services.users.list(role, is_active, page, limit, sort)
    return ok({"users": [u.public_profile() for u in users], "pagination": pagination(page, limit, total)})


@user_router.post("", status_code=201)
def create_user(body: UserCreate, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    user = services.users.create(body)
    return ok({"user": user.public_profile()}, "Utilisateur créé avec succès")


@user_router.get("/stats/overview")
def user_stats(admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    return ok(services.users.stats())


@user_router.get("/search")
def search_users(q: str = Query(..., min_length=2), page: int = Query(1, ge=1),
                 limit: int = Query(10, ge=1, le=50),
                 admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    users, total = services.users.search(q, page, limit)
    return ok({"users": [u.public_profile() for u in users], "pagination": pagination(page, limit, total)})


@user_router.get("/{user_id}")
def get_user(user_id: str, user: User = Depends(get_current_user), services: Services = Depends(get_services)):
    target = services.users.get_for(user, user_id)
    return ok({"user": target.public_profile()})


@user_router.put("/{user_id}")
def update_user(user_id: str, body: UserUpdate, user: User = Depends(get_current_user),
                services: Services = Depends(get_services)):
    target = services.users.update(user, user_id, body)
    return ok({"user": target.public_profile()}, "Utilisateur mis à jour avec succès")


@user_router.delete("/{user_id}")
def deactivate_user(user_id: str, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    services.users.deactivate(admin, user_id)
    return ok(message="Utilisateur désactivé avec succès")


@user_router.put("/{user_id}/activate")
def activate_user(user_id: str, admin: User = Depends(require_admin), services: Services = Depends(get_services)):
    user = services.users.activate(user_id)
    return ok({"user": user.public_profile()}, "Utilisateur réactivé avec succès")


@user_router.put("/{user_id}/role")
def change_user_role(user_id: str, body: RoleUpdate, admin: User = Depends(require_admin),
                     services: Services = Depends(get_services)):
    user = services.users.change_role(user_id, body.role)
    return ok({"user": user.public_profile()}, "Rôle mis à jour avec succès")


# ---------- Uploads ----------

upload_router = APIRouter(prefix="/api/upload", tags=["upload"])


@upload_router.post("/image")
def upload_image(image: UploadFile = File(...), user: User = Depends(require_manager),
                 services: Services = Depends(get_services)):
    hosted = services.uploads.upload_image(read_files([image])[0])
    return ok(hosted.as_dict(), "Image uploadée avec succès")


@upload_router.post("/images")
def upload_images(images: List[UploadFile] = File(...), user: User = Depends(require_manager),
                  services: Services = Depends(get_services)):
    hosted = services.uploads.upload_images(read_files(images))
    return ok({"images": [h.as_dict() for h in hosted]}, f"{len(hosted)} image(s) uploadée(s) avec succès")


@upload_router.post("/document")
def upload_document(document: UploadFile = File(...), user: User = Depends(require_manager),
                    services: Services = Depends(get_services)):
    hosted = services.uploads.upload_document(read_files([document])[0])
    return ok(hosted.as_dict(), "Document uploadé avec succès")


@upload_router.post("/vehicle-images/{vehicle_id}")
def upload_vehicle_images(vehicle_id: str, images: List[UploadFile] = File(...),
                          user: User = Depends(require_manager), services: Services = Depends(get_services)):
    vehicle = services.uploads.add_vehicle_images(vehicle_id, read_files(images), user)
    return ok({"images": vehicle.to_public()["images"]}, "Images ajoutées au véhicule avec succès")


@upload_router.put("/vehicle-images/{vehicle_id}/primary")
def set_primary_image(vehicle_id: str, body: PrimaryImageIn, user: User = Depends(require_manager),
                      services: Services = Depends(get_services)):
    vehicle = services.uploads.set_primary_image(vehicle_id, body.image_id, user)
    return ok({"images": vehicle.to_public()["images"]}, "Image principale mise à jour")


@upload_router.delete("/vehicle-images/{vehicle_id}/{image_id}")
def delete_vehicle_image(vehicle_id: str, image_id: str, user: User = Depends(require_manager),
                         services: Services = Depends(get_services)):
    vehicle = services.uploads.delete_vehicle_image(vehicle_id, image_id, user)
    return ok({"images": vehicle.to_public()["images"]}, "Image supprimée avec succès")


@upload_router.post("/vehicle-documents/{vehicle_id}")
def upload_vehicle_document(
    vehicle_id: str,
    document: UploadFile = File(...),
    name: str = Form(...),
    type: str = Form(...),
    expiry_date: Optional[str] = Form(None, alias="expiryDate"),
    user: User = Depends(require_manager),
    services: Services = Depends(get_services),
):
    try:
        meta = VehicleDocumentIn(name=name, type=type, expiry_date=expiry_date or None)
    except PydanticValidationError as exc:
        raise ValidationError(errors=[
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in exc.errors()
        ])
    vehicle = services.uploads.add_vehicle_document(vehicle_id, read_files([document])[0], meta, user)
    return ok({"documents": vehicle.to_public()["documents"]}, "Document ajouté au véhicule avec succès")


@upload_router.delete("/{media_id:path}")
def delete_media(media_id: str, resource_type: str = Query("image", alias="resourceType"),
                 user: User = Depends(require_manager), services: Services = Depends(get_services)):
    services.uploads.delete(media_id, resource_type)
    return ok(message="Fichier supprimé avec succès")


# ---------- Root & Health ----------

misc_router = APIRouter()


@misc_router.get("/")
def read_root():
    return ok(message="AutoParc API running")


@misc_router.get("/api/health")
def health(services: Services = Depends(get_services)):
    return ok({
        "status": "OK",
        "environment": services.settings.environment,
        "database": "connected" if services.store.ping() else "disconnected",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }, "AutoParc API fonctionne correctement")


# ---------- Application ----------

def create_app(settings: Optional[Settings] = None, services: Optional[Services] = None) -> FastAPI:
    settings = settings or (services.settings if services else Settings.from_env())
    services = services or Services(settings)
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services.startup()
        try:
            yield
        finally:
            services.shutdown()

    app = FastAPI(title="AutoParc API", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        RateLimitMiddleware,
        max_requests=settings.rate_limit_max_requests,
        window_ms=settings.rate_limit_window_ms,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        started = time.perf_counter()
        response = await call_next(request)
        logger.info("%s %s %d (%.1f ms)", request.method, request.url.path, response.status_code,
                    (time.perf_counter() - started) * 1000)
        return response

    setup_exception_handlers(app, debug=not settings.is_production)
    for router in (auth_router, vehicle_router, contact_router, user_router, upload_router, misc_router):
        app.include_router(router)
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
