"""
Shared fixtures

The application runs against mongomock, a media host fake that records
uploads/deletions and an EmailSender that records messages instead of
talking to SMTP.
"""
import re
import uuid
from threading import Lock

import mongomock
import pytest
from fastapi.testclient import TestClient

from config import Settings
from database import Datastore
from errors import StorageError, UpstreamError
from main import create_app
from media import MediaFile, MediaStore
from models import User
from notifications import EmailSender
from services import Services

PASSWORD = "Secret123"


class FakeMediaStore(MediaStore):
    def __init__(self, settings):
        super().__init__(settings)
        self.uploaded = []
        self.destroyed = []
        self.fail_on = set()
        self.crash_on = set()
        self.after_upload = None
        self._lock = Lock()

    @property
    def configured(self):
        return True

    def upload(self, content, filename, content_type, folder, resource_type="image", transform=True):
        if filename in self.fail_on:
            raise StorageError("Erreur lors de l'upload du fichier")
        if filename in self.crash_on:
            raise RuntimeError(f"unexpected host reply for {filename}")
        media_id = f"{folder}/{uuid.uuid4().hex[:12]}"
        with self._lock:
            self.uploaded.append(media_id)
        if self.after_upload:
            self.after_upload()
        return MediaFile(
            url=f"https://media.test/{media_id}",
            media_id=media_id,
            format=content_type.split("/")[-1],
            size=len(content),
            width=800,
            height=600,
        )

    def destroy(self, media_id, resource_type="image"):
        with self._lock:
            self.destroyed.append(media_id)
        return True


class RecordingEmailSender(EmailSender):
    def __init__(self, settings):
        super().__init__(settings)
        self.sent = []
        self.fail = False

    def send(self, to, subject, html_body):
        if self.fail:
            raise UpstreamError("relais SMTP indisponible")
        self.sent.append({"to": to, "subject": subject, "html": html_body})

    def to(self, address):
        return [m for m in self.sent if m["to"] == address]

    def reset_token_for(self, address):
        for message in reversed(self.to(address)):
            match = re.search(r"/reset-password/([0-9a-f]{64})", message["html"])
            if match:
                return match.group(1)
        return None


@pytest.fixture
def settings():
    return Settings(
        environment="test",
        jwt_secret="test-secret",
        contact_notify_email="staff@autoparc.fr",
        rate_limit_max_requests=10000,
    )


@pytest.fixture
def media(settings):
    return FakeMediaStore(settings)


@pytest.fixture
def mailer(settings):
    return RecordingEmailSender(settings)


@pytest.fixture
def services(settings, media, mailer):
    store = Datastore(settings.database_url, settings.database_name, client=mongomock.MongoClient())
    services = Services(settings, store=store, media=media, email=mailer)
    store.connect()
    return services


@pytest.fixture
def client(services):
    with TestClient(create_app(services=services)) as c:
        yield c


@pytest.fixture
def make_user(services):
    def _make(role="user", email=None, password=PASSWORD, name="Test User", is_active=True):
        user = User(
            name=name,
            email=email or f"{role}-{uuid.uuid4().hex[:8]}@autoparc.fr",
            password=services.auth.hash_password(password),
            role=role,
            is_active=is_active,
        )
        return services.repos.users.insert(user)
    return _make


@pytest.fixture
def headers(services):
    def _headers(user):
        return {"Authorization": f"Bearer {services.auth.create_token(user.id, user.role)}"}
    return _headers


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", name="Alice Admin")


@pytest.fixture
def manager(make_user):
    return make_user(role="manager", name="Marc Manager")


@pytest.fixture
def vehicle_payload():
    return {
        "brand": "Toyota",
        "model": "Corolla",
        "year": 2020,
        "price": 8500000,
        "priceEUR": 12950,
        "category": "Achat",
        "description": "Berline économique en très bon état",
        "specifications": {"engine": "1.8 VVT-i", "fuelType": "Essence", "color": "Gris", "mileage": 42000},
    }


@pytest.fixture
def create_vehicle(client, headers, vehicle_payload):
    def _create(owner, **overrides):
        payload = {**vehicle_payload, **overrides}
        r = client.post("/api/vehicles", json=payload, headers=headers(owner))
        assert r.status_code == 201, r.text
        return r.json()["data"]["vehicle"]
    return _create
