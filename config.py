"""
Application settings

Read once from environment variables at startup and handed to every service
object; nothing else in the codebase calls os.getenv.
"""
import os
from typing import List, Optional

from pydantic import BaseModel, Field


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return int(raw)


class Settings(BaseModel):
    environment: str = "development"
    port: int = 8000
    log_level: str = "INFO"

    # Datastore
    database_url: str = "mongodb://localhost:27017"
    database_name: str = "autoparc"

    # Auth
    jwt_secret: str = "dev-secret-change-me"
    jwt_algorithm: str = "HS256"
    jwt_expires_minutes: int = 7 * 24 * 60
    reset_token_ttl_minutes: int = 10

    # Media host (Cloudinary)
    cloudinary_cloud_name: Optional[str] = None
    cloudinary_api_key: Optional[str] = None
    cloudinary_api_secret: Optional[str] = None
    media_folder: str = "autoparc"

    # SMTP relay
    email_host: Optional[str] = None
    email_port: int = 587
    email_user: Optional[str] = None
    email_pass: Optional[str] = None
    email_from: str = "no-reply@autoparc.fr"
    contact_notify_email: Optional[str] = None

    frontend_url: str = "http://localhost:3000"
    allowed_origins: List[str] = Field(default_factory=lambda: ["http://localhost:3000"])

    rate_limit_window_ms: int = 15 * 60 * 1000
    rate_limit_max_requests: int = 100

    public_submitter_email: str = "soumission-publique@autoparc.fr"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def staff_email(self) -> Optional[str]:
        return self.contact_notify_email or self.email_from

    @classmethod
    def from_env(cls) -> "Settings":
        origins = os.getenv("ALLOWED_ORIGINS") or os.getenv("FRONTEND_URL") or "http://localhost:3000"
        return cls(
            environment=os.getenv("NODE_ENV") or os.getenv("ENVIRONMENT", "development"),
            port=_int_env("PORT", 8000),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            database_url=os.getenv("DATABASE_URL", "mongodb://localhost:27017"),
            database_name=os.getenv("DATABASE_NAME", "autoparc"),
            jwt_secret=os.getenv("JWT_SECRET", "dev-secret-change-me"),
            jwt_expires_minutes=_int_env("JWT_EXPIRES_IN", 7 * 24 * 60),
            cloudinary_cloud_name=os.getenv("CLOUDINARY_CLOUD_NAME"),
            cloudinary_api_key=os.getenv("CLOUDINARY_API_KEY"),
            cloudinary_api_secret=os.getenv("CLOUDINARY_API_SECRET"),
            email_host=os.getenv("EMAIL_HOST"),
            email_port=_int_env("EMAIL_PORT", 587),
            email_user=os.getenv("EMAIL_USER"),
            email_pass=os.getenv("EMAIL_PASS"),
            email_from=os.getenv("EMAIL_FROM", "no-reply@autoparc.fr"),
            contact_notify_email=os.getenv("CONTACT_NOTIFY_EMAIL"),
            frontend_url=os.getenv("FRONTEND_URL", "http://localhost:3000"),
            allowed_origins=[o.strip() for o in origins.split(",") if o.strip()],
            rate_limit_window_ms=_int_env("RATE_LIMIT_WINDOW_MS", 15 * 60 * 1000),
            rate_limit_max_requests=_int_env("RATE_LIMIT_MAX_REQUESTS", 100),
            public_submitter_email=os.getenv("PUBLIC_SUBMITTER_EMAIL", "soumission-publique@autoparc.fr"),
        )
