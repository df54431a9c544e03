"""
Credential handling: bcrypt password hashes, JWT bearer tokens and
single-use password-reset tokens (only the sha256 of a reset token is stored).
"""
import hashlib
import secrets
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Tuple

from jose import ExpiredSignatureError, JWTError, jwt
from passlib.context import CryptContext

from config import Settings
from errors import AuthenticationError


class AuthProvider:
    def __init__(self, settings: Settings):
        self.secret = settings.jwt_secret
        self.algorithm = settings.jwt_algorithm
        self.expires = timedelta(minutes=settings.jwt_expires_minutes)
        self.reset_ttl = timedelta(minutes=settings.reset_token_ttl_minutes)
        self.pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

    def hash_password(self, password: str) -> str:
        return self.pwd_context.hash(password)

    def verify_password(self, password: str, password_hash: str) -> bool:
        if not password_hash:
            return False
        try:
            return self.pwd_context.verify(password, password_hash)
        except ValueError:
            # malformed or unusable stored hash
            return False

    def create_token(self, user_id: str, role: str) -> str:
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "role": role,
            "iat": int(now.timestamp()),
            "exp": int((now + self.expires).timestamp()),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode_token(self, token: str) -> Dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except ExpiredSignatureError:
            raise AuthenticationError("Token expiré")
        except JWTError:
            raise AuthenticationError("Token invalide")
        if not payload.get("sub"):
            raise AuthenticationError("Token invalide")
        return payload

    @staticmethod
    def hash_reset_token(token: str) -> str:
        return hashlib.sha256(token.encode("utf-8")).hexdigest()

    def generate_reset_token(self) -> Tuple[str, str, datetime]:
        """Returns (raw token for the email, hash to store, expiry)."""
        raw = secrets.token_hex(32)
        return raw, self.hash_reset_token(raw), datetime.now(timezone.utc) + self.reset_ttl

    def unusable_password(self) -> str:
        # hash of a random secret nobody knows, for system accounts
        return self.hash_password(secrets.token_urlsafe(32))
