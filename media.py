"""
Cloudinary media host client (signed REST upload / destroy).
"""
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import requests

from config import Settings
from errors import StorageError

logger = logging.getLogger(__name__)

API_BASE = "https://api.cloudinary.com/v1_1"
IMAGE_TRANSFORMATION = "c_limit,w_1200,h_800/q_auto,f_auto"


@dataclass
class MediaFile:
    url: str
    media_id: str
    format: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "mediaId": self.media_id,
            "format": self.format,
            "size": self.size,
            "width": self.width,
            "height": self.height,
        }


def sign(params: Dict[str, Any], api_secret: str) -> str:
    payload = "&".join(f"{k}={params[k]}" for k in sorted(params) if params[k] not in (None, ""))
    return hashlib.sha1((payload + api_secret).encode("utf-8")).hexdigest()


class MediaStore:
    def __init__(self, settings: Settings, session: Optional[requests.Session] = None):
        self.cloud_name = settings.cloudinary_cloud_name
        self.api_key = settings.cloudinary_api_key
        self.api_secret = settings.cloudinary_api_secret
        self.root_folder = settings.media_folder
        self.session = session or requests.Session()

    @property
    def configured(self) -> bool:
        return bool(self.cloud_name and self.api_key and self.api_secret)

    def folder(self, *parts: str) -> str:
        return "/".join([self.root_folder, *parts])

    def _signed(self, params: Dict[str, Any]) -> Dict[str, Any]:
        params = {k: v for k, v in params.items() if v is not None}
        params["timestamp"] = int(time.time())
        params["signature"] = sign(params, self.api_secret)
        params["api_key"] = self.api_key
        return params

    def upload(self, content: bytes, filename: str, content_type: str, folder: str,
               resource_type: str = "image", transform: bool = True) -> MediaFile:
        if not self.configured:
            raise StorageError("Hébergement des médias non configuré")
        data = self._signed({
            "folder": folder,
            "transformation": IMAGE_TRANSFORMATION if transform and resource_type == "image" else None,
        })
        url = f"{API_BASE}/{self.cloud_name}/{resource_type}/upload"
        try:
            r = self.session.post(url, data=data, files={"file": (filename, content, content_type)}, timeout=60)
            r.raise_for_status()
            result = r.json()
            return MediaFile(
                url=result["secure_url"],
                media_id=result["public_id"],
                format=result.get("format"),
                size=result.get("bytes"),
                width=result.get("width"),
                height=result.get("height"),
            )
        except (requests.RequestException, ValueError, KeyError) as exc:
            logger.error("Media upload of %s failed: %s", filename, exc)
            raise StorageError("Erreur lors de l'upload du fichier") from exc

    def destroy(self, media_id: str, resource_type: str = "image") -> bool:
        """Delete a hosted file. False when the host reports nothing was deleted."""
        if not self.configured:
            raise StorageError("Hébergement des médias non configuré")
        url = f"{API_BASE}/{self.cloud_name}/{resource_type}/destroy"
        try:
            r = self.session.post(url, data=self._signed({"public_id": media_id}), timeout=30)
            r.raise_for_status()
            result = r.json()
        except (requests.RequestException, ValueError) as exc:
            logger.error("Media delete of %s failed: %s", media_id, exc)
            raise StorageError("Erreur lors de la suppression du fichier") from exc
        return result.get("result") == "ok"

    def close(self) -> None:
        self.session.close()
