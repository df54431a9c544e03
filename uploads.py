"""
Upload orchestration

Files are checked (count, size, content type) before anything is sent to the
media host. A batch is uploaded concurrently and is all-or-nothing: when one
file fails, the files already hosted are destroyed again and nothing is
written to the vehicle.
"""
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import List, Sequence

from errors import APIException, NotFoundError, StorageError
from media import MediaFile, MediaStore
from models import User, Vehicle, VehicleDocument, VehicleImage
from schemas import VehicleDocumentIn

logger = logging.getLogger(__name__)

MAX_FILE_SIZE = 10 * 1024 * 1024
MAX_FILES = 5
DOCUMENT_TYPES = {
    "application/pdf",
    "application/msword",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "image/jpeg",
    "image/png",
}


@dataclass
class IncomingFile:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


def check_files(files: Sequence[IncomingFile], documents: bool = False) -> None:
    """Reject the request before any upload. Client mistakes are 400s."""
    if not files:
        raise StorageError("Aucun fichier fourni", status_code=400)
    if len(files) > MAX_FILES:
        raise StorageError(f"Trop de fichiers. Maximum {MAX_FILES} fichiers autorisés.", status_code=400)
    for f in files:
        if f.size > MAX_FILE_SIZE:
            raise StorageError(f"Fichier trop volumineux : {f.filename}. Taille maximale 10MB.", status_code=400)
        if documents:
            if f.content_type not in DOCUMENT_TYPES:
                raise StorageError(
                    "Type de fichier non autorisé. Seuls les PDF, documents Word et images sont acceptés.",
                    status_code=400,
                )
        elif not (f.content_type or "").startswith("image/"):
            raise StorageError("Seules les images sont autorisées", status_code=400)


class UploadService:
    def __init__(self, vehicles, media: MediaStore, max_workers: int = MAX_FILES):
        self.vehicles = vehicles
        self.media = media
        self.max_workers = max_workers
        self.images_folder = media.folder("vehicles")
        self.documents_folder = media.folder("documents")

    def _upload_one(self, f: IncomingFile, folder: str, resource_type: str) -> MediaFile:
        return self.media.upload(f.content, f.filename, f.content_type, folder, resource_type=resource_type)

    def upload_batch(self, files: Sequence[IncomingFile], folder: str,
                     resource_type: str = "image") -> List[MediaFile]:
        """Upload every file concurrently; all succeed or the whole batch fails."""
        if len(files) == 1:
            return [self._upload_one(files[0], folder, resource_type)]

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(files))) as pool:
            futures = [pool.submit(self._upload_one, f, folder, resource_type) for f in files]
        uploaded, failures = [], []
        for f, future in zip(files, futures):
            try:
                uploaded.append(future.result())
            except Exception as exc:
                failures.append((f.filename, exc))

        if failures:
            logger.error("Batch upload failed for %s", ", ".join(name for name, _ in failures))
            self._discard(uploaded, resource_type)
            raise StorageError("Erreur lors de l'upload des fichiers")
        return uploaded

    def _discard(self, uploaded: Sequence[MediaFile], resource_type: str) -> None:
        for media_file in uploaded:
            try:
                self.media.destroy(media_file.media_id, resource_type=resource_type)
            except StorageError:
                logger.warning("Could not clean up %s after a failed write", media_file.media_id)

    def _save_or_discard(self, vehicle: Vehicle, hosted: Sequence[MediaFile], resource_type: str) -> Vehicle:
        """Persist the vehicle; files hosted for it are destroyed when the write fails."""
        try:
            return self.vehicles.repo.save(vehicle)
        except APIException:
            logger.error("Saving vehicle %s failed, discarding %d hosted file(s)", vehicle.id, len(hosted))
            self._discard(hosted, resource_type)
            raise

    # standalone files

    def upload_image(self, f: IncomingFile) -> MediaFile:
        check_files([f])
        return self._upload_one(f, self.images_folder, "image")

    def upload_images(self, files: Sequence[IncomingFile]) -> List[MediaFile]:
        check_files(files)
        return self.upload_batch(files, self.images_folder)

    def upload_document(self, f: IncomingFile) -> MediaFile:
        check_files([f], documents=True)
        return self._upload_one(f, self.documents_folder, "auto")

    def delete(self, media_id: str, resource_type: str = "image") -> None:
        if not self.media.destroy(media_id, resource_type=resource_type):
            raise StorageError("Fichier introuvable chez l'hébergeur", status_code=404)
        logger.info("Media %s deleted", media_id)

    # vehicle-bound files

    def add_vehicle_images(self, vehicle_id: str, files: Sequence[IncomingFile], actor: User) -> Vehicle:
        vehicle = self.vehicles.get_active(vehicle_id)
        check_files(files)
        hosted = self.upload_batch(files, self.media.folder("vehicles", vehicle.id))
        added = vehicle.add_images(
            VehicleImage(url=m.url, media_id=m.media_id, width=m.width, height=m.height,
                         format=m.format, size=m.size)
            for m in hosted
        )
        vehicle.updated_by = actor.id
        vehicle.append_history("Images ajoutées", actor.id, f"{len(added)} image(s) ajoutée(s)")
        return self._save_or_discard(vehicle, hosted, "image")

    def set_primary_image(self, vehicle_id: str, image_id: str, actor: User) -> Vehicle:
        vehicle = self.vehicles.get_active(vehicle_id)
        vehicle.set_primary_image(image_id)
        vehicle.updated_by = actor.id
        vehicle.append_history("Image principale modifiée", actor.id, f"Nouvelle image principale : {image_id}")
        return self.vehicles.repo.save(vehicle)

    def delete_vehicle_image(self, vehicle_id: str, image_id: str, actor: User) -> Vehicle:
        vehicle = self.vehicles.get_active(vehicle_id)
        image = vehicle.find_image(image_id)
        if image is None:
            raise NotFoundError("Image non trouvée")
        # host first: a failure here leaves the vehicle untouched
        if not self.media.destroy(image.media_id):
            logger.warning("Media %s was already gone from the host", image.media_id)
        vehicle.remove_image(image_id)
        vehicle.updated_by = actor.id
        vehicle.append_history("Image supprimée", actor.id, f"Image {image_id} supprimée")
        return self.vehicles.repo.save(vehicle)

    def add_vehicle_document(self, vehicle_id: str, f: IncomingFile, meta: VehicleDocumentIn,
                             actor: User) -> Vehicle:
        vehicle = self.vehicles.get_active(vehicle_id)
        check_files([f], documents=True)
        hosted = self._upload_one(f, self.media.folder("documents", vehicle.id), "auto")
        vehicle.add_document(VehicleDocument(
            name=meta.name,
            type=meta.type,
            url=hosted.url,
            media_id=hosted.media_id,
            expiry_date=meta.expiry_date,
        ))
        vehicle.updated_by = actor.id
        vehicle.append_history("Document ajouté", actor.id, f"{meta.type} : {meta.name}")
        return self._save_or_discard(vehicle, [hosted], "auto")

