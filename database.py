"""
MongoDB access

`Datastore` owns the MongoClient for the whole process (connect at startup,
close at shutdown). `Repository` is the per-collection persistence seam the
services go through; it converts documents to entities and pymongo failures
to StorageError / ConflictError.
"""
import logging
from typing import Any, Dict, Generic, List, Optional, Sequence, Tuple, Type, TypeVar

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ASCENDING, DESCENDING, MongoClient
from pymongo.errors import DuplicateKeyError, PyMongoError

from errors import ConflictError, StorageError
from models import Contact, Entity, User, Vehicle, utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=Entity)

INDEXES: Dict[str, List[Tuple[Any, Dict[str, Any]]]] = {
    "users": [
        ([("email", ASCENDING)], {"unique": True}),
        ([("role", ASCENDING)], {}),
        ([("isActive", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
    ],
    "vehicles": [
        ([("brand", ASCENDING), ("model", ASCENDING)], {}),
        ([("category", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
        ([("price", ASCENDING)], {}),
        ([("year", ASCENDING)], {}),
        ([("isActive", ASCENDING)], {}),
        ([("specifications.fuelType", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
    ],
    "contacts": [
        ([("email", ASCENDING)], {}),
        ([("status", ASCENDING)], {}),
        ([("priority", ASCENDING)], {}),
        ([("type", ASCENDING)], {}),
        ([("createdAt", DESCENDING)], {}),
        ([("isRead", ASCENDING)], {}),
        ([("assignedTo", ASCENDING)], {}),
    ],
}


def to_object_id(value: str) -> Optional[ObjectId]:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        return None


def parse_sort(sort: Optional[str]) -> List[Tuple[str, int]]:
    """'-createdAt' -> [('createdAt', DESCENDING)]"""
    if not sort:
        return [("createdAt", DESCENDING)]
    if sort.startswith("-"):
        return [(sort[1:], DESCENDING)]
    return [(sort, ASCENDING)]


def count_occurrences(values: Sequence[Any]) -> Dict[str, int]:
    counts: Dict[str, int] = {}
    for value in values:
        if value is None or value == "":
            continue
        key = str(value)
        counts[key] = counts.get(key, 0) + 1
    return counts


class Datastore:
    """Process-wide MongoDB connection."""

    def __init__(self, url: str, name: str, client: Optional[MongoClient] = None):
        self.url = url
        self.name = name
        self._client = client
        self.db = None

    def connect(self) -> None:
        if self._client is None:
            self._client = MongoClient(self.url, tz_aware=True, serverSelectionTimeoutMS=5000)
        self.db = self._client[self.name]
        self.ensure_indexes()
        logger.info("Connected to MongoDB database %s", self.name)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
        self.db = None
        logger.info("MongoDB connection closed")

    def __getitem__(self, collection: str):
        if self.db is None:
            raise StorageError("Base de données non initialisée")
        return self.db[collection]

    def ensure_indexes(self) -> None:
        for collection, indexes in INDEXES.items():
            for keys, options in indexes:
                try:
                    self.db[collection].create_index(keys, **options)
                except PyMongoError:
                    logger.exception("Could not create index %s on %s", keys, collection)

    def ping(self) -> bool:
        try:
            self.db.command("ping")
            return True
        except Exception:
            logger.warning("MongoDB ping failed", exc_info=True)
            return False


class Repository(Generic[T]):
    """Typed access to one collection."""

    def __init__(self, store: Datastore, collection: str, model: Type[T]):
        self.store = store
        self.collection_name = collection
        self.model = model

    @property
    def collection(self):
        return self.store[self.collection_name]

    def _wrap(self, doc: Optional[Dict[str, Any]]) -> Optional[T]:
        return self.model.model_validate(doc) if doc is not None else None

    def get(self, entity_id: str) -> Optional[T]:
        oid = to_object_id(entity_id)
        if oid is None:
            return None
        return self.find_one({"_id": oid})

    def find_one(self, filt: Dict[str, Any]) -> Optional[T]:
        try:
            return self._wrap(self.collection.find_one(filt))
        except PyMongoError as exc:
            raise StorageError(f"Erreur de lecture ({self.collection_name})") from exc

    def find(self, filt: Dict[str, Any], sort: Optional[str] = None, skip: int = 0, limit: int = 0) -> List[T]:
        try:
            cursor = self.collection.find(filt).sort(parse_sort(sort))
            if skip:
                cursor = cursor.skip(skip)
            if limit:
                cursor = cursor.limit(limit)
            return [self.model.model_validate(d) for d in cursor]
        except PyMongoError as exc:
            raise StorageError(f"Erreur de lecture ({self.collection_name})") from exc

    def count(self, filt: Dict[str, Any]) -> int:
        try:
            return self.collection.count_documents(filt)
        except PyMongoError as exc:
            raise StorageError(f"Erreur de lecture ({self.collection_name})") from exc

    def aggregate(self, pipeline: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        try:
            return list(self.collection.aggregate(pipeline))
        except PyMongoError as exc:
            raise StorageError(f"Erreur d'agrégation ({self.collection_name})") from exc

    def field_values(self, field: str, filt: Dict[str, Any]) -> List[Any]:
        """Every value of a (dotted) field across matching documents, duplicates kept."""
        values = []
        try:
            for doc in self.collection.find(filt, {field: 1}):
                for part in field.split("."):
                    doc = doc.get(part) if isinstance(doc, dict) else None
                values.append(doc)
        except PyMongoError as exc:
            raise StorageError(f"Erreur de lecture ({self.collection_name})") from exc
        return values

    def insert(self, entity: T) -> T:
        entity.check()
        doc = entity.to_document()
        try:
            result = self.collection.insert_one(doc)
        except DuplicateKeyError as exc:
            raise ConflictError(self._duplicate_message(exc)) from exc
        except PyMongoError as exc:
            raise StorageError(f"Erreur d'écriture ({self.collection_name})") from exc
        entity.id = str(result.inserted_id)
        return entity

    def save(self, entity: T) -> T:
        """Replace the stored document; versioned entities fail on a stale write."""
        entity.check()
        entity.updated_at = utcnow()
        filt: Dict[str, Any] = {"_id": ObjectId(entity.id)}
        versioned = hasattr(entity, "version")
        if versioned:
            filt["version"] = entity.version
            entity.version += 1
        doc = entity.to_document()
        doc.pop("_id", None)
        try:
            result = self.collection.replace_one(filt, doc)
        except DuplicateKeyError as exc:
            if versioned:
                entity.version -= 1
            raise ConflictError(self._duplicate_message(exc)) from exc
        except PyMongoError as exc:
            if versioned:
                entity.version -= 1
            raise StorageError(f"Erreur d'écriture ({self.collection_name})") from exc
        if result.matched_count == 0:
            if versioned:
                entity.version -= 1
                raise ConflictError("La ressource a été modifiée entre-temps, veuillez réessayer")
            raise StorageError("Ressource introuvable lors de l'enregistrement")
        return entity

    @staticmethod
    def _duplicate_message(exc: DuplicateKeyError) -> str:
        key_value = (exc.details or {}).get("keyValue") or {}
        field = next(iter(key_value), None)
        if field is None:
            field = "email" if "email" in str(exc) else "valeur"
        return f"{field} existe déjà"


class Repositories:
    def __init__(self, store: Datastore):
        self.users: Repository[User] = Repository(store, "users", User)
        self.vehicles: Repository[Vehicle] = Repository(store, "vehicles", Vehicle)
        self.contacts: Repository[Contact] = Repository(store, "contacts", Contact)
