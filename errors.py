"""
Error taxonomy and FastAPI exception handlers.

Every error body uses the API envelope:
    {"success": false, "message": "...", "errors": [...]}

Usage:
    from errors import NotFoundError, setup_exception_handlers

    raise NotFoundError("Véhicule non trouvé")

    setup_exception_handlers(app, debug=not settings.is_production)
"""
import logging
import traceback
from typing import Any, Dict, List, Optional

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError
from starlette.exceptions import HTTPException as StarletteHTTPException

logger = logging.getLogger(__name__)


class APIException(Exception):
    """Base exception for all API errors."""

    status_code = 500

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        errors: Optional[List[Dict[str, Any]]] = None,
    ):
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        self.errors = errors
        super().__init__(message)


class ValidationError(APIException):
    """Malformed or out-of-range input. Lists every failing field."""

    status_code = 400

    def __init__(self, message: str = "Données invalides", errors: Optional[List[Dict[str, Any]]] = None):
        super().__init__(message, errors=errors)

    @classmethod
    def for_field(cls, field: str, message: str) -> "ValidationError":
        return cls(errors=[{"field": field, "message": message}])


class AuthenticationError(APIException):
    status_code = 401


class AuthorizationError(APIException):
    status_code = 403

    def __init__(self, message: str = "Accès refusé"):
        super().__init__(message)


class NotFoundError(APIException):
    status_code = 404


class ConflictError(APIException):
    status_code = 409


class StorageError(APIException):
    """Datastore or media host failure. 400 when the client caused it."""

    status_code = 500


class UpstreamError(APIException):
    """Email relay failure. Logged by the sender, never returned to a client."""

    status_code = 502


def envelope(success: bool, message: Optional[str] = None, data: Any = None,
             errors: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
    body: Dict[str, Any] = {"success": success}
    if message is not None:
        body["message"] = message
    if data is not None:
        body["data"] = data
    if errors is not None:
        body["errors"] = errors
    return body


def ok(data: Any = None, message: Optional[str] = None) -> Dict[str, Any]:
    return envelope(True, message=message, data=data)


def error_response(status_code: int, message: str, errors: Optional[List[Dict[str, Any]]] = None,
                   debug: Optional[Dict[str, Any]] = None) -> JSONResponse:
    body = envelope(False, message=message, errors=errors)
    if debug:
        body.update(debug)
    return JSONResponse(status_code=status_code, content=body)


def _field_errors(exc: RequestValidationError) -> List[Dict[str, Any]]:
    errors = []
    for err in exc.errors():
        # drop the "body"/"query"/"path" prefix pydantic adds
        loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
        message = err.get("msg", "Valeur invalide")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.append({"field": ".".join(loc) or None, "message": message})
    return errors


def setup_exception_handlers(app: FastAPI, debug: bool = False) -> None:
    """Register handlers mapping known failure shapes to status codes."""

    @app.exception_handler(APIException)
    async def api_exception_handler(request: Request, exc: APIException):
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return error_response(exc.status_code, exc.message, exc.errors)

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        return error_response(400, "Données invalides", _field_errors(exc))

    @app.exception_handler(DuplicateKeyError)
    async def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
        key_value = (exc.details or {}).get("keyValue") or {}
        field = next(iter(key_value), "valeur")
        return error_response(409, f"{field} existe déjà")

    @app.exception_handler(InvalidId)
    async def invalid_id_handler(request: Request, exc: InvalidId):
        return error_response(404, "Ressource non trouvée")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        if exc.status_code == 404:
            return error_response(404, f"Route non trouvée - {request.url.path}")
        return error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception):
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        extra = None
        if debug:
            extra = {"error": str(exc), "stack": traceback.format_exc()}
        return error_response(500, "Erreur serveur interne", debug=extra)
