"""
Error kinds raised by the directory, form and evaluation services.

Every kind maps to one HTTP status; FastAPI renders them through the
handlers registered with `register_exception_handlers`.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)


class ServiceError(Exception):
    kind = "ServiceError"
    status_code = 400

    def __init__(self, message: str, detail: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail or {}

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.kind, "message": self.message, "detail": self.detail}


class NotFoundError(ServiceError):
    kind = "NotFound"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found", {"entity": entity, "id": str(entity_id)})


# Form definition
class InvalidWindowError(ServiceError):
    kind = "InvalidWindow"


class InvalidAssociationError(ServiceError):
    kind = "InvalidAssociation"


class InvalidLineScoreError(ServiceError):
    kind = "InvalidLineScore"


class InvalidSectionsError(ServiceError):
    kind = "InvalidSections"


class FormInUseError(ServiceError):
    kind = "FormInUse"
    status_code = 409


# Evaluation validation
class TypeMismatchError(ServiceError):
    kind = "TypeMismatch"


class TargetNotInFormError(ServiceError):
    kind = "TargetNotInForm"


class UnknownLineError(ServiceError):
    kind = "UnknownLine"


class NotationMismatchError(ServiceError):
    kind = "NotationMismatch"


class MissingCommonScoreError(ServiceError):
    kind = "MissingCommonScore"


class MissingIndividualScoresError(ServiceError):
    kind = "MissingIndividualScores"


class MissingMixedScoreError(ServiceError):
    kind = "MissingMixedScore"


class ScoreOutOfRangeError(ServiceError):
    kind = "ScoreOutOfRange"


class FormNotActiveError(ServiceError):
    kind = "FormNotActive"


# Directory
class InvalidRelationError(ServiceError):
    kind = "InvalidRelation"


class DeletionBlockedError(ServiceError):
    kind = "DeletionBlocked"
    status_code = 409


class ConflictError(ServiceError):
    kind = "Conflict"
    status_code = 409


async def service_error_handler(request: Request, exc: ServiceError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def store_error_handler(request: Request, exc: PyMongoError) -> JSONResponse:
    logger.error("Store failure on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=500,
        content={"error": "ServerFault", "message": "Database operation failed", "detail": {}},
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ServiceError, service_error_handler)
    app.add_exception_handler(PyMongoError, store_error_handler)
