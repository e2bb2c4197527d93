"""
FastAPI exception handlers mapping errors to JSON responses.

Every response carries a ``message`` field; classified errors also carry a
``kind``. Storage-layer errors are translated into the 400 family so that
Mongo vocabulary never reaches the client.
"""

import logging

from bson.errors import InvalidId
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pymongo.errors import DuplicateKeyError

from pairchat.config import get_settings
from pairchat.exceptions import ChatError

logger = logging.getLogger(__name__)


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    logger.info("%s for %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    errors = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()) if part != "body")
        errors.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return JSONResponse(
        status_code=400,
        content={"message": "Validation Error", "kind": "InvalidArgument", "errors": errors},
    )


async def duplicate_key_handler(request: Request, exc: DuplicateKeyError) -> JSONResponse:
    key_value = (exc.details or {}).get("keyValue") or {}
    field = next(iter(key_value), None)
    if field == "email":
        message = "Email already exists"
    elif field:
        message = f"{field} already exists"
    else:
        message = "Duplicate value"
    logger.info("DuplicateKeyError for %s %s: field=%s", request.method, request.url.path, field)
    return JSONResponse(status_code=400, content={"message": message, "kind": "InvalidArgument"})


async def invalid_id_handler(request: Request, exc: InvalidId) -> JSONResponse:
    return JSONResponse(status_code=400, content={"message": "Invalid ID format", "kind": "InvalidArgument"})


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error for %s %s", request.method, request.url.path)
    if get_settings().is_development:
        content = {"message": str(exc) or type(exc).__name__, "kind": type(exc).__name__}
    else:
        content = {"message": "Internal server error"}
    return JSONResponse(status_code=500, content=content)


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(DuplicateKeyError, duplicate_key_handler)
    app.add_exception_handler(InvalidId, invalid_id_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
