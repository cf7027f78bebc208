# app/api/error_handlers.py
import logging
import traceback

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.models.error_models import AppError
from app.services import error_log_service

logger = logging.getLogger(__name__)

# 這些是正常流程會出現的錯誤，不寫進 error_logs
NOT_LOGGED_CODES = {"NOT_FOUND", "VALIDATION_ERROR", "MISSING_USER_ID"}


async def _log_to_store(request: Request, error: AppError, stack: str = None) -> None:
    if error.code in NOT_LOGGED_CODES:
        return
    await run_in_threadpool(
        error_log_service.log_error_event,
        error.code,
        error.message,
        request.query_params.get("userId"),
        stack,
        request.url.path,
    )


async def app_error_handler(request: Request, exc: AppError):
    logger.error(f"[{exc.code}] {exc.message} ({request.method} {request.url.path}, {exc.status_code})")
    await _log_to_store(request, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_body())


async def not_found_handler(request: Request, exc: StarletteHTTPException):
    if exc.status_code == 404:
        error = AppError.from_type("NOT_FOUND", f"Route {request.method} {request.url.path} not found")
    else:
        error = AppError(str(exc.detail), "HTTP_ERROR", exc.status_code, False)
    return JSONResponse(status_code=error.status_code, content=error.to_body(), headers=exc.headers)


async def validation_error_handler(request: Request, exc: RequestValidationError):
    error = AppError.from_type("VALIDATION_ERROR", "Invalid request")
    body = error.to_body()
    body["error"]["details"] = jsonable_encoder(exc.errors())
    return JSONResponse(status_code=error.status_code, content=body)


async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    error = AppError.from_type("INTERNAL_ERROR", "Internal server error")
    await _log_to_store(request, error, "".join(traceback.format_exception(exc)))
    return JSONResponse(status_code=error.status_code, content=error.to_body())


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(StarletteHTTPException, not_found_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
