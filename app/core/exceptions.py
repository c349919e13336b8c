import logging
from typing import Any

from fastapi import HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from app.jobs.errors import ActiveJobExistsError, InvalidJobStateError, JobNotFoundError

logger = logging.getLogger("uvicorn.error")


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  if value is None or isinstance(value, bool | int | float | str):
    return value
  if isinstance(value, dict):
    return {str(key): _coerce_json_safe(item) for key, item in value.items()}
  if isinstance(value, list | tuple | set):
    return [_coerce_json_safe(item) for item in value]
  if isinstance(value, BaseException):
    error_message = str(value)
    if error_message:
      return f"{type(value).__name__}: {error_message}"
    return type(value).__name__
  return str(value)


def _error_payload(detail: Any) -> dict[str, Any]:
  return {"detail": detail}


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    # Remove nested input values from context payloads as well.
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger.error("Global exception path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error"))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors without leaking payloads."""
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors))


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
  """Handle HTTPExceptions without exposing 5xx diagnostics."""
  from app.config import get_settings

  if exc.status_code >= 500:
    logger.error("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail)
    return JSONResponse(status_code=exc.status_code, content=_error_payload("Internal Server Error"))

  if get_settings().log_http_4xx:
    logger.warning("HTTPException path=%s status_code=%s detail=%s", request.url.path, exc.status_code, exc.detail)
  return JSONResponse(status_code=exc.status_code, content=_error_payload(exc.detail))


async def job_not_found_handler(request: Request, exc: JobNotFoundError) -> JSONResponse:
  return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content=_error_payload(str(exc) or "Build job not found."))


async def job_conflict_handler(request: Request, exc: Exception) -> JSONResponse:
  """Map state conflicts (active build exists, operation not allowed now) to 409."""
  logger.info("Build conflict path=%s error_type=%s detail=%s", request.url.path, type(exc).__name__, exc)
  payload = _error_payload(str(exc))
  if isinstance(exc, ActiveJobExistsError):
    payload["activeJobId"] = exc.job_id
  return JSONResponse(status_code=status.HTTP_409_CONFLICT, content=payload)


def register_exception_handlers(app: Any) -> None:
  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(HTTPException, http_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  app.add_exception_handler(JobNotFoundError, job_not_found_handler)
  app.add_exception_handler(ActiveJobExistsError, job_conflict_handler)
  app.add_exception_handler(InvalidJobStateError, job_conflict_handler)
