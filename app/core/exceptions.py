import logging
from typing import Any

from app.generation.errors import GenerationError
from fastapi import Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

# Kinds where credits were never touched get their own message; everything else was refunded.
_STATUS_BY_KIND = {"insufficient_credit": status.HTTP_402_PAYMENT_REQUIRED, "invalid_request": status.HTTP_422_UNPROCESSABLE_ENTITY, "duplicate_request": status.HTTP_409_CONFLICT}
_GENERIC_FAILURE = "Generation failed; no credits were charged."


def _coerce_json_safe(value: Any) -> Any:
  """Convert unsupported values into JSON-safe primitives for error responses."""
  # Keep native JSON primitives unchanged.
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


def _error_payload(detail: Any, *, request_id: str | None = None, kind: str | None = None) -> dict[str, Any]:
  """Build a safe error payload that avoids leaking internal details to clients."""
  payload: dict[str, Any] = {"detail": detail}
  if kind:
    payload["kind"] = kind
  # Attach the generation request id so support can correlate reports to ledger rows.
  if request_id:
    payload["requestId"] = request_id
  return payload


def _sanitize_validation_errors(errors: list[dict[str, Any]]) -> list[dict[str, Any]]:
  """Return validation errors without raw input payloads."""
  sanitized: list[dict[str, Any]] = []
  for error in errors:
    scrubbed = {key: value for key, value in error.items() if key != "input"}
    if "ctx" in scrubbed and isinstance(scrubbed["ctx"], dict):
      scrubbed_ctx = dict(scrubbed["ctx"])
      scrubbed_ctx.pop("input", None)
      scrubbed["ctx"] = scrubbed_ctx
    sanitized.append(_coerce_json_safe(scrubbed))
  return sanitized


def status_for_generation_error(exc: GenerationError) -> int:
  return _STATUS_BY_KIND.get(exc.kind, status.HTTP_502_BAD_GATEWAY)


async def generation_exception_handler(request: Request, exc: GenerationError) -> JSONResponse:
  """Map the failure taxonomy onto HTTP responses."""
  logger = logging.getLogger("uvicorn.error")
  status_code = status_for_generation_error(exc)
  if status_code == status.HTTP_402_PAYMENT_REQUIRED:
    detail = "Not enough credits for this generation."
  elif status_code in (status.HTTP_409_CONFLICT, status.HTTP_422_UNPROCESSABLE_ENTITY):
    detail = exc.message
  else:
    detail = _GENERIC_FAILURE
  logger.warning("Generation error path=%s kind=%s request_id=%s status_code=%d", request.url.path, exc.kind, exc.request_id, status_code)
  return JSONResponse(status_code=status_code, content=_error_payload(detail, request_id=exc.request_id, kind=exc.kind))


async def request_validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
  """Log request validation errors for debugging without leaking payloads."""
  sanitized_errors = _sanitize_validation_errors(exc.errors())
  # Keep validation logs concise because 422s are client-correctable and expected.
  logger = logging.getLogger("uvicorn.error")
  logger.warning("Request validation failed path=%s method=%s errors=%s", request.url.path, request.method, sanitized_errors)
  return JSONResponse(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, content=_error_payload(sanitized_errors, kind="invalid_request"))


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
  """Global exception handler to catch unhandled errors."""
  logger = logging.getLogger("uvicorn.error")
  logger.error("Global exception path=%s error_type=%s", request.url.path, type(exc).__name__, exc_info=True)
  return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=_error_payload("Internal Server Error"))
