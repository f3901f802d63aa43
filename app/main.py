from __future__ import annotations

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError

from app.api.routes import generations
from app.core.exceptions import generation_exception_handler, global_exception_handler, request_validation_exception_handler
from app.core.lifespan import lifespan
from app.core.middleware import RequestLoggingMiddleware
from app.generation.errors import GenerationError


def create_app() -> FastAPI:
  app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)

  app.add_exception_handler(Exception, global_exception_handler)
  app.add_exception_handler(GenerationError, generation_exception_handler)
  app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
  app.add_middleware(RequestLoggingMiddleware)

  @app.get("/health", include_in_schema=False)
  async def health_check() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok", "version": "0.1.0"}

  app.include_router(generations.router, prefix="/internal", tags=["generations"])
  return app


app = create_app()
