"""Shared FastAPI dependencies."""

from __future__ import annotations

import logging

from fastapi import HTTPException, Request, status

from app.services.builds import BuildService

logger = logging.getLogger(__name__)


async def get_build_service(request: Request) -> BuildService:
  """Return the process-wide build service wired at startup."""
  service = getattr(request.app.state, "build_service", None)
  if service is None:
    logger.error("Build service requested before startup wiring completed.")
    raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Build service is not ready")
  return service
