from __future__ import annotations

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.api.routes import builds
from app.config import get_settings
from app.core.exceptions import register_exception_handlers
from app.core.lifespan import lifespan

settings = get_settings()

app = FastAPI(title="Subscribe Build Engine", lifespan=lifespan, docs_url=None if settings.environment == "production" else "/docs", redoc_url=None)

app.add_middleware(CORSMiddleware, allow_origins=list(settings.allowed_origins), allow_credentials=True, allow_methods=["GET", "POST", "DELETE", "OPTIONS"], allow_headers=["content-type", "authorization"], expose_headers=["content-length"])

register_exception_handlers(app)


@app.get("/health", include_in_schema=False)
async def health_check() -> dict[str, str]:
  """Return a simple health status."""
  return {"status": "ok", "version": "0.1.0"}


app.include_router(builds.router, prefix="/v1/builds", tags=["builds"])
