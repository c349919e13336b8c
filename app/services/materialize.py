"""Hand-off of accepted generation results to the entity store."""

from __future__ import annotations

import logging
from typing import Protocol

import httpx

from app.ai.pipeline.contracts import GenerationResult
from app.config import Settings
from app.jobs.models import JobRecord

logger = logging.getLogger(__name__)


class Materializer(Protocol):
  """Turns usable results into persisted resources for a subscription."""

  async def materialize(self, job: JobRecord, results: list[GenerationResult]) -> None:
    """Persist the results; raise to fail the build."""


def materialize_payload(job: JobRecord, results: list[GenerationResult]) -> dict[str, object]:
  return {
    "jobId": job.job_id,
    "subscriptionId": job.subscription_id,
    "topic": job.topic,
    "criteria": job.criteria,
    "resources": [
      {
        "title": result.title,
        "url": result.url,
        "description": result.description,
        "script": result.script,
        "schedule": result.schedule,
        "verified": result.outcome == "success",
        "initialItems": [item.model_dump(mode="json", exclude_none=True) for item in result.items],
      }
      for result in results
    ],
  }


class HttpMaterializer:
  """POST accepted results to the entity service."""

  def __init__(self, url: str, *, timeout_seconds: float = 30.0, client: httpx.AsyncClient | None = None) -> None:
    self._url = url
    self._timeout = timeout_seconds
    self._client = client

  async def materialize(self, job: JobRecord, results: list[GenerationResult]) -> None:
    client = self._client or httpx.AsyncClient(timeout=self._timeout, trust_env=False)
    try:
      logger.info("Materializing %d resources for build %s", len(results), job.job_id)
      response = await client.post(self._url, json=materialize_payload(job, results))
      response.raise_for_status()
    except httpx.HTTPStatusError as e:
      logger.error("Materialization returned %s for build %s: %s", e.response.status_code, job.job_id, e.response.text[:500])
      raise
    except httpx.RequestError as e:
      logger.error("Failed to reach the materialization endpoint for build %s: %s", job.job_id, e)
      raise
    finally:
      if self._client is None:
        await client.aclose()


class LoggingMaterializer:
  """Used when no materialization endpoint is configured."""

  async def materialize(self, job: JobRecord, results: list[GenerationResult]) -> None:
    logger.warning("SUBSCRIBE_MATERIALIZE_URL is not set; build %s produced %d resources that were not handed off: %s", job.job_id, len(results), ", ".join(result.url for result in results))


def build_materializer(settings: Settings) -> Materializer:
  if settings.materialize_url:
    return HttpMaterializer(settings.materialize_url)
  return LoggingMaterializer()
