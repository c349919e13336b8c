from __future__ import annotations

import json
from dataclasses import replace

import httpx
import pytest

from app.ai.pipeline.contracts import CollectedItem, GenerationResult
from app.config import get_settings
from app.services.materialize import HttpMaterializer, LoggingMaterializer, build_materializer, materialize_payload
from tests.support import make_job


def _results() -> list[GenerationResult]:
  return [
    GenerationResult(title="Rust Blog", url="https://blog.rust-lang.org/feed.xml", script="def collect():\n    return []", items=[CollectedItem(title="Rust 1.80", url="https://blog.rust-lang.org/1.80")], outcome="success"),
    GenerationResult(title="This Week", url="https://this-week-in-rust.org/rss.xml", script="def collect():\n    return []", outcome="unverified"),
  ]


def test_payload_marks_only_validated_scripts_verified() -> None:
  payload = materialize_payload(make_job(criteria="stable releases"), _results())
  assert payload["subscriptionId"] == "sub-1"
  assert payload["criteria"] == "stable releases"
  resources = payload["resources"]
  assert [resource["verified"] for resource in resources] == [True, False]
  assert resources[0]["initialItems"] == [{"title": "Rust 1.80", "url": "https://blog.rust-lang.org/1.80"}]


@pytest.mark.anyio
async def test_http_materializer_posts_payload() -> None:
  received: list[dict] = []

  def handler(request: httpx.Request) -> httpx.Response:
    received.append(json.loads(request.content))
    return httpx.Response(201)

  materializer = HttpMaterializer("https://entities.test/resources", client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
  await materializer.materialize(make_job(), _results())
  assert received[0]["jobId"] == "job-1"
  assert len(received[0]["resources"]) == 2


@pytest.mark.anyio
async def test_http_materializer_raises_on_rejection() -> None:
  materializer = HttpMaterializer("https://entities.test/resources", client=httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))))
  with pytest.raises(httpx.HTTPStatusError):
    await materializer.materialize(make_job(), _results())


def test_build_materializer_picks_transport_from_settings() -> None:
  assert isinstance(build_materializer(replace(get_settings(), materialize_url=None)), LoggingMaterializer)
  assert isinstance(build_materializer(replace(get_settings(), materialize_url="https://entities.test/resources")), HttpMaterializer)
