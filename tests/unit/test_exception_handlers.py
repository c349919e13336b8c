"""Unit tests for API exception sanitization behavior."""

from __future__ import annotations

import json

import pytest
from starlette.requests import Request

from app.core.exceptions import _sanitize_validation_errors, job_conflict_handler
from app.jobs.errors import ActiveJobExistsError, InvalidJobStateError


def _request() -> Request:
  return Request({"type": "http", "method": "POST", "path": "/v1/builds", "headers": [], "query_string": b""})


def test_sanitize_validation_errors_removes_input_and_serializes_exception_ctx() -> None:
  """Ensure validation errors stay JSON-serializable and redact raw request payloads."""
  errors = [{"type": "value_error", "loc": ("body", "topic"), "msg": "Value error, topic is blank.", "input": {"topic": "  "}, "ctx": {"error": ValueError("topic is blank."), "input": {"topic": "  "}}}]
  sanitized = _sanitize_validation_errors(errors)
  assert "input" not in sanitized[0]
  assert sanitized[0]["ctx"]["error"] == "ValueError: topic is blank."
  assert "input" not in sanitized[0]["ctx"]
  assert sanitized[0]["loc"] == ["body", "topic"]


@pytest.mark.anyio
async def test_conflicts_map_to_409_with_active_job_id() -> None:
  response = await job_conflict_handler(_request(), ActiveJobExistsError("sub-1", "job-7"))
  assert response.status_code == 409
  assert json.loads(response.body)["activeJobId"] == "job-7"

  response = await job_conflict_handler(_request(), InvalidJobStateError("Build job-7 is complete."))
  assert response.status_code == 409
  assert json.loads(response.body) == {"detail": "Build job-7 is complete."}
