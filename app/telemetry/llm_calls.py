"""In-memory accounting of LLM calls per build job and resource.

The store is process-scoped and intentionally non-durable: a restart loses it,
which only affects cost display, never build correctness.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from typing import Any

from app.telemetry.context import get_llm_call_context

logger = logging.getLogger(__name__)

JOB_SCOPE = "__job__"
RETIRED_JOBS_LIMIT = 500


@dataclass(frozen=True)
class LlmCallRecord:
  """One LLM request/response pair."""

  job_id: str
  resource_key: str
  agent: str
  call_index: int
  model: str
  tools: tuple[str, ...]
  started_at: str
  response_text: str = ""
  tool_calls: tuple[dict[str, str], ...] = ()
  usage: dict[str, int] | None = field(default=None, hash=False)
  streaming: bool = True
  finished_at: str | None = None

  def to_dict(self) -> dict[str, Any]:
    return {
      "jobId": self.job_id,
      "resourceKey": self.resource_key,
      "agent": self.agent,
      "callIndex": self.call_index,
      "model": self.model,
      "tools": list(self.tools),
      "responseText": self.response_text,
      "toolCalls": list(self.tool_calls),
      "usage": self.usage,
      "streaming": self.streaming,
      "startedAt": self.started_at,
      "finishedAt": self.finished_at,
    }


def _now_iso() -> str:
  return datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")


class LlmCallStore:
  """Upsert-by-(resource, call index) store of LLM calls for each job.

  Transcripts are held only while a job runs. ``retire`` folds a finished job
  into usage totals, of which the most recent ``retired_limit`` jobs are kept.
  """

  def __init__(self, *, retired_limit: int = RETIRED_JOBS_LIMIT) -> None:
    self._calls: dict[str, list[LlmCallRecord]] = {}
    self._counters: dict[tuple[str, str], int] = {}
    self._retired: OrderedDict[str, dict[str, dict[str, int]]] = OrderedDict()
    self._retired_limit = retired_limit

  def start_call(self, *, model: str, tools: list[str]) -> LlmCallRecord | None:
    """Register a streaming call under the active context. Returns None outside a build."""

    context = get_llm_call_context()
    if context is None or context.job_id is None:
      return None

    resource_key = context.resource_key or JOB_SCOPE
    counter_key = (context.job_id, resource_key)
    call_index = self._counters.get(counter_key, 0) + 1
    self._counters[counter_key] = call_index
    record = LlmCallRecord(job_id=context.job_id, resource_key=resource_key, agent=context.agent, call_index=call_index, model=model, tools=tuple(tools), started_at=_now_iso())
    self._upsert(record)
    return record

  def finish_call(self, record: LlmCallRecord | None, *, response_text: str, tool_calls: list[dict[str, str]], usage: dict[str, int] | None) -> None:
    if record is None:
      return
    finished = replace(record, response_text=response_text, tool_calls=tuple(tool_calls), usage=usage, streaming=False, finished_at=_now_iso())
    self._upsert(finished)

  def _upsert(self, record: LlmCallRecord) -> None:
    calls = self._calls.setdefault(record.job_id, [])
    for index, existing in enumerate(calls):
      if existing.resource_key == record.resource_key and existing.call_index == record.call_index:
        calls[index] = record
        return
    calls.append(record)

  def calls_for(self, job_id: str) -> list[LlmCallRecord]:
    return list(self._calls.get(job_id, []))

  def usage_by_resource(self, job_id: str) -> dict[str, dict[str, int]]:
    """Sum token usage per resource key, retired totals included."""

    totals: dict[str, dict[str, int]] = {key: dict(bucket) for key, bucket in self._retired.get(job_id, {}).items()}
    for record in self._calls.get(job_id, []):
      bucket = totals.setdefault(record.resource_key, {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0, "calls": 0})
      bucket["calls"] += 1
      if record.usage:
        for key in ("prompt_tokens", "completion_tokens", "total_tokens"):
          bucket[key] += int(record.usage.get(key, 0))
    return totals

  def has_job(self, job_id: str) -> bool:
    """Return whether transcripts or call counters are still held for a job."""

    return job_id in self._calls or any(key[0] == job_id for key in self._counters)

  def retire(self, job_id: str) -> None:
    """Drop a finished job's transcripts, keeping its usage totals."""

    totals = self.usage_by_resource(job_id)
    self._drop_calls(job_id)
    if not totals:
      self._retired.pop(job_id, None)
      return
    self._retired[job_id] = totals
    self._retired.move_to_end(job_id)
    while len(self._retired) > self._retired_limit:
      self._retired.popitem(last=False)

  def clear_resource(self, job_id: str, resource_key: str) -> None:
    calls = self._calls.get(job_id)
    if calls is not None:
      self._calls[job_id] = [record for record in calls if record.resource_key != resource_key]
    self._counters.pop((job_id, resource_key), None)
    retired = self._retired.get(job_id)
    if retired is not None:
      retired.pop(resource_key, None)

  def clear(self, job_id: str) -> None:
    self._drop_calls(job_id)
    self._retired.pop(job_id, None)

  def _drop_calls(self, job_id: str) -> None:
    self._calls.pop(job_id, None)
    for key in [key for key in self._counters if key[0] == job_id]:
      del self._counters[key]
