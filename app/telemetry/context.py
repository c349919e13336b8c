"""Context helpers for correlating LLM calls with build work."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass


@dataclass(frozen=True)
class LlmCallContext:
  """Capture upstream metadata so transport calls can be accounted consistently."""

  agent: str
  job_id: str | None
  resource_key: str | None
  topic: str | None = None


_CURRENT_LLM_CONTEXT: ContextVar[LlmCallContext | None] = ContextVar("llm_call_context", default=None)


def get_llm_call_context() -> LlmCallContext | None:
  """Return the active LLM call context so callers can attribute usage."""
  return _CURRENT_LLM_CONTEXT.get()


@contextmanager
def llm_call_context(*, agent: str, job_id: str | None, resource_key: str | None, topic: str | None = None) -> Iterator[LlmCallContext]:
  """Set contextual metadata for downstream LLM calls and reset it afterward."""
  # Store the call metadata in a contextvar so nested agent loops inherit it.
  context = LlmCallContext(agent=agent, job_id=job_id, resource_key=resource_key, topic=topic)
  token = _CURRENT_LLM_CONTEXT.set(context)

  try:
    yield context

  finally:
    _CURRENT_LLM_CONTEXT.reset(token)
