"""Cooperative cancellation tokens for build work.

Tokens live only in process memory. Nothing here survives a restart, and the
orphan sweep in ``app.jobs.recovery`` relies on exactly that: a job that claims
to be in progress while this registry holds no tokens for it cannot be running.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable
from typing import TypeVar

from app.jobs.errors import BuildCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Key used for job-scoped work that is not tied to a single resource.
DISCOVER_KEY = "__discover__"


class CancellationToken:
  """Signal checked at every suspension point of one unit of work."""

  def __init__(self, job_id: str, resource_key: str | None = None) -> None:
    self.job_id = job_id
    self.resource_key = resource_key
    self._event = asyncio.Event()

  @property
  def cancelled(self) -> bool:
    return self._event.is_set()

  def cancel(self) -> None:
    self._event.set()

  def raise_if_cancelled(self) -> None:
    if self._event.is_set():
      raise BuildCancelledError(self.job_id, self.resource_key)

  async def guard(self, awaitable: Awaitable[T]) -> T:
    """Await an external call, abandoning it as soon as the token fires."""
    if self._event.is_set():
      # Close an un-started coroutine so it is not reported as never awaited.
      close = getattr(awaitable, "close", None)
      if callable(close):
        close()
      raise BuildCancelledError(self.job_id, self.resource_key)

    task = asyncio.ensure_future(awaitable)
    waiter = asyncio.ensure_future(self._event.wait())
    try:
      done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    except asyncio.CancelledError:
      task.cancel()
      waiter.cancel()
      raise

    if task in done:
      waiter.cancel()
      return task.result()

    # The token fired first; interrupt the in-flight call and wait for it to unwind.
    task.cancel()
    try:
      await task
    except asyncio.CancelledError:
      pass
    except Exception:  # noqa: BLE001
      logger.debug("Cancelled call for %s/%s raised while unwinding.", self.job_id, self.resource_key, exc_info=True)
    raise BuildCancelledError(self.job_id, self.resource_key)

  async def sleep(self, seconds: float) -> None:
    """Sleep that wakes up and raises when the token fires."""
    try:
      await asyncio.wait_for(self._event.wait(), timeout=seconds)
    except TimeoutError:
      return
    raise BuildCancelledError(self.job_id, self.resource_key)


class CancellationRegistry:
  """Process-scoped registry of live tokens and aborted keys per job."""

  def __init__(self) -> None:
    self._tokens: dict[tuple[str, str], CancellationToken] = {}
    self._aborted: set[tuple[str, str]] = set()

  def issue(self, job_id: str, resource_key: str) -> CancellationToken:
    """Register a fresh token, superseding any stale token for the same key."""

    stale = self._tokens.get((job_id, resource_key))
    if stale is not None and not stale.cancelled:
      logger.debug("Superseding live token for %s/%s", job_id, resource_key)
      stale.cancel()
    token = CancellationToken(job_id, resource_key)
    self._tokens[(job_id, resource_key)] = token
    return token

  def get(self, job_id: str, resource_key: str) -> CancellationToken | None:
    return self._tokens.get((job_id, resource_key))

  def release(self, job_id: str, resource_key: str, token: CancellationToken) -> None:
    """Drop a token when its work ends, unless a newer token replaced it."""

    if self._tokens.get((job_id, resource_key)) is token:
      del self._tokens[(job_id, resource_key)]

  def is_live(self, job_id: str, resource_key: str) -> bool:
    token = self._tokens.get((job_id, resource_key))
    return token is not None and not token.cancelled

  def live_keys(self, job_id: str) -> list[str]:
    return [key for (owner, key), token in self._tokens.items() if owner == job_id and not token.cancelled]

  def has_live_tokens(self, job_id: str) -> bool:
    return bool(self.live_keys(job_id))

  def cancel(self, job_id: str, resource_key: str) -> bool:
    token = self._tokens.get((job_id, resource_key))
    if token is None or token.cancelled:
      return False
    token.cancel()
    return True

  def cancel_all(self, job_id: str) -> list[str]:
    """Fire every live token of a job and return the affected keys."""

    keys = self.live_keys(job_id)
    for key in keys:
      self._tokens[(job_id, key)].cancel()
    return keys

  def mark_aborted(self, job_id: str, resource_key: str) -> bool:
    """Mark a key aborted. Returns False when it already was."""

    if (job_id, resource_key) in self._aborted:
      return False
    self._aborted.add((job_id, resource_key))
    return True

  def clear_aborted(self, job_id: str, resource_key: str) -> None:
    self._aborted.discard((job_id, resource_key))

  def is_aborted(self, job_id: str, resource_key: str) -> bool:
    return (job_id, resource_key) in self._aborted

  def forget_job(self, job_id: str) -> None:
    """Drop all bookkeeping for a job once it is terminal or deleted."""

    for key in [key for key in self._tokens if key[0] == job_id]:
      del self._tokens[key]
    self._aborted = {key for key in self._aborted if key[0] != job_id}
