"""Contract between the sandbox runner and collection scripts.

A collection script is Python source that defines a top-level function::

    def collect():
        resp = fetch("https://example.com/feed.json")
        return [{"title": ..., "url": ..., "published_at": ...} for ... in resp.json()]

Inside the sandbox only ``fetch(url, method="GET", headers=None, params=None,
data=None, json=None)`` and a small allow-list of standard modules are
available. ``fetch`` returns an object with ``status``, ``url``, ``headers``,
``text`` and ``json()``. Each run is limited in fetch count, response size and
wall-clock time.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from app.ai.pipeline.contracts import CollectedItem

ENTRYPOINT = "collect"

# Exit code the harness uses for faults of the execution environment itself.
ENV_FAULT_EXIT_CODE = 3

ALLOWED_MODULES: frozenset[str] = frozenset(
  {
    "base64",
    "collections",
    "datetime",
    "email.utils",
    "hashlib",
    "html",
    "itertools",
    "json",
    "math",
    "re",
    "string",
    "time",
    "typing",
    "urllib.parse",
    "xml.etree.ElementTree",
  }
)


class SandboxUnavailableError(RuntimeError):
  """The execution facility cannot run scripts at all (environment fault)."""


@dataclass(frozen=True)
class SandboxRunResult:
  """Outcome of one script execution."""

  ok: bool
  items: list[CollectedItem] = field(default_factory=list)
  error: str | None = None
  fetch_count: int = 0

  @property
  def item_count(self) -> int:
    return len(self.items)
