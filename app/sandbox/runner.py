"""Run collection scripts in a child interpreter with hard ceilings."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from pydantic import ValidationError

from app.ai.pipeline.contracts import CollectedItem
from app.config import Settings
from app.sandbox.contract import ALLOWED_MODULES, ENTRYPOINT, ENV_FAULT_EXIT_CODE, SandboxRunResult, SandboxUnavailableError
from app.sandbox.safety import check_script

logger = logging.getLogger(__name__)

DEFAULT_MEMORY_BYTES = 1024 * 1024 * 1024

_CAMEL_KEYS = {"thumbnailUrl": "thumbnail_url", "publishedAt": "published_at", "criteriaResult": "criteria_result", "metricValue": "metric_value"}

_SAFE_BUILTINS = (
  "abs", "all", "any", "bool", "dict", "divmod", "enumerate", "filter", "float", "format", "frozenset", "hasattr", "hash",
  "int", "isinstance", "issubclass", "iter", "len", "list", "map", "max", "min", "next", "object", "range", "repr",
  "reversed", "round", "set", "slice", "sorted", "str", "sum", "tuple", "zip", "__build_class__", "staticmethod",
  "classmethod", "property", "Exception", "ValueError", "KeyError", "TypeError", "IndexError", "RuntimeError",
  "AttributeError", "StopIteration", "ArithmeticError", "LookupError", "ZeroDivisionError", "UnicodeDecodeError",
)

# Executed by the child interpreter. Reads its config from stdin, writes one JSON document to stdout.
HARNESS = r"""
import json as _json
import sys

try:
  import builtins
  import httpx
except Exception as exc:
  sys.stdout.write(_json.dumps({"ok": False, "error": "sandbox environment fault: %%s" %% exc}))
  sys.exit(%(env_fault)d)

config = _json.loads(sys.stdin.read())
allowed = set(config["allowed_modules"])
state = {"fetches": 0}

try:
  import resource
  resource.setrlimit(resource.RLIMIT_AS, (config["memory_bytes"], config["memory_bytes"]))
except Exception:
  pass


class Response:
  def __init__(self, status, url, headers, content):
    self.status = status
    self.status_code = status
    self.ok = 200 <= status < 400
    self.url = url
    self.headers = headers
    self.content = content

  @property
  def text(self):
    return self.content.decode("utf-8", errors="replace")

  def json(self):
    return _json.loads(self.content)


client = httpx.Client(follow_redirects=True, timeout=config["timeout"], trust_env=False)


def fetch(url, method="GET", headers=None, params=None, data=None, json=None):
  if state["fetches"] >= config["max_fetches"]:
    raise RuntimeError("fetch limit of %%d calls per run exceeded" %% config["max_fetches"])
  state["fetches"] += 1
  request_headers = {"User-Agent": "Mozilla/5.0 (compatible; SubscribeEngine/1.0)"}
  request_headers.update(headers or {})
  with client.stream(method, url, headers=request_headers, params=params, data=data, json=json) as resp:
    body = bytearray()
    for chunk in resp.iter_bytes():
      body.extend(chunk)
      if len(body) > config["max_response_bytes"]:
        raise RuntimeError("response from %%s exceeds %%d bytes" %% (url, config["max_response_bytes"]))
    return Response(resp.status_code, str(resp.url), dict(resp.headers), bytes(body))


real_import = builtins.__import__


def guarded_import(name, globals=None, locals=None, fromlist=(), level=0):
  if level == 0 and (name in allowed or any(name.startswith(m + ".") or m.startswith(name + ".") for m in allowed)):
    return real_import(name, globals, locals, fromlist, level)
  raise ImportError("import of %%s is not allowed in collection scripts" %% name)


def script_print(*args, **kwargs):
  kwargs["file"] = sys.stderr
  print(*args, **kwargs)


safe_builtins = {name: getattr(builtins, name) for name in config["builtins"]}
safe_builtins["__import__"] = guarded_import
safe_builtins["print"] = script_print
scope = {"__builtins__": safe_builtins, "__name__": "collection_script", "fetch": fetch}

try:
  exec(compile(config["script"], "<collection-script>", "exec"), scope)
  collect = scope.get(config["entrypoint"])
  if not callable(collect):
    raise RuntimeError("script does not define %%s()" %% config["entrypoint"])
  items = collect()
  if items is None:
    items = []
  if not isinstance(items, (list, tuple)):
    raise TypeError("%%s() must return a list, got %%s" %% (config["entrypoint"], type(items).__name__))
  output = _json.dumps({"ok": True, "items": list(items), "fetches": state["fetches"]}, default=str)
except BaseException as exc:
  output = _json.dumps({"ok": False, "error": "%%s: %%s" %% (type(exc).__name__, exc), "fetches": state["fetches"]})

sys.stdout.write(output)
""" % {"env_fault": ENV_FAULT_EXIT_CODE}


def _normalize_item(raw: dict[str, Any]) -> dict[str, Any]:
  return {_CAMEL_KEYS.get(key, key): value for key, value in raw.items()}


class ScriptSandbox:
  """Execute a collection script under call, size, memory and time ceilings."""

  def __init__(self, *, python: str = "python3", timeout_seconds: float = 30.0, max_fetches: int = 5, max_response_bytes: int = 5 * 1024 * 1024, memory_bytes: int = DEFAULT_MEMORY_BYTES, enabled: bool = True) -> None:
    self._python = python
    self._timeout = timeout_seconds
    self._max_fetches = max_fetches
    self._max_response_bytes = max_response_bytes
    self._memory_bytes = memory_bytes
    self._enabled = enabled

  @classmethod
  def from_settings(cls, settings: Settings) -> ScriptSandbox:
    return cls(python=settings.sandbox_python, timeout_seconds=settings.sandbox_timeout_seconds, max_fetches=settings.sandbox_max_fetches, max_response_bytes=settings.sandbox_max_response_bytes, enabled=settings.sandbox_enabled)

  async def run(self, script: str) -> SandboxRunResult:
    """Run a script. Raises SandboxUnavailableError only for environment faults."""
    if not self._enabled:
      raise SandboxUnavailableError("Script sandbox is disabled by configuration.")

    safety = check_script(script)
    if not safety.safe:
      return SandboxRunResult(ok=False, error=f"Unsafe script: {safety.violation}")

    config = {
      "script": script,
      "entrypoint": ENTRYPOINT,
      "allowed_modules": sorted(ALLOWED_MODULES),
      "builtins": list(_SAFE_BUILTINS),
      "max_fetches": self._max_fetches,
      "max_response_bytes": self._max_response_bytes,
      "memory_bytes": self._memory_bytes,
      "timeout": self._timeout,
    }

    try:
      process = await asyncio.create_subprocess_exec(self._python, "-I", "-c", HARNESS, stdin=asyncio.subprocess.PIPE, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
    except OSError as exc:
      raise SandboxUnavailableError(f"Cannot start sandbox interpreter {self._python!r}: {exc}") from exc

    try:
      stdout, stderr = await asyncio.wait_for(process.communicate(json.dumps(config).encode("utf-8")), timeout=self._timeout)
    except TimeoutError:
      process.kill()
      await process.wait()
      return SandboxRunResult(ok=False, error=f"Script timed out after {self._timeout:g}s")
    except asyncio.CancelledError:
      process.kill()
      await asyncio.shield(process.wait())
      raise

    if process.returncode == ENV_FAULT_EXIT_CODE:
      raise SandboxUnavailableError(stdout.decode("utf-8", errors="replace").strip() or "Sandbox environment fault.")

    try:
      payload = json.loads(stdout.decode("utf-8", errors="replace"))
    except json.JSONDecodeError:
      tail = stderr.decode("utf-8", errors="replace").strip()[-500:]
      return SandboxRunResult(ok=False, error=f"Sandbox exited with code {process.returncode}: {tail or 'no output'}")

    fetch_count = int(payload.get("fetches") or 0)
    if not payload.get("ok"):
      return SandboxRunResult(ok=False, error=str(payload.get("error") or "Script failed."), fetch_count=fetch_count)

    items: list[CollectedItem] = []
    for index, raw in enumerate(payload.get("items") or []):
      if not isinstance(raw, dict):
        return SandboxRunResult(ok=False, error=f"Item {index} is {type(raw).__name__}, expected a dict with title and url.", fetch_count=fetch_count)
      try:
        items.append(CollectedItem.model_validate(_normalize_item(raw)))
      except ValidationError as exc:
        problems = "; ".join(f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}" for error in exc.errors(include_input=False))
        return SandboxRunResult(ok=False, error=f"Item {index} is invalid: {problems}", fetch_count=fetch_count)

    logger.debug("Sandbox run collected %d items with %d fetches", len(items), fetch_count)
    return SandboxRunResult(ok=True, items=items, fetch_count=fetch_count)
