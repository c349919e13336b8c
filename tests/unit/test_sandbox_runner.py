"""Child-interpreter sandbox runs. No network: scripts here never call fetch()."""

from __future__ import annotations

import asyncio
import sys

import pytest

from app.sandbox.contract import SandboxUnavailableError
from app.sandbox.runner import ScriptSandbox


def _sandbox(**kwargs) -> ScriptSandbox:
  return ScriptSandbox(python=sys.executable, timeout_seconds=20, **kwargs)


@pytest.mark.anyio
async def test_collect_items_are_normalized() -> None:
  script = 'import json\n\ndef collect():\n    return [{"title": "A", "url": "https://example.com/a", "publishedAt": "2026-01-01T00:00:00Z"}]\n'
  result = await _sandbox().run(script)
  assert result.ok, result.error
  assert result.item_count == 1
  assert result.items[0].published_at == "2026-01-01T00:00:00Z"
  assert result.fetch_count == 0


@pytest.mark.anyio
async def test_runtime_errors_are_reported_not_raised() -> None:
  result = await _sandbox().run("def collect():\n    return [1 / 0]\n")
  assert not result.ok
  assert "ZeroDivisionError" in (result.error or "")


@pytest.mark.anyio
async def test_items_missing_required_fields_are_rejected() -> None:
  result = await _sandbox().run('def collect():\n    return [{"title": "no url"}]\n')
  assert not result.ok
  assert "Item 0 is invalid" in (result.error or "")


@pytest.mark.anyio
async def test_unsafe_scripts_never_reach_the_interpreter() -> None:
  result = await ScriptSandbox(python="/nonexistent/python").run("import os\ndef collect():\n    return []\n")
  assert not result.ok
  assert (result.error or "").startswith("Unsafe script")


@pytest.mark.anyio
async def test_missing_interpreter_is_an_environment_fault() -> None:
  with pytest.raises(SandboxUnavailableError):
    await ScriptSandbox(python="/nonexistent/python").run("def collect():\n    return []\n")


@pytest.mark.anyio
async def test_disabled_sandbox_is_unavailable() -> None:
  with pytest.raises(SandboxUnavailableError):
    await _sandbox(enabled=False).run("def collect():\n    return []\n")


@pytest.mark.anyio
async def test_cancelled_run_kills_and_reaps_the_child(monkeypatch) -> None:
  spawned: list[asyncio.subprocess.Process] = []
  real_exec = asyncio.create_subprocess_exec

  async def _spawn(*args, **kwargs):
    process = await real_exec(*args, **kwargs)
    spawned.append(process)
    return process

  monkeypatch.setattr(asyncio, "create_subprocess_exec", _spawn)
  run = asyncio.create_task(_sandbox().run("import time\n\ndef collect():\n    time.sleep(30)\n    return []\n"))
  while not spawned:
    await asyncio.sleep(0.01)
  run.cancel()

  with pytest.raises(asyncio.CancelledError):
    await run
  assert spawned[0].returncode is not None
