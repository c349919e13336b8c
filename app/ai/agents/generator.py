"""Script generation agent for a single selected resource."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from app.ai.agent_loop import AgentLoop
from app.ai.extraction import extract_last_code_block, extract_schedule
from app.ai.pipeline.contracts import DEFAULT_SCHEDULE, CollectedItem, DiscoveredResource, GenerationResult
from app.ai.prompts import VALIDATION_LIMIT_NOTE, generation_messages
from app.ai.tools.registry import ToolId, ToolSpec
from app.ai.tools.toolsets import ToolKit
from app.ai.validator import MultiLayerValidator
from app.jobs.cancellation import CancellationToken
from app.jobs.errors import BuildCancelledError
from app.telemetry.context import llm_call_context

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[str], Awaitable[None]]

SANDBOX_UNAVAILABLE_FEEDBACK = "The sandbox is unavailable. Output the final complete script in a ```python block and finish; do not call validateScript again."
UNVERIFIED_REASON = "sandbox unavailable; script was not verified"


class ValidateScriptArgs(BaseModel):
  script: str = Field(min_length=1, description="The complete Python collection script defining collect()")


@dataclass
class _GenerationState:
  """Mutable bookkeeping shared between the loop and the validateScript tool."""

  attempts: int = 0
  last_attempted: str | None = None
  validated_script: str | None = None
  validated_items: list[CollectedItem] = field(default_factory=list)
  sandbox_unavailable: bool = False


async def _noop_progress(_: str) -> None:
  return None


class ScriptGenerator:
  """Write, validate and repair a collection script for one resource."""

  def __init__(self, loop: AgentLoop, toolkit: ToolKit, validator: MultiLayerValidator, *, max_iterations: int = 32, max_validate_attempts: int = 3, max_fetches: int = 5) -> None:
    self._loop = loop
    self._toolkit = toolkit
    self._validator = validator
    self._max_iterations = max_iterations
    self._max_validate_attempts = max_validate_attempts
    self._max_fetches = max_fetches

  async def generate(self, resource: DiscoveredResource, criteria: str | None, token: CancellationToken, *, hint: str | None = None, on_progress: ProgressCallback | None = None) -> GenerationResult:
    """Run the generation loop and turn its outcome into a result."""
    progress = on_progress or _noop_progress
    state = _GenerationState()
    toolset = self._toolkit.generation_tools(self._validate_tool(resource, criteria, token, state, progress))
    messages = generation_messages(resource, criteria, hint=hint, max_fetches=self._max_fetches)

    with llm_call_context(agent="generate", job_id=token.job_id, resource_key=resource.url):
      loop_result = await self._loop.run(messages, toolset, max_iterations=self._max_iterations, token=token)

    schedule = DEFAULT_SCHEDULE
    for text in loop_result.texts:
      schedule = extract_schedule(text, schedule)

    base: dict[str, Any] = {"title": resource.title, "url": resource.url, "description": resource.description, "schedule": schedule}
    if state.validated_script is not None:
      return GenerationResult(**base, script=state.validated_script, items=state.validated_items, outcome="success", provenance="validated")

    # No validated script: fall back to the last script the model wrote.
    final_script = extract_last_code_block(loop_result.texts) or state.last_attempted
    if state.sandbox_unavailable:
      if final_script:
        return GenerationResult(**base, script=final_script, outcome="unverified", reason=UNVERIFIED_REASON, provenance="extracted")
      return GenerationResult(**base, outcome="failed", reason="sandbox unavailable and no script could be extracted")

    if not final_script:
      return GenerationResult(**base, outcome="failed", reason="agent did not produce a script")

    await progress("Validating the final script")
    try:
      outcome = await self._validator.validate(final_script, resource, criteria, token)
    except BuildCancelledError:
      raise
    except Exception:  # noqa: BLE001
      logger.error("Final validation crashed for %s", resource.url, exc_info=True)
      return GenerationResult(**base, script=final_script, outcome="failed", reason="script generated, but validation failed unexpectedly")

    if outcome.valid:
      return GenerationResult(**base, script=final_script, items=outcome.items, outcome="success", provenance="extracted")
    if outcome.kind == "unavailable":
      return GenerationResult(**base, script=final_script, outcome="unverified", reason=UNVERIFIED_REASON, provenance="extracted")
    script = outcome.fixed_script or final_script
    return GenerationResult(**base, script=script, outcome="failed", reason=outcome.reason or "script did not pass validation", provenance="extracted")

  def _validate_tool(self, resource: DiscoveredResource, criteria: str | None, token: CancellationToken, state: _GenerationState, progress: ProgressCallback) -> ToolSpec:
    async def _handle(args: ValidateScriptArgs) -> dict[str, Any]:
      state.attempts += 1
      state.last_attempted = args.script
      if state.sandbox_unavailable:
        return {"success": False, "error": SANDBOX_UNAVAILABLE_FEEDBACK}

      await progress(f"Validating script (attempt {state.attempts})")
      outcome = await self._validator.validate(args.script, resource, criteria, token)
      if outcome.kind == "unavailable":
        state.sandbox_unavailable = True
        await progress("Sandbox unavailable; the script will be kept without verification")
        return {"success": False, "error": SANDBOX_UNAVAILABLE_FEEDBACK}

      if outcome.valid:
        state.validated_script = args.script
        state.validated_items = outcome.items
        await progress(f"Validation passed with {len(outcome.items)} records")
        return outcome.feedback()

      await progress(f"Validation failed: {(outcome.reason or '')[:80]}")
      feedback = outcome.feedback()
      if state.attempts >= self._max_validate_attempts:
        feedback["note"] = VALIDATION_LIMIT_NOTE.format(attempts=self._max_validate_attempts)
      return feedback

    return ToolSpec(ToolId.VALIDATE_SCRIPT, "Validate a collection script: sandbox run, at least one record, then a quality and authenticity review.", ValidateScriptArgs, _handle)
