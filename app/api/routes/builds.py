import json
import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, status
from fastapi.responses import StreamingResponse

from app.ai.pipeline.contracts import RunPayload
from app.api.deps import get_build_service
from app.api.models import (
  AbortAllResponse,
  AbortRequest,
  AbortResponse,
  BuildCreateRequest,
  BuildJobResponse,
  BuildProgressResponse,
  BuildRunRequest,
  LlmUsageResponse,
  ProgressEventResponse,
  RetryRequest,
  RetryResponse,
  TakeoverResponse,
  UsageBucket,
)
from app.services.builds import BuildService

router = APIRouter()
logger = logging.getLogger("app.api.routes.builds")


@router.post("", response_model=BuildJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def start_build(  # noqa: B008
  request: BuildCreateRequest,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> BuildJobResponse:
  """Create a build job and run it in the background."""
  record = await service.start_build(request.subscription_id, request.topic, request.criteria)
  return BuildJobResponse.from_record(record)


@router.post("/{job_id}/run", response_model=BuildJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def run_build(  # noqa: B008
  job_id: str,
  request: BuildRunRequest,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> BuildJobResponse:
  """Re-enter the pipeline at a phase, optionally with handed-over state."""
  payload = RunPayload(discovered=request.discovered, selected=request.selected, results=request.results, metadata=request.metadata)
  record = await service.resume(job_id, request.start_phase, payload)
  return BuildJobResponse.from_record(record)


@router.post("/{job_id}/abort", response_model=AbortResponse)
async def abort_resource(  # noqa: B008
  job_id: str,
  request: AbortRequest,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> AbortResponse:
  """Abort generation for one resource."""
  return AbortResponse(aborted=await service.abort(job_id, request.resource_key))


@router.post("/{job_id}/abort-all", response_model=AbortAllResponse)
async def abort_all(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> AbortAllResponse:
  """Cancel every running unit of work for a build without writing results."""
  return AbortAllResponse(cancelled=await service.abort_all(job_id))


@router.post("/{job_id}/retry", response_model=RetryResponse, status_code=status.HTTP_202_ACCEPTED)
async def retry_resource(  # noqa: B008
  job_id: str,
  request: RetryRequest,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> RetryResponse:
  """Regenerate one resource with an optional hint."""
  await service.retry(job_id, request.resource_url, hint=request.hint, title=request.title, description=request.description)
  return RetryResponse()


@router.post("/{job_id}/takeover", response_model=TakeoverResponse)
async def takeover_build(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> TakeoverResponse:
  """Stop automated work and return the snapshot for manual completion."""
  snapshot = await service.takeover(job_id)
  return TakeoverResponse(job_id=job_id, snapshot=snapshot)


@router.post("/{job_id}/adopt", response_model=BuildJobResponse, status_code=status.HTTP_202_ACCEPTED)
async def adopt_build(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> BuildJobResponse:
  """Continue a stalled or failed build as a new job."""
  record = await service.adopt(job_id)
  return BuildJobResponse.from_record(record)


@router.delete("/{job_id}", status_code=status.HTTP_204_NO_CONTENT)
async def discard_build(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> None:
  """Stop all work and delete the build with its progress log."""
  await service.discard(job_id)


@router.get("/{job_id}/progress", response_model=BuildProgressResponse)
async def get_progress(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> BuildProgressResponse:
  """Return status, grouped events and the resume snapshot."""
  progress = await service.get_progress(job_id)
  return BuildProgressResponse(
    job=BuildJobResponse.from_record(progress.job),
    phases={phase: [ProgressEventResponse.from_event(event) for event in events] for phase, events in progress.events_by_phase.items()},
    resources={key: [ProgressEventResponse.from_event(event) for event in events] for key, events in progress.events_by_resource.items()},
    running_resources=progress.running_resources,
    snapshot=progress.snapshot,
  )


@router.get("/{job_id}/llm-usage", response_model=LlmUsageResponse)
async def get_llm_usage(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> LlmUsageResponse:
  """Return token usage aggregated per resource."""
  usage = await service.llm_usage(job_id)
  return LlmUsageResponse(job_id=job_id, resources={key: UsageBucket(**bucket) for key, bucket in usage.items()})


@router.get("/{job_id}/stream")
async def stream_progress(  # noqa: B008
  job_id: str,
  service: BuildService = Depends(get_build_service),  # noqa: B008
) -> StreamingResponse:
  """Stream progress events as server-sent events until the build stops."""
  events = service.stream_progress(job_id)
  # Pull the first event eagerly so an unknown job surfaces as a 404 instead of a broken stream.
  try:
    first = await anext(events)
  except StopAsyncIteration:
    first = None

  async def _sse() -> AsyncIterator[str]:
    if first is not None:
      yield f"id: {first.id}\ndata: {json.dumps(first.to_wire())}\n\n"
    async for event in events:
      yield f"id: {event.id}\ndata: {json.dumps(event.to_wire())}\n\n"
    logger.debug("Progress stream for build %s finished", job_id)

  return StreamingResponse(_sse(), media_type="text/event-stream", headers={"Cache-Control": "no-cache"})
