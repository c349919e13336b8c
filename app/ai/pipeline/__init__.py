"""Pipeline contracts shared by agents, jobs and the API."""

from app.ai.pipeline.contracts import CollectedItem, DiscoveredResource, GenerationResult, JobSnapshot, RunPayload

__all__ = ["CollectedItem", "DiscoveredResource", "GenerationResult", "JobSnapshot", "RunPayload"]
