"""Error taxonomy for build jobs."""

from __future__ import annotations


class BuildCancelledError(Exception):
  """Raised when a cancellation token fires; never treated as a failure."""

  def __init__(self, job_id: str, resource_key: str | None = None) -> None:
    self.job_id = job_id
    self.resource_key = resource_key
    target = f"{job_id}/{resource_key}" if resource_key else job_id
    super().__init__(f"Build work cancelled for {target}.")


class ToolExecutionError(Exception):
  """Raised by a tool call; serialized back into the agent conversation."""

  def __init__(self, tool_name: str, message: str) -> None:
    self.tool_name = tool_name
    super().__init__(message)


class ValidationFailure(Exception):
  """A script ran but did not meet the quality bar."""


class PhaseFailure(Exception):
  """Unrecoverable failure for a whole job."""

  def __init__(self, phase: str, reason: str) -> None:
    self.phase = phase
    self.reason = reason
    super().__init__(reason)


class PersistenceConflictError(Exception):
  """Raised when a write targets a job row that no longer exists."""


class JobNotFoundError(LookupError):
  """Raised when a job id is unknown."""


class ActiveJobExistsError(Exception):
  """Raised when a subscription already has a non-terminal job."""

  def __init__(self, subscription_id: str, job_id: str) -> None:
    self.subscription_id = subscription_id
    self.job_id = job_id
    super().__init__(f"Subscription {subscription_id} already has an active build job {job_id}.")


class InvalidJobStateError(Exception):
  """Raised when an operation does not apply to the job's current status."""
