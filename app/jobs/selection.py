"""Auto-selection of discovered resources."""

from __future__ import annotations

from collections.abc import Sequence

from app.ai.pipeline.contracts import DiscoveredResource


def select_resources(discovered: Sequence[DiscoveredResource], limit: int = 5) -> list[DiscoveredResource]:
  """Pick up to ``limit`` resources, recommended ones first, both groups in discovery order."""

  if limit <= 0:
    return []

  # Duplicate urls would collide on the per-resource log key.
  seen: set[str] = set()
  unique: list[DiscoveredResource] = []
  for resource in discovered:
    if resource.url in seen:
      continue
    seen.add(resource.url)
    unique.append(resource)

  recommended = [resource for resource in unique if resource.recommended]
  others = [resource for resource in unique if not resource.recommended]
  return (recommended + others)[:limit]
