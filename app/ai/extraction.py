"""Marker-based extraction from free-form model output."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

from app.ai.pipeline.contracts import DEFAULT_SCHEDULE, DiscoveredResource

_FENCED_BLOCK_RE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_PYTHON_BLOCK_RE = re.compile(r"```(?:python|py)\n(.*?)```", re.DOTALL)
_CRON_FIELD = r"(?:\*|\d+)(?:[-/,]\d+)*(?:/\d+)?|\*/\d+"
_CRON_RE = re.compile(rf"(?<![\w*/,-])((?:{_CRON_FIELD})(?:\s+(?:{_CRON_FIELD})){{4}})(?![\w*/,-])")
_CRON_LABEL_RE = re.compile(r"cron[^:\n]*:\s*[`\"']?([0-9*,/\- ]{9,25})[`\"']?", re.IGNORECASE)
_SOURCES_BLOCK_RE = re.compile(r"```(?:json)?\s*(\[.*?\])\s*```", re.DOTALL)
_SOURCE_OBJECT_RE = re.compile(r"\{[^{}]*\"url\"\s*:\s*\"(https?://[^\"]+)\"[^{}]*\}")
_MARKDOWN_URL_RE = re.compile(r"[-*]\s+(?:\*{1,2}([^*\n]+)\*{1,2}[^:\n]*)?.*?(https?://[^\s)\]\"]+)")
_VERDICT_BLOCK_RE = re.compile(r"```json\s*(\{.*?\})\s*```", re.DOTALL)
_VERDICT_INLINE_RE = re.compile(r"\{\s*\"valid\"\s*:\s*(true|false)[^}]*\}")


def extract_fenced_blocks(text: str) -> list[str]:
  """Return the bodies of all fenced code blocks in order."""

  return [match.group(1) for match in _FENCED_BLOCK_RE.finditer(text or "")]


def extract_last_code_block(texts: list[str]) -> str | None:
  """Return the last fenced code block across a sequence of model turns."""

  blocks = extract_fenced_blocks("\n".join(texts))
  if not blocks:
    return None
  script = blocks[-1].strip()
  return script or None


def _valid_cron(candidate: str) -> bool:
  fields = candidate.split()
  return len(fields) == 5 and all(re.fullmatch(_CRON_FIELD, field) for field in fields)


def extract_schedule(text: str, current: str = DEFAULT_SCHEDULE) -> str:
  """Find a cron expression in model text, keeping ``current`` when none matches."""

  schedule = current
  match = _CRON_RE.search(text or "")
  if match and _valid_cron(match.group(1)):
    schedule = match.group(1)
  # An explicit "cron: ..." label wins over a bare pattern.
  label = _CRON_LABEL_RE.search(text or "")
  if label and _valid_cron(label.group(1).strip()):
    schedule = " ".join(label.group(1).split())
  return schedule


def _as_flag(value: Any) -> bool | None:
  if value is True or value == "true":
    return True
  if value is False or value == "false":
    return False
  return None


def normalize_source(item: dict[str, Any]) -> DiscoveredResource:
  url = str(item["url"])
  can_satisfy = item.get("canSatisfyCriteria", item.get("canProvideCriteria", item.get("can_satisfy_criteria")))
  return DiscoveredResource(
    title=str(item.get("title") or item.get("name") or url),
    url=url,
    description=str(item.get("description") or item.get("summary") or ""),
    recommended=_as_flag(item.get("recommended")) is True,
    can_satisfy_criteria=_as_flag(can_satisfy),
  )


def _parse_source_array(raw: str) -> list[DiscoveredResource]:
  try:
    parsed = json.loads(raw)
  except json.JSONDecodeError:
    return []
  if not isinstance(parsed, list):
    return []
  return [normalize_source(item) for item in parsed if isinstance(item, dict) and isinstance(item.get("url"), str) and item["url"].startswith("http")]


def parse_sources_from_text(text: str) -> list[DiscoveredResource]:
  """Extract discovered resources from a discovery agent's final answer.

  Tries, in order: a JSON array inside a code block, a bare JSON array, single
  JSON objects carrying a url, and finally markdown list lines with urls.
  """
  if not text:
    return []

  block = _SOURCES_BLOCK_RE.search(text)
  if block:
    found = _parse_source_array(block.group(1))
    if found:
      return found

  first, last = text.find("["), text.rfind("]")
  if first != -1 and last > first:
    found = _parse_source_array(text[first : last + 1])
    if found:
      return found

  objects: list[DiscoveredResource] = []
  for match in _SOURCE_OBJECT_RE.finditer(text):
    try:
      item = json.loads(match.group(0))
    except json.JSONDecodeError:
      continue
    if isinstance(item, dict) and str(item.get("url", "")).startswith("http"):
      objects.append(normalize_source(item))
  if objects:
    return objects

  listed: list[DiscoveredResource] = []
  for match in _MARKDOWN_URL_RE.finditer(text):
    url = re.sub(r"[,.)]+$", "", match.group(2))
    title = (match.group(1) or "").strip()
    listed.append(DiscoveredResource(title=title or url, url=url))
  return listed


@dataclass(frozen=True)
class ReviewVerdict:
  valid: bool
  reason: str
  fixed_script: str | None = None


def parse_review_verdict(text: str) -> ReviewVerdict:
  """Parse the quality reviewer's answer into a verdict."""

  if not text:
    return ReviewVerdict(valid=False, reason="reviewer returned no verdict")

  valid: bool | None = None
  reason = ""

  block = _VERDICT_BLOCK_RE.search(text)
  if block:
    try:
      parsed = json.loads(block.group(1))
    except json.JSONDecodeError:
      parsed = None
    if isinstance(parsed, dict) and isinstance(parsed.get("valid"), bool):
      valid = parsed["valid"]
      reason = str(parsed.get("reason") or "")

  if valid is None:
    inline = _VERDICT_INLINE_RE.search(text)
    if inline:
      try:
        parsed = json.loads(inline.group(0))
        valid = bool(parsed.get("valid"))
        reason = str(parsed.get("reason") or "")
      except json.JSONDecodeError:
        valid = inline.group(1) == "true"

  if valid is None:
    lowered = text.lower()
    valid = '"valid":true' in lowered or '"valid": true' in lowered or "review passed" in lowered
    reason = text[:300]

  fixed_script = None
  if not valid:
    fixed = _PYTHON_BLOCK_RE.search(text)
    if fixed:
      fixed_script = fixed.group(1).strip() or None

  if not valid and not reason:
    reason = "quality review rejected the script"
  return ReviewVerdict(valid=valid, reason=reason, fixed_script=fixed_script)
