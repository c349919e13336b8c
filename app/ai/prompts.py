"""Prompt templates for the discovery, generation and review agents."""

from __future__ import annotations

import json
from urllib.parse import urlparse

from app.ai.pipeline.contracts import CollectedItem, DiscoveredResource
from app.sandbox.contract import ALLOWED_MODULES

NO_CRITERIA = "none"

DISCOVERY_TEMPLATE = """You are an information source analyst. The user wants to subscribe to "{{TOPIC}}" with the monitoring condition "{{CRITERIA}}".

Step 1: web search
Use webSearch to find 5-10 high quality sources. Each source should update regularly, be highly relevant to the topic and be collectable programmatically (RSS, an API, or stable HTML).

Step 2: feed routes
Call feedRoutes for every site you found, passing all domains in one call. Route templateUrls contain :param placeholders; fill them with real values inferred from context (ids and usernames in the source URL). If feedRoutes returns nothing for a site keep the original page URL. Never invent feed paths that feedRoutes did not return.

Step 3: verify feeds
Call checkFeed with every filled feed URL, passing the route templates as templateUrls and a few topic keywords. When a feed fails, search for the correct entity id, refill the template and check again. If it still fails fall back to the original page URL.

Answer with a JSON array inside a ```json block. Each item has:
- title: source name
- url: the verified feed URL when one exists, otherwise the page URL
- description: what the source publishes and how often; mention the feed route when one is used
- recommended: true for the 2-4 best sources (feeds are easiest to collect), false otherwise
- canSatisfyCriteria: only when the condition is not "none"; true when the source exposes the data needed to evaluate it

When the condition is not "none", a source with canSatisfyCriteria=false must not be recommended."""

GENERATION_TEMPLATE = """You are a data collection engineer. Write a Python collection script for this source:

Source: {{TITLE}}
URL: {{URL}}
Description: {{DESCRIPTION}}
Monitoring condition: {{CRITERIA}}

Execution environment (restricted Python sandbox, not a full interpreter):
- Define a top-level `def collect():` that returns a list of dicts.
- `fetch(url, method="GET", headers=None, params=None, data=None, json=None)` is predefined and returns an object with `status`, `ok`, `url`, `headers`, `text` and `json()`. At most {{MAX_FETCHES}} calls per run, 5 MB per response.
- Only these modules may be imported: {{MODULES}}.
- open, eval, exec, compile, getattr, globals and dunder attributes are rejected before the script runs. print output is discarded.
- Parse HTML with `re` or string methods and XML feeds with xml.etree.ElementTree.

Script rules:
1. Every item must have `title` and `url` strings.
2. Extract `published_at` (ISO 8601) for every item whenever the source exposes a date: RSS pubDate (email.utils.parsedate_to_datetime), Atom published/updated, <time datetime>, JSON date fields. Omit it only when the source has no date at all.
3. Optional fields: `summary`, `thumbnail_url`.
4. When the page has no data return []. Never build fallback records such as items.append({"title": "...", "url": source_url}).
5. Every fetch must stay on {{DOMAIN}}. Do not call third-party sites.
6. When the monitoring condition is not "none", add `criteria_result` ("matched", "not_matched" or "invalid") and `metric_value` (the raw metric as a string) to every item; use "invalid" for every item when the source cannot provide the metric.

How to work:
1. Call feedRoutes for the site. If a route exists, fill its :param placeholders and webFetch the feed to confirm it contains <item> or <entry> records. Prefer a feed-based script.
2. Otherwise webFetch the page. If the HTML is only an app shell, use webFetchBrowser and prefer calling the JSON APIs listed in capturedRequests.
3. Call validateScript with the full script. It runs the script, requires at least one item and then runs a quality review. Fix the reported problems and retry. When the feedback carries a suggestedScript, validate that script next.
4. Mention a cron expression for how often the source should be collected, for example `cron: 0 */6 * * *`.
5. Finish by printing the final script in a ```python block."""

REVIEW_TEMPLATE = """You are a strict data collection quality reviewer. Review the collection script below and the records it produced.

Source URL: {{URL}}
Source description: {{DESCRIPTION}}
Monitoring condition: {{CRITERIA}}

Script:
```python
{{SCRIPT}}
```

First records:
```json
{{ITEMS}}
```

Step 1: code review
- Reject fabricated fallback records (forced default items, hard-coded titles or URLs).
- Reject fetches to hosts outside the source site.
- When the source exposes publication dates but the script does not extract published_at, treat it as a quality problem and fix it.
- When the condition is not "none", check criteria_result and metric_value.

Step 2: authenticity
Use webFetch on the first 1-2 record URLs. Confirm they resolve, belong to the source site and roughly match the collected titles. If a URL is unreachable because of network limits, judge from the code instead of failing the review.

Output format (strict):
```json
{"valid": true, "reason": "short explanation"}
```
When valid is false and the problem is fixable, append the complete fixed script in a ```python block after the JSON block."""

RETRY_HINT_HEADER = "Additional instructions from the operator:"
VALIDATION_LIMIT_NOTE = "Validation attempt limit reached ({attempts}). Stop retrying: reply with your best script in a ```python block and finish."


def _replace_placeholders(template: str, values: dict[str, str]) -> str:
  """Substitute {{PLACEHOLDER}} markers with concrete values."""
  rendered = template
  for key, value in values.items():
    rendered = rendered.replace(f"{{{{{key}}}}}", value)

  return rendered


def _criteria_text(criteria: str | None) -> str:
  return criteria.strip() if criteria and criteria.strip() else NO_CRITERIA


def source_domain(url: str) -> str:
  return urlparse(url).hostname or url


def discovery_messages(topic: str, criteria: str | None) -> list[dict[str, str]]:
  prompt = _replace_placeholders(DISCOVERY_TEMPLATE, {"TOPIC": topic, "CRITERIA": _criteria_text(criteria)})
  return [{"role": "user", "content": prompt}]


def generation_messages(resource: DiscoveredResource, criteria: str | None, *, hint: str | None = None, max_fetches: int = 5) -> list[dict[str, str]]:
  """Build the conversation that opens a script generation run."""
  system = _replace_placeholders(
    GENERATION_TEMPLATE,
    {
      "TITLE": resource.title,
      "URL": resource.url,
      "DESCRIPTION": resource.description or "no description",
      "CRITERIA": _criteria_text(criteria),
      "DOMAIN": source_domain(resource.url),
      "MAX_FETCHES": str(max_fetches),
      "MODULES": ", ".join(sorted(ALLOWED_MODULES)),
    },
  )

  lines = ["Write the collection script for this source:", f"Title: {resource.title}", f"URL: {resource.url}", f"Description: {resource.description or 'none'}"]
  if criteria and criteria.strip():
    lines.append(f"Monitoring condition: {criteria.strip()}")
  user = "\n".join(lines)
  # Retry hints are appended verbatim to the opening request.
  if hint and hint.strip():
    user = f"{user}\n\n{RETRY_HINT_HEADER}\n{hint.strip()}"

  return [{"role": "system", "content": system}, {"role": "user", "content": user}]


def review_messages(resource: DiscoveredResource, criteria: str | None, script: str, items: list[CollectedItem]) -> list[dict[str, str]]:
  preview = json.dumps([item.model_dump(exclude_none=True) for item in items[:5]], ensure_ascii=False, indent=2)
  system = _replace_placeholders(
    REVIEW_TEMPLATE,
    {"URL": resource.url, "DESCRIPTION": resource.description or "no description", "CRITERIA": _criteria_text(criteria), "SCRIPT": script, "ITEMS": preview},
  )
  return [{"role": "system", "content": system}, {"role": "user", "content": "Complete the review and output the verdict."}]
