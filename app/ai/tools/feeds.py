"""Feed route lookup (RSSHub radar rules) and feed validation tools."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any
from urllib.parse import urlparse

import httpx
from pydantic import BaseModel, ConfigDict, Field

from app.ai.tools.registry import ToolId, ToolSpec
from app.jobs.errors import ToolExecutionError

logger = logging.getLogger(__name__)

RADAR_RULES_PATH = "/api/radar/rules"
RULES_CACHE_TTL_SECONDS = 6 * 60 * 60
MAX_ROUTES = 20
CHECK_TIMEOUT_SECONDS = 10.0
MAX_READ_BYTES = 32 * 1024
MAX_READ_BYTES_WITH_KEYWORDS = 256 * 1024
_FEED_MARKERS = ("<rss", "<feed", "<item>", "<item ", "<entry>", "<entry ")


def template_pattern(template: str) -> re.Pattern[str] | None:
  """Turn a route template with :param segments into a path regex."""

  path = urlparse(template).path if "://" in template else template
  if not path:
    return None
  pattern = re.sub(r":[^/]+", "[^/:][^/]*", re.escape(path).replace("\\:", ":"))
  return re.compile(f"^{pattern}([/?#].*)?$")


class FeedRoutesArgs(BaseModel):
  queries: list[str] = Field(min_length=1, description="Bare domain names or website names only, e.g. ['github.com', 'bilibili.com']")


class CheckFeedArgs(BaseModel):
  urls: list[str] = Field(min_length=1, description="RSS/Atom feed URLs to validate")
  keywords: list[str] | None = Field(default=None, description="Entity names or aliases expected in the feed body; valid if any is found")
  template_urls: list[str] | None = Field(default=None, alias="templateUrls", description="Route templates matching each url, checked before any request")
  model_config = ConfigDict(populate_by_name=True)


class FeedRouteIndex:
  """Search RSSHub radar rules, cached per base URL."""

  def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None, ttl_seconds: float = RULES_CACHE_TTL_SECONDS) -> None:
    self._base_url = base_url.rstrip("/")
    self._client = client
    self._ttl = ttl_seconds
    self._rules: dict[str, Any] | None = None
    self._fetched_at = 0.0
    self._lock = asyncio.Lock()

  async def _load_rules(self) -> dict[str, Any]:
    async with self._lock:
      if self._rules is not None and time.monotonic() - self._fetched_at < self._ttl:
        return self._rules
      url = f"{self._base_url}{RADAR_RULES_PATH}"
      client = self._client or httpx.AsyncClient(timeout=30.0, trust_env=False)
      try:
        response = await client.get(url, headers={"User-Agent": "SubscribeEngine/1.0; radar lookup"})
        response.raise_for_status()
        rules = response.json()
      except (httpx.HTTPError, ValueError) as exc:
        raise ToolExecutionError(ToolId.FEED_ROUTES.value, f"Failed to load radar rules: {exc}") from exc
      finally:
        if self._client is None:
          await client.aclose()
      if not isinstance(rules, dict):
        raise ToolExecutionError(ToolId.FEED_ROUTES.value, "Radar rules payload is not an object.")
      self._rules = rules
      self._fetched_at = time.monotonic()
      logger.info("Loaded %d radar rule domains from %s", len(rules), self._base_url)
      return rules

  async def lookup(self, query: str) -> list[dict[str, str]]:
    """Return up to 20 routes whose domain, site name or route matches the query."""

    rules = await self._load_rules()
    needle = query.strip().lower()
    routes: list[dict[str, str]] = []
    for domain, data in rules.items():
      if not isinstance(data, dict):
        continue
      site_name = str(data.get("_name") or domain)
      domain_matches = needle in domain.lower() or needle in site_name.lower()
      for group, entries in data.items():
        if group == "_name" or not isinstance(entries, list):
          continue
        for entry in entries:
          if not isinstance(entry, dict):
            continue
          title = str(entry.get("title") or "")
          target = str(entry.get("target") or "")
          if not target:
            continue
          if not domain_matches and needle not in title.lower() and needle not in target.lower():
            continue
          routes.append({"domain": domain, "websiteName": site_name, "routeName": title, "path": target, "templateUrl": f"{self._base_url}{target}"})
          if len(routes) >= MAX_ROUTES:
            return routes
    return routes

  def matching_template(self, url: str) -> str | None:
    """Find a cached template whose path matches a concrete feed url."""

    if self._rules is None:
      return None
    path = urlparse(url).path
    for data in self._rules.values():
      if not isinstance(data, dict):
        continue
      for group, entries in data.items():
        if group == "_name" or not isinstance(entries, list):
          continue
        for entry in entries:
          target = str(entry.get("target") or "") if isinstance(entry, dict) else ""
          if ":" not in target:
            continue
          pattern = template_pattern(target)
          if pattern is not None and pattern.match(path):
            return f"{self._base_url}{target}"
    return None


class FeedChecker:
  """Cheap RSS/Atom validation without returning the feed body."""

  def __init__(self, *, client: httpx.AsyncClient | None = None, timeout_seconds: float = CHECK_TIMEOUT_SECONDS) -> None:
    self._client = client
    self._timeout = timeout_seconds

  async def check(self, urls: list[str], keywords: list[str] | None = None, template_urls: list[str] | None = None) -> list[dict[str, Any]]:
    client = self._client or httpx.AsyncClient(follow_redirects=True, timeout=self._timeout, trust_env=False)
    try:
      return list(await asyncio.gather(*(self._check_one(client, url, keywords, (template_urls or [])[index] if template_urls and index < len(template_urls) else None) for index, url in enumerate(urls))))
    finally:
      if self._client is None:
        await client.aclose()

  async def _check_one(self, client: httpx.AsyncClient, url: str, keywords: list[str] | None, template_url: str | None) -> dict[str, Any]:
    result: dict[str, Any] = {"url": url}

    # Template check needs no network request.
    if template_url:
      pattern = template_pattern(template_url)
      path = urlparse(url).path
      if pattern is not None and not pattern.match(path):
        result.update(valid=False, status=0, templateMismatch=True, hint=f"URL path {path!r} does not match template {urlparse(template_url).path!r}. Replace every :param placeholder with a real value.")
        return result

    max_bytes = MAX_READ_BYTES_WITH_KEYWORDS if keywords else MAX_READ_BYTES
    try:
      async with client.stream("GET", url, headers={"User-Agent": "Mozilla/5.0 (compatible; SubscribeEngine/1.0)", "Accept": "application/rss+xml,application/atom+xml,text/xml,application/xml,*/*"}) as response:
        status = response.status_code
        if not 200 <= status < 300:
          result.update(valid=False, status=status)
          return result
        received = bytearray()
        async for chunk in response.aiter_bytes():
          received.extend(chunk)
          if len(received) >= max_bytes:
            break
    except httpx.HTTPError as exc:
      result.update(valid=False, status=0, hint=f"Request failed: {exc}")
      return result

    text = received[:max_bytes].decode("utf-8", errors="replace")
    if not any(marker in text for marker in _FEED_MARKERS):
      result.update(valid=False, status=status, hint="Response is not an RSS/Atom feed.")
      return result

    if keywords:
      lowered = text.lower()
      found = any(keyword.lower() in lowered for keyword in keywords)
      result.update(valid=found, status=status, keywordFound=found)
      if not found:
        result["hint"] = "Feed is reachable but contains none of the keywords; the entity id in the URL is likely wrong. Search for the correct id."
      return result

    result.update(valid=True, status=status)
    return result


def feed_routes_tool(index: FeedRouteIndex) -> ToolSpec:
  async def _handle(args: FeedRoutesArgs) -> list[dict[str, Any]]:
    found = await asyncio.gather(*(index.lookup(query) for query in args.queries))
    return [{"query": query, "routes": routes} for query, routes in zip(args.queries, found, strict=True)]

  return ToolSpec(ToolId.FEED_ROUTES, "Search the RSSHub radar index for feed routes of websites. Pass all queries in one call. Each templateUrl has :param placeholders to fill in.", FeedRoutesArgs, _handle)


def check_feed_tool(checker: FeedChecker) -> ToolSpec:
  async def _handle(args: CheckFeedArgs) -> list[dict[str, Any]]:
    return await checker.check(args.urls, args.keywords, args.template_urls)

  return ToolSpec(ToolId.CHECK_FEED, "Validate RSS/Atom feed URLs: HTTP 2xx, XML feed markers, and optionally that any keyword appears in the feed body.", CheckFeedArgs, _handle)
