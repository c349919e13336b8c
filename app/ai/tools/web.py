"""Page fetch, browser-rendered fetch and search tools."""

from __future__ import annotations

import logging
import re
from typing import Any

import httpx
from bs4 import BeautifulSoup, Comment
from pydantic import BaseModel, Field

from app.ai.providers.tavily import TavilyProvider
from app.ai.tools.registry import ToolId, ToolSpec
from app.jobs.errors import ToolExecutionError

logger = logging.getLogger(__name__)

USER_AGENT = "Mozilla/5.0 (compatible; SubscribeEngine/1.0)"
BROWSER_USER_AGENT = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"

MAX_DOWNLOAD_BYTES = 500 * 1024
MAX_RETURN_CHARS = 100 * 1024
MAX_API_BODY_CHARS = 50 * 1024
MAX_CAPTURED_REQUESTS = 10
NAV_TIMEOUT_MS = 20_000
IDLE_TIMEOUT_MS = 10_000

_KEEP_ATTRS = {"href", "src", "class", "id", "alt", "name", "type", "value", "content", "rel", "datetime", "data-url", "data-href"}
_DROP_TAGS = ["script", "style", "noscript"]
_EMPTY_TAGS = ["svg", "canvas"]
_SKIP_CAPTURE_RE = re.compile(r"google|analytics|gtm|hotjar|clarity|sentry|bugsnag|doubleclick|facebook|twitter|segment|mixpanel|newrelic|datadog", re.IGNORECASE)


def is_html(text: str) -> bool:
  head = text[:2048].lower()
  return "<html" in head or "<!doctype html" in head or "<body" in head or "<div" in head


def _attr_value(value: str | list[str]) -> str:
  text = " ".join(value) if isinstance(value, list) else str(value)
  return text[:120] + "…" if len(text) > 120 else text


def strip_html(raw: str) -> str:
  """Reduce HTML to a compact structural skeleton for the model."""

  soup = BeautifulSoup(raw, "lxml")
  for comment in soup.find_all(string=lambda text: isinstance(text, Comment)):
    comment.extract()
  for tag in soup.find_all(_DROP_TAGS):
    if not tag.decomposed:
      tag.decompose()
  for tag in soup.find_all(_EMPTY_TAGS):
    tag.clear()

  # Keep only the title from <head>.
  if soup.head is not None:
    title = soup.head.find("title")
    title_text = title.get_text(strip=True) if title is not None else ""
    soup.head.clear()
    if title_text:
      new_title = soup.new_tag("title")
      new_title.string = title_text
      soup.head.append(new_title)

  for tag in soup.find_all(True):
    tag.attrs = {name: _attr_value(value) for name, value in tag.attrs.items() if name in _KEEP_ATTRS and value}

  html = re.sub(r"\n\s*\n+", "\n", str(soup))
  html = re.sub(r"[ \t]{2,}", " ", html)
  return html.strip()


class WebFetchArgs(BaseModel):
  url: str = Field(description="The URL to fetch")


class SearchArgs(BaseModel):
  query: str = Field(min_length=1, description="Search query")


class WebFetcher:
  """Plain HTTP fetch with download and return caps."""

  def __init__(self, *, timeout_seconds: float = 15.0, client: httpx.AsyncClient | None = None) -> None:
    self._timeout = timeout_seconds
    self._client = client

  async def fetch(self, url: str) -> dict[str, Any]:
    """Fetch a page. Network failures come back as data, never as exceptions."""
    headers = {"User-Agent": USER_AGENT, "Accept": "text/html,application/xhtml+xml,application/json,*/*"}
    client = self._client or httpx.AsyncClient(follow_redirects=True, timeout=self._timeout, trust_env=False)
    try:
      async with client.stream("GET", url, headers=headers, timeout=self._timeout) as response:
        if response.status_code >= 400:
          return {"ok": False, "status": response.status_code, "body": f"HTTP {response.status_code}", "truncated": False}

        chunks: list[bytes] = []
        received = 0
        download_truncated = False
        async for chunk in response.aiter_bytes():
          chunks.append(chunk)
          received += len(chunk)
          if received >= MAX_DOWNLOAD_BYTES:
            download_truncated = True
            break
        raw = b"".join(chunks)[:MAX_DOWNLOAD_BYTES].decode("utf-8", errors="replace")
        status = response.status_code
    except httpx.HTTPError as exc:
      logger.info("webFetch failed for %s: %s", url, exc)
      return {"ok": False, "status": 0, "body": str(exc) or type(exc).__name__, "truncated": False}
    finally:
      if self._client is None:
        await client.aclose()

    processed = strip_html(raw) if is_html(raw) else raw
    return_truncated = len(processed) > MAX_RETURN_CHARS
    body = processed[:MAX_RETURN_CHARS] + "\n[content truncated]" if return_truncated else processed
    return {"ok": 200 <= status < 400, "status": status, "body": body, "truncated": download_truncated or return_truncated}


class BrowserFetcher:
  """Headless Chromium render that also captures JSON API responses."""

  async def fetch(self, url: str) -> dict[str, Any]:
    # Import lazily so Playwright is only loaded when a browser render is requested.
    from playwright.async_api import Error as PlaywrightError
    from playwright.async_api import async_playwright

    captured: list[dict[str, Any]] = []

    async def _capture(response: Any) -> None:
      if len(captured) >= MAX_CAPTURED_REQUESTS or _SKIP_CAPTURE_RE.search(response.url):
        return
      content_type = response.headers.get("content-type", "")
      if "application/json" not in content_type and "text/json" not in content_type:
        return
      try:
        body = await response.text()
      except PlaywrightError:
        return
      if len(body) < 10:
        return
      if len(body) > MAX_API_BODY_CHARS:
        body = body[:MAX_API_BODY_CHARS] + "\n[truncated]"
      captured.append({"url": response.url, "method": response.request.method, "status": response.status, "body": body})

    async with async_playwright() as playwright:
      try:
        browser = await playwright.chromium.launch(headless=True, args=["--no-sandbox", "--disable-dev-shm-usage"])
      except PlaywrightError as exc:
        raise ToolExecutionError(ToolId.WEB_FETCH_BROWSER.value, f"Browser unavailable: {exc}") from exc
      try:
        context = await browser.new_context(user_agent=BROWSER_USER_AGENT, ignore_https_errors=True)
        page = await context.new_page()
        page.on("response", _capture)
        try:
          nav = await page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        except PlaywrightError as exc:
          return {"ok": False, "status": 0, "html": str(exc), "capturedRequests": [], "truncatedHtml": False}
        status = nav.status if nav is not None else 200
        if status >= 400:
          return {"ok": False, "status": status, "html": f"HTTP {status}", "capturedRequests": [], "truncatedHtml": False}
        try:
          await page.wait_for_load_state("networkidle", timeout=IDLE_TIMEOUT_MS)
        except PlaywrightError:
          # Pages that never go idle still have content worth returning.
          logger.debug("networkidle wait timed out for %s", url)
        stripped = strip_html(await page.content())
      finally:
        await browser.close()

    truncated = len(stripped) > MAX_RETURN_CHARS
    html = stripped[:MAX_RETURN_CHARS] + "\n[HTML truncated]" if truncated else stripped
    note = f"Captured {len(captured)} JSON API requests; prefer calling those endpoints from the script." if captured else "No JSON API requests captured; write the script against the rendered HTML."
    return {"ok": True, "status": status, "html": html, "capturedRequests": captured, "truncatedHtml": truncated, "note": note}


def web_fetch_tool(fetcher: WebFetcher) -> ToolSpec:
  async def _handle(args: WebFetchArgs) -> dict[str, Any]:
    return await fetcher.fetch(args.url)

  return ToolSpec(ToolId.WEB_FETCH, "Fetch the content of a URL. HTML is pre-stripped: scripts and styles removed, only structural tags and href/class/id attributes kept.", WebFetchArgs, _handle)


def browser_fetch_tool(fetcher: BrowserFetcher) -> ToolSpec:
  async def _handle(args: WebFetchArgs) -> dict[str, Any]:
    return await fetcher.fetch(args.url)

  return ToolSpec(ToolId.WEB_FETCH_BROWSER, "Render a page in a headless browser (for single-page apps). Returns rendered HTML and JSON API requests captured during load.", WebFetchArgs, _handle)


def search_tool(provider: TavilyProvider | None) -> ToolSpec:
  async def _handle(args: SearchArgs) -> list[dict[str, Any]]:
    if provider is None:
      raise ToolExecutionError(ToolId.WEB_SEARCH.value, "Web search is not configured.")
    return await provider.search(args.query)

  return ToolSpec(ToolId.WEB_SEARCH, "Search the web. Returns titles, urls and short content snippets.", SearchArgs, _handle)
