"""Tavily search provider implementation."""

from __future__ import annotations

import logging
from typing import Any

from fastapi.concurrency import run_in_threadpool
from tavily import TavilyClient

logger = logging.getLogger(__name__)


class TavilyProvider:
  """Provider for Tavily search API."""

  def __init__(self, api_key: str | None, *, max_results: int = 5) -> None:
    if not api_key:
      raise ValueError("Tavily API key is required.")
    self._client = TavilyClient(api_key=api_key)
    self._max_results = max_results

  async def search(self, query: str, **kwargs: Any) -> list[dict[str, Any]]:
    """Run a search and return compact ``{title, url, content}`` hits."""
    kwargs.setdefault("max_results", self._max_results)
    try:
      # Tavily client is synchronous
      response = await run_in_threadpool(self._client.search, query=query, **kwargs)
    except Exception:
      logger.error("Tavily search failed for query: %r", query, exc_info=True)
      raise

    results = response.get("results") or []
    logger.info("Tavily search for %r returned %d results", query, len(results))
    return [{"title": item.get("title", ""), "url": item.get("url", ""), "content": (item.get("content") or "")[:500]} for item in results]
