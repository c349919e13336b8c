"""Per-agent tool sets assembled from shared tool collaborators."""

from __future__ import annotations

import logging
from dataclasses import dataclass

from app.ai.providers.tavily import TavilyProvider
from app.ai.tools.feeds import FeedChecker, FeedRouteIndex, check_feed_tool, feed_routes_tool
from app.ai.tools.registry import ToolSpec, Toolset
from app.ai.tools.web import BrowserFetcher, WebFetcher, browser_fetch_tool, search_tool, web_fetch_tool
from app.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolKit:
  """Collaborators behind every tool; shared by all agents of the process."""

  fetcher: WebFetcher
  browser: BrowserFetcher
  search: TavilyProvider | None
  feed_index: FeedRouteIndex
  feed_checker: FeedChecker

  @classmethod
  def from_settings(cls, settings: Settings) -> ToolKit:
    search: TavilyProvider | None = None
    if settings.tavily_api_key:
      search = TavilyProvider(settings.tavily_api_key, max_results=settings.search_max_results)
    else:
      logger.warning("TAVILY_API_KEY is not set; webSearch will report itself unavailable.")
    return cls(
      fetcher=WebFetcher(timeout_seconds=settings.fetch_timeout_seconds),
      browser=BrowserFetcher(),
      search=search,
      feed_index=FeedRouteIndex(settings.rsshub_base_url),
      feed_checker=FeedChecker(),
    )

  @property
  def search_available(self) -> bool:
    return self.search is not None

  def discovery_tools(self) -> Toolset:
    return Toolset([search_tool(self.search), feed_routes_tool(self.feed_index), check_feed_tool(self.feed_checker)])

  def generation_tools(self, validate: ToolSpec) -> Toolset:
    """Generation tools plus the per-run validateScript tool."""

    return Toolset([web_fetch_tool(self.fetcher), browser_fetch_tool(self.browser), search_tool(self.search), feed_routes_tool(self.feed_index), validate])

  def review_tools(self) -> Toolset:
    return Toolset([web_fetch_tool(self.fetcher)])
