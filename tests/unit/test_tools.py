from __future__ import annotations

import httpx
import pytest
from pydantic import BaseModel

from app.ai.providers.base import ToolCall
from app.ai.tools.feeds import FeedChecker, FeedRouteIndex, check_feed_tool, template_pattern
from app.ai.tools.registry import ToolId, ToolSpec, Toolset
from app.ai.tools.web import WebFetcher, is_html, search_tool, strip_html
from app.jobs.errors import ToolExecutionError

RULES = {
  "github.com": {
    "_name": "GitHub",
    ".": [
      {"title": "Repo Issues", "target": "/github/issue/:user/:repo"},
      {"title": "Repo Releases", "target": "/github/release/:user/:repo"},
    ],
  },
  "bilibili.com": {"_name": "Bilibili", "space": [{"title": "UP Videos", "target": "/bilibili/user/video/:uid"}]},
}

FEED = "<?xml version='1.0'?><rss><channel><title>Rust</title><item><title>Rust 1.80 released</title></item></channel></rss>"


class EchoArgs(BaseModel):
  text: str


def _echo_toolset() -> Toolset:
  async def _handle(args: EchoArgs) -> str:
    return args.text.upper()

  return Toolset([ToolSpec(ToolId.WEB_FETCH, "Echo.", EchoArgs, _handle)])


def _client(handler) -> httpx.AsyncClient:
  return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.anyio
async def test_toolset_executes_validated_arguments() -> None:
  result = await _echo_toolset().execute(ToolCall(id="c1", name="webFetch", arguments='{"text": "hi"}'))
  assert result == "HI"


@pytest.mark.anyio
async def test_toolset_rejects_unknown_and_unavailable_tools() -> None:
  toolset = _echo_toolset()
  with pytest.raises(ToolExecutionError, match="Unknown tool"):
    await toolset.execute(ToolCall(id="c1", name="rm -rf", arguments="{}"))
  with pytest.raises(ToolExecutionError, match="not available here"):
    await toolset.execute(ToolCall(id="c2", name="webSearch", arguments="{}"))


@pytest.mark.anyio
async def test_toolset_reports_argument_problems() -> None:
  toolset = _echo_toolset()
  with pytest.raises(ToolExecutionError, match="not valid JSON"):
    await toolset.execute(ToolCall(id="c1", name="webFetch", arguments="{text"))
  with pytest.raises(ToolExecutionError, match="Invalid arguments: text"):
    await toolset.execute(ToolCall(id="c2", name="webFetch", arguments="{}"))


def test_tool_definitions_use_function_schema() -> None:
  definition = _echo_toolset().definitions()[0]
  assert definition["type"] == "function"
  assert definition["function"]["name"] == "webFetch"
  assert definition["function"]["parameters"]["required"] == ["text"]


@pytest.mark.anyio
async def test_search_without_provider_is_a_tool_error() -> None:
  with pytest.raises(ToolExecutionError, match="not configured"):
    await Toolset([search_tool(None)]).execute(ToolCall(id="c1", name="webSearch", arguments='{"query": "rust"}'))


def test_template_pattern_requires_filled_placeholders() -> None:
  pattern = template_pattern("http://rsshub.test/github/issue/:user/:repo")
  assert pattern is not None
  assert pattern.match("/github/issue/rust-lang/rust")
  assert pattern.match("/github/issue/rust-lang/rust?state=open")
  assert not pattern.match("/github/issue/:user/rust")
  assert not pattern.match("/github/release/rust-lang/rust")


@pytest.mark.anyio
async def test_route_index_lookup_and_cache() -> None:
  calls: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    calls.append(request.url.path)
    return httpx.Response(200, json=RULES)

  index = FeedRouteIndex("http://rsshub.test/", client=_client(handler))
  routes = await index.lookup("github")
  assert [route["routeName"] for route in routes] == ["Repo Issues", "Repo Releases"]
  assert routes[0]["templateUrl"] == "http://rsshub.test/github/issue/:user/:repo"

  videos = await index.lookup("UP Videos")
  assert [route["websiteName"] for route in videos] == ["Bilibili"]
  assert calls == ["/api/radar/rules"]
  assert index.matching_template("http://rsshub.test/bilibili/user/video/2267573") == "http://rsshub.test/bilibili/user/video/:uid"


@pytest.mark.anyio
async def test_route_index_load_failure_is_a_tool_error() -> None:
  index = FeedRouteIndex("http://rsshub.test", client=_client(lambda request: httpx.Response(503)))
  with pytest.raises(ToolExecutionError, match="radar rules"):
    await index.lookup("github")


@pytest.mark.anyio
async def test_feed_checker_classifies_urls() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/missing":
      return httpx.Response(404)
    if request.url.path == "/page":
      return httpx.Response(200, text="<html><body>hello</body></html>")
    return httpx.Response(200, text=FEED)

  checker = FeedChecker(client=_client(handler))
  results = await checker.check(["https://feeds.test/rust", "https://feeds.test/missing", "https://feeds.test/page"])
  assert [result["valid"] for result in results] == [True, False, False]
  assert results[1]["status"] == 404
  assert "not an RSS/Atom feed" in results[2]["hint"]


@pytest.mark.anyio
async def test_feed_checker_keywords_and_template_mismatch() -> None:
  requested: list[str] = []

  def handler(request: httpx.Request) -> httpx.Response:
    requested.append(str(request.url))
    return httpx.Response(200, text=FEED)

  toolset = Toolset([check_feed_tool(FeedChecker(client=_client(handler)))])
  arguments = '{"urls": ["http://rsshub.test/github/issue/:user/rust", "http://rsshub.test/github/issue/rust-lang/rust"], "keywords": ["Go 1.22"], "templateUrls": ["http://rsshub.test/github/issue/:user/:repo", "http://rsshub.test/github/issue/:user/:repo"]}'
  results = await toolset.execute(ToolCall(id="c1", name="checkFeed", arguments=arguments))

  assert results[0]["templateMismatch"] is True
  assert results[1]["valid"] is False
  assert results[1]["keywordFound"] is False
  assert requested == ["http://rsshub.test/github/issue/rust-lang/rust"]


def test_strip_html_keeps_structure_only() -> None:
  raw = """<!DOCTYPE html><html><head><title> News </title><meta name="x"><script>var a = 1;</script></head>
  <body><!-- nav --><div class="list" onclick="go()" style="color: red"><a href="/post/1" data-tracking="abc">Post</a></div>
  <script>track()</script><svg><path d="M0"/></svg></body></html>"""
  assert is_html(raw)
  stripped = strip_html(raw)
  assert "<title>News</title>" in stripped
  assert '<div class="list">' in stripped
  assert '<a href="/post/1">' in stripped
  assert "track()" not in stripped
  assert "onclick" not in stripped
  assert "<svg></svg>" in stripped
  assert "M0" not in stripped
  assert "nav" not in stripped


def test_strip_html_survives_quoted_angle_brackets_and_unclosed_tags() -> None:
  stripped = strip_html('<html><body><ul><li><a title="x>y" href="/p">First</a><li><a href="/q" onclick="a>b">Second</a></ul><p>unclosed</body></html>')
  assert '<a href="/p">First</a>' in stripped
  assert '<a href="/q">Second</a>' in stripped
  assert "x>y" not in stripped and "a>b" not in stripped
  assert "<p>unclosed</p>" in stripped


def test_json_is_not_html() -> None:
  assert not is_html('{"items": []}')


@pytest.mark.anyio
async def test_web_fetch_returns_failures_as_data() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/gone":
      return httpx.Response(410)
    return httpx.Response(200, text="<html><body><p class='x'>Hi</p><script>x()</script></body></html>")

  fetcher = WebFetcher(client=_client(handler))
  gone = await fetcher.fetch("https://site.test/gone")
  assert gone == {"ok": False, "status": 410, "body": "HTTP 410", "truncated": False}

  page = await fetcher.fetch("https://site.test/")
  assert page["ok"] is True
  assert "x()" not in page["body"]
  assert '<p class="x">' in page["body"]


@pytest.mark.anyio
async def test_web_fetch_network_error() -> None:
  def handler(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)

  result = await WebFetcher(client=_client(handler)).fetch("https://down.test/")
  assert result["ok"] is False
  assert result["status"] == 0
  assert "connection refused" in result["body"]
