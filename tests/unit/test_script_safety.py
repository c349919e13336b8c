from __future__ import annotations

import pytest

from app.sandbox.safety import check_script

GOOD = """
import json
import re
from urllib.parse import urljoin
from xml.etree import ElementTree


def collect():
    resp = fetch("https://example.com/feed.xml")
    root = ElementTree.fromstring(resp.text)
    return [{"title": item.findtext("title"), "url": urljoin(resp.url, item.findtext("link"))} for item in root.iter("item")]
"""


def test_allowed_script_passes() -> None:
  result = check_script(GOOD)
  assert result.safe
  assert result.violation is None


@pytest.mark.parametrize(
  ("script", "fragment"),
  [
    ("import os\ndef collect():\n    return []", "import of os"),
    ("from subprocess import run\ndef collect():\n    return []", "import from subprocess"),
    ("def collect():\n    return eval('[]')", "eval()"),
    ("def collect():\n    return ().__class__.__bases__", "dunder attribute"),
    ("def gather():\n    return []", "collect()"),
    ("def collect(:\n", "syntax error"),
  ],
)
def test_unsafe_scripts_are_rejected(script: str, fragment: str) -> None:
  result = check_script(script)
  assert not result.safe
  assert fragment in (result.violation or "")
