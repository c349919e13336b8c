"""Static safety analysis run before a script enters the sandbox."""

from __future__ import annotations

import ast
from dataclasses import dataclass

from app.sandbox.contract import ALLOWED_MODULES

FORBIDDEN_NAMES: dict[str, str] = {
  "eval": "eval() is not allowed",
  "exec": "exec() is not allowed",
  "compile": "compile() is not allowed",
  "open": "open() is not allowed",
  "__import__": "__import__() is not allowed",
  "globals": "globals() is not allowed",
  "locals": "locals() is not allowed",
  "vars": "vars() is not allowed",
  "getattr": "getattr() is not allowed",
  "setattr": "setattr() is not allowed",
  "delattr": "delattr() is not allowed",
  "breakpoint": "breakpoint() is not allowed",
  "input": "input() is not allowed",
  "exit": "exit() is not allowed",
  "quit": "quit() is not allowed",
}


@dataclass(frozen=True)
class SafetyResult:
  safe: bool
  violation: str | None = None


def _module_allowed(name: str) -> bool:
  return name in ALLOWED_MODULES or any(name.startswith(f"{allowed}.") for allowed in ALLOWED_MODULES)


def _import_from_allowed(node: ast.ImportFrom) -> bool:
  if node.level or not node.module:
    return False
  if _module_allowed(node.module):
    return True
  # from xml.etree import ElementTree
  return all(f"{node.module}.{alias.name}" in ALLOWED_MODULES for alias in node.names)


def check_script(script: str) -> SafetyResult:
  """Reject scripts that reach for I/O, introspection or dynamic code."""

  try:
    tree = ast.parse(script)
  except SyntaxError as exc:
    return SafetyResult(safe=False, violation=f"syntax error on line {exc.lineno}: {exc.msg}")

  has_entrypoint = False
  for node in ast.walk(tree):
    if isinstance(node, ast.Import):
      for alias in node.names:
        if not _module_allowed(alias.name):
          return SafetyResult(safe=False, violation=f"import of {alias.name} is not allowed")
    elif isinstance(node, ast.ImportFrom):
      if not _import_from_allowed(node):
        return SafetyResult(safe=False, violation=f"import from {node.module or '.'} is not allowed")
    elif isinstance(node, ast.Name) and node.id in FORBIDDEN_NAMES:
      return SafetyResult(safe=False, violation=FORBIDDEN_NAMES[node.id])
    elif isinstance(node, ast.Attribute) and node.attr.startswith("__") and node.attr.endswith("__"):
      return SafetyResult(safe=False, violation=f"dunder attribute access ({node.attr}) is not allowed")
    elif isinstance(node, ast.FunctionDef) and node.name == "collect" and node in tree.body:
      has_entrypoint = True

  if not has_entrypoint:
    return SafetyResult(safe=False, violation="script must define a top-level collect() function")
  return SafetyResult(safe=True)
