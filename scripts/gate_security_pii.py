#!/usr/bin/env python3
"""Gate: logging hygiene for runtime code under src/unibox.

Fails if:
- print( appears in runtime code
- a logger call formats its message (f-string, %, .format) instead of
  passing a constant string
- a logger call passes `extra` without routing it through safe_log_context

Usage:
    python scripts/gate_security_pii.py
"""

import ast
import sys
from pathlib import Path

LOG_METHODS = {"debug", "info", "warning", "error", "critical", "exception"}


def _is_logger_call(node: ast.Call) -> bool:
    func = node.func
    return (
        isinstance(func, ast.Attribute)
        and func.attr in LOG_METHODS
        and isinstance(func.value, ast.Name)
        and func.value.id == "logger"
    )


def _is_redaction_call(node: ast.AST) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and node.func.id == "safe_log_context"
    )


def _redacted_names(tree: ast.AST) -> set[str]:
    """Names bound directly to a safe_log_context(...) result."""
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Assign) and _is_redaction_call(node.value):
            names.update(t.id for t in node.targets if isinstance(t, ast.Name))
    return names


def _calls_redaction(node: ast.AST, redacted: set[str]) -> bool:
    for sub in ast.walk(node):
        if _is_redaction_call(sub):
            return True
        if isinstance(sub, ast.Name) and sub.id in redacted:
            return True
    return False


def check_file(filepath: Path) -> list[str]:
    """Return violations found in one file."""
    try:
        tree = ast.parse(filepath.read_text(encoding="utf-8"), filename=str(filepath))
    except (UnicodeDecodeError, SyntaxError) as e:
        return [f"{filepath}: unparseable ({e.__class__.__name__})"]

    redacted = _redacted_names(tree)
    errors = []
    for node in ast.walk(tree):
        if not isinstance(node, ast.Call):
            continue
        if isinstance(node.func, ast.Name) and node.func.id == "print":
            errors.append(f"{filepath}:{node.lineno}: print() not allowed in runtime code")
            continue
        if not _is_logger_call(node):
            continue

        if node.args and not (
            isinstance(node.args[0], ast.Constant) and isinstance(node.args[0].value, str)
        ):
            errors.append(f"{filepath}:{node.lineno}: logger message must be a constant string")

        for kw in node.keywords:
            if kw.arg == "extra" and not _calls_redaction(kw.value, redacted):
                errors.append(
                    f"{filepath}:{node.lineno}: logger extra must go through safe_log_context"
                )
    return errors


def main() -> int:
    src_dir = Path(__file__).resolve().parent.parent / "src" / "unibox"
    if not src_dir.exists():
        sys.stderr.write("Error: src/unibox not found\n")
        return 1

    all_errors: list[str] = []
    for pyfile in sorted(src_dir.rglob("*.py")):
        all_errors.extend(check_file(pyfile))

    if all_errors:
        sys.stderr.write("Logging gate FAILED:\n")
        for err in all_errors:
            sys.stderr.write(f"  {err}\n")
        return 1

    sys.stdout.write("Logging gate PASSED\n")
    return 0


if __name__ == "__main__":
    sys.exit(main())
