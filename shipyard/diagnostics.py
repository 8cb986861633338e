"""Deterministic diagnostic parsers — structured errors from bundler output.

Every parser is a pure function: no LLM, no network, no side effects.
Input is raw stdout/stderr text; output is a list of frozen
``Diagnostic`` models.

Recognised formats:

- TypeScript ``file(line,col): error TS1234: message``
- TypeScript pretty ``file:line:col - error TS1234: message``
- esbuild ``✘ [ERROR] message`` followed by an indented ``file:line:col:``
- Vite / Rollup ``failed to resolve import "x" from "file"``
- Generic ``file:line:col: error: message``
"""

from __future__ import annotations

import re

from shipyard.contracts import Diagnostic

# ---------------------------------------------------------------------------
# Regex patterns
# ---------------------------------------------------------------------------

_ANSI_RE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

_TSC_PAREN_RE = re.compile(
    r"^(?P<file>[^\s(][^(]*?)\((?P<line>\d+),(?P<col>\d+)\):\s*"
    r"(?P<sev>error|warning)\s+(?P<code>TS\d+):\s*(?P<msg>.+)$",
    re.MULTILINE,
)
_TSC_PRETTY_RE = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+):(?P<col>\d+)\s+-\s+"
    r"(?P<sev>error|warning)\s+(?P<code>TS\d+):\s*(?P<msg>.+)$",
    re.MULTILINE,
)
_ESBUILD_HEADER_RE = re.compile(
    r"^\s*(?:✘|X|▲)\s+\[(?P<sev>ERROR|WARNING)\]\s+(?P<msg>.+?)\s*(?:\[plugin [^\]]+\])?$",
)
_ESBUILD_LOCATION_RE = re.compile(
    r"^\s+(?P<file>[^\s:]+):(?P<line>\d+):(?P<col>\d+):\s*$",
)
_ROLLUP_RESOLVE_RE = re.compile(
    r"(?:Rollup )?failed to resolve import\s+\"(?P<module>[^\"]+)\"\s+from\s+\"(?P<file>[^\"]+)\"",
    re.IGNORECASE,
)
_GENERIC_RE = re.compile(
    r"^(?P<file>[^\s:][^:]*?\.[A-Za-z]{1,5}):(?P<line>\d+)(?::(?P<col>\d+))?:\s*"
    r"(?P<sev>error|warning|Error|Warning)\b[:\s]*(?P<msg>.+)$",
    re.MULTILINE,
)

TAIL_LINES = 30


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def _clean_file(path: str) -> str:
    path = path.strip().replace("\\", "/")
    while path.startswith("./"):
        path = path[2:]
    return path


def parse_tsc(output: str) -> list[Diagnostic]:
    """Parse TypeScript compiler diagnostics (both output styles)."""
    diags: list[Diagnostic] = []
    for regex in (_TSC_PAREN_RE, _TSC_PRETTY_RE):
        for m in regex.finditer(output):
            diags.append(Diagnostic(
                file=_clean_file(m.group("file")),
                line=int(m.group("line")),
                column=int(m.group("col")),
                message=m.group("msg").strip(),
                severity=m.group("sev"),  # type: ignore[arg-type]
                code=m.group("code"),
            ))
    return diags


def parse_esbuild(output: str) -> list[Diagnostic]:
    """Parse esbuild's ``✘ [ERROR]`` blocks.

    The location line, when present, follows the header within a few
    lines (after a blank line).
    """
    diags: list[Diagnostic] = []
    lines = output.splitlines()
    for i, line in enumerate(lines):
        m = _ESBUILD_HEADER_RE.match(line)
        if not m:
            continue
        file, line_no, col = "", None, None
        for follow in lines[i + 1:i + 4]:
            loc = _ESBUILD_LOCATION_RE.match(follow)
            if loc:
                file = _clean_file(loc.group("file"))
                line_no = int(loc.group("line"))
                col = int(loc.group("col"))
                break
        diags.append(Diagnostic(
            file=file,
            line=line_no,
            column=col,
            message=m.group("msg").strip(),
            severity="error" if m.group("sev") == "ERROR" else "warning",
        ))
    return diags


def parse_rollup(output: str) -> list[Diagnostic]:
    """Parse Vite/Rollup unresolved-import failures."""
    return [
        Diagnostic(
            file=_clean_file(m.group("file")),
            message=f'Cannot resolve import "{m.group("module")}"',
            severity="error",
        )
        for m in _ROLLUP_RESOLVE_RE.finditer(output)
    ]


def parse_generic(output: str) -> list[Diagnostic]:
    """Parse ``file:line[:col]: error: message`` lines."""
    diags: list[Diagnostic] = []
    for m in _GENERIC_RE.finditer(output):
        col = m.group("col")
        diags.append(Diagnostic(
            file=_clean_file(m.group("file")),
            line=int(m.group("line")),
            column=int(col) if col else None,
            message=m.group("msg").strip(),
            severity="error" if m.group("sev").lower() == "error" else "warning",
        ))
    return diags


def parse_diagnostics(output: str) -> list[Diagnostic]:
    """Run every parser over *output* and return de-duplicated diagnostics.

    Order is preserved: TypeScript first, then esbuild, Rollup, generic.
    The generic parser only contributes when the specific ones found
    nothing, since it also matches lines they already handled.
    """
    text = strip_ansi(output or "")
    found = parse_tsc(text) + parse_esbuild(text) + parse_rollup(text)
    if not found:
        found = parse_generic(text)

    seen: set[tuple] = set()
    unique: list[Diagnostic] = []
    for d in found:
        key = (d.file, d.line, d.column, d.message)
        if key in seen:
            continue
        seen.add(key)
        unique.append(d)
    return unique


def fallback_diagnostic(output: str, *, reason: str = "build failed") -> Diagnostic:
    """Single unlocated error carrying the tail of *output*."""
    tail = strip_ansi(output or "").strip().splitlines()[-TAIL_LINES:]
    body = "\n".join(tail) if tail else "(no output)"
    return Diagnostic(message=f"{reason}:\n{body}", severity="error")


# ---------------------------------------------------------------------------
# Aggregation / rendering
# ---------------------------------------------------------------------------


def files_with_errors(diagnostics: list[Diagnostic]) -> list[str]:
    """Distinct files carrying error diagnostics, in first-seen order."""
    files: list[str] = []
    for d in diagnostics:
        if d.severity == "error" and d.file and d.file not in files:
            files.append(d.file)
    return files


def render_diagnostics(diagnostics: list[Diagnostic], *, limit: int = 40) -> str:
    """Human/LLM-readable listing, one diagnostic per line."""
    shown = diagnostics[:limit]
    lines = [d.render() for d in shown]
    if len(diagnostics) > limit:
        lines.append(f"... and {len(diagnostics) - limit} more")
    return "\n".join(lines)


__all__ = [
    "fallback_diagnostic",
    "files_with_errors",
    "parse_diagnostics",
    "parse_esbuild",
    "parse_generic",
    "parse_rollup",
    "parse_tsc",
    "render_diagnostics",
    "strip_ansi",
]
