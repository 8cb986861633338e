"""Patch engine — apply unified diffs and search/replace edits to content.

Provides ``apply_patch()`` for applying a unified diff string and
``apply_search_replace()`` for verbatim text replacement.  Both detect
stale patches: when the region a patch describes no longer matches the
stored content a ``PatchConflict`` is raised and nothing is applied.

All operations work on strings (not files) — the caller is responsible
for committing the result to the file store.
"""

from __future__ import annotations

import difflib
import re

from pydantic import BaseModel, ConfigDict, Field

from shipyard.errors import MalformedPatch, PatchConflict

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_FUZZ: int = 3  # max ± line offset when locating an unchanged hunk

_HUNK_HEADER_RE = re.compile(
    r"^@@\s+-(\d+)(?:,(\d+))?\s+\+(\d+)(?:,(\d+))?\s+@@",
)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class Hunk(BaseModel):
    """A single hunk parsed from a unified diff."""

    model_config = ConfigDict(frozen=True)

    old_start: int = Field(..., ge=0, description="1-based start line in old file")
    old_count: int = Field(..., ge=0)
    new_start: int = Field(..., ge=0)
    new_count: int = Field(..., ge=0)
    old_lines: list[str] = Field(default_factory=list, description="Old-side lines in source order")
    new_lines: list[str] = Field(default_factory=list, description="New-side lines in source order")
    additions: int = 0
    removals: int = 0


class PatchResult(BaseModel):
    """Result of applying a patch to content."""

    model_config = ConfigDict(frozen=True)

    path: str = ""
    hunks_applied: int = Field(default=0, ge=0)
    post_content: str = ""
    insertions: int = Field(default=0, ge=0)
    deletions: int = Field(default=0, ge=0)


# ---------------------------------------------------------------------------
# Diff parser
# ---------------------------------------------------------------------------


def parse_unified_diff(diff_text: str) -> list[Hunk]:
    """Parse a unified diff string into a list of ``Hunk`` objects.

    ``---``/``+++`` headers and ``diff --git`` preamble lines are skipped.
    Raises ``MalformedPatch`` on a bad hunk header or a diff with no hunks.
    """
    if not diff_text or not diff_text.strip():
        raise MalformedPatch("diff is empty")

    lines = diff_text.split("\n")
    hunks: list[Hunk] = []
    i = 0
    while i < len(lines) and not lines[i].startswith("@@"):
        i += 1

    while i < len(lines):
        line = lines[i]
        if not line.startswith("@@"):
            i += 1
            continue

        m = _HUNK_HEADER_RE.match(line)
        if not m:
            raise MalformedPatch(f"bad hunk header {line!r}")

        old_start = int(m.group(1))
        old_count = int(m.group(2)) if m.group(2) is not None else 1
        new_start = int(m.group(3))
        new_count = int(m.group(4)) if m.group(4) is not None else 1

        i += 1
        old_seq: list[str] = []
        new_seq: list[str] = []
        additions = removals = 0

        while i < len(lines):
            ln = lines[i]
            if ln.startswith("@@") or ln.startswith("---") or ln.startswith("+++"):
                break
            if ln.startswith("-"):
                old_seq.append(ln[1:])
                removals += 1
            elif ln.startswith("+"):
                new_seq.append(ln[1:])
                additions += 1
            elif ln.startswith(" "):
                old_seq.append(ln[1:])
                new_seq.append(ln[1:])
            elif ln == "":
                # Trailing blank line at the end of the diff text
                if i == len(lines) - 1:
                    i += 1
                    break
                old_seq.append("")
                new_seq.append("")
            elif ln.startswith("\\"):
                pass  # "\ No newline at end of file"
            else:
                break
            i += 1

        hunks.append(Hunk(
            old_start=old_start,
            old_count=old_count,
            new_start=new_start,
            new_count=new_count,
            old_lines=old_seq,
            new_lines=new_seq,
            additions=additions,
            removals=removals,
        ))

    if not hunks:
        raise MalformedPatch("no @@ hunk headers found")
    return hunks


# ---------------------------------------------------------------------------
# Hunk matching
# ---------------------------------------------------------------------------


def _match_hunk(lines: list[str], pattern: list[str], start: int, fuzz: int) -> int | None:
    """Find the 0-based index where *pattern* matches *lines* near *start*.

    Tries the exact position first, then scans ±*fuzz* lines.  Matching
    is exact line-for-line; only the position is fuzzy.
    """
    if not pattern:
        return min(max(0, start), len(lines))

    def _matches_at(pos: int) -> bool:
        if pos < 0 or pos + len(pattern) > len(lines):
            return False
        return lines[pos:pos + len(pattern)] == pattern

    if _matches_at(start):
        return start
    for offset in range(1, fuzz + 1):
        if _matches_at(start - offset):
            return start - offset
        if _matches_at(start + offset):
            return start + offset
    return None


# ---------------------------------------------------------------------------
# Patch application
# ---------------------------------------------------------------------------


def apply_patch(
    content: str,
    diff_text: str,
    *,
    path: str = "",
    fuzz: int = DEFAULT_FUZZ,
) -> PatchResult:
    """Apply a unified diff to *content* and return a ``PatchResult``.

    All hunks are matched against a working copy before the result is
    returned, so a conflict in any hunk leaves the caller's content
    untouched.

    Raises
    ------
    PatchConflict
        When a hunk's old lines cannot be found at or near their position.
    MalformedPatch
        When the diff cannot be parsed.
    """
    hunks = parse_unified_diff(diff_text)
    lines = content.split("\n")
    offset = 0
    insertions = deletions = 0

    for idx, hunk in enumerate(hunks):
        expected_pos = max(0, hunk.old_start - 1) + offset
        match_pos = _match_hunk(lines, hunk.old_lines, expected_pos, fuzz)
        if match_pos is None:
            actual = lines[expected_pos:expected_pos + len(hunk.old_lines)]
            raise PatchConflict(
                file_path=path,
                hunk_index=idx,
                expected="\n".join(hunk.old_lines),
                actual="\n".join(actual),
            )

        lines[match_pos:match_pos + len(hunk.old_lines)] = hunk.new_lines
        offset += len(hunk.new_lines) - len(hunk.old_lines)
        insertions += hunk.additions
        deletions += hunk.removals

    return PatchResult(
        path=path,
        hunks_applied=len(hunks),
        post_content="\n".join(lines),
        insertions=insertions,
        deletions=deletions,
    )


def apply_search_replace(
    content: str,
    search: str,
    replace: str,
    *,
    path: str = "",
) -> PatchResult:
    """Replace the single verbatim occurrence of *search* in *content*.

    A missing or ambiguous *search* is a stale patch and raises
    ``PatchConflict`` with the closest matching region as ``actual``.
    """
    count = content.count(search)
    if count == 0:
        raise PatchConflict(
            file_path=path,
            hunk_index=0,
            expected=search,
            actual=_closest_region(content, search),
        )
    if count > 1:
        raise PatchConflict(
            file_path=path,
            hunk_index=0,
            expected=search,
            actual=f"<search text occurs {count} times; include more context>",
        )

    post = content.replace(search, replace, 1)
    return PatchResult(
        path=path,
        hunks_applied=1,
        post_content=post,
        insertions=replace.count("\n") + (1 if replace else 0),
        deletions=search.count("\n") + 1,
    )


def _closest_region(content: str, search: str) -> str:
    """Return the window of *content* most similar to *search* (for hints)."""
    lines = content.split("\n")
    width = max(1, search.count("\n") + 1)
    best, best_ratio = "", 0.0
    for pos in range(0, max(1, len(lines) - width + 1)):
        window = "\n".join(lines[pos:pos + width])
        ratio = difflib.SequenceMatcher(None, window, search).quick_ratio()
        if ratio > best_ratio:
            best, best_ratio = window, ratio
    return best


__all__ = [
    "Hunk",
    "PatchResult",
    "apply_patch",
    "apply_search_replace",
    "parse_unified_diff",
]
