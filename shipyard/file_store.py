"""File store — versioned in-memory mapping of project paths to content.

The store is owned by a ``Project`` and mutated only through the tool
executor.  Every mutation bumps a monotonically increasing revision
counter; each ``FileRecord`` remembers the revision that last touched it.

Paths are project-relative, forward-slash separated and case-sensitive.
``normalize_path`` is the single place where path safety is decided.
"""

from __future__ import annotations

import hashlib
import re
from collections.abc import Iterator, Mapping

from pydantic import BaseModel, ConfigDict, Field

from shipyard.errors import FileNotFound

# ---------------------------------------------------------------------------
# Path normalisation
# ---------------------------------------------------------------------------

_DRIVE_RE = re.compile(r"^[A-Za-z]:")
_BLOCKED_SEGMENTS: frozenset[str] = frozenset({".git", "node_modules"})


def normalize_path(path: str) -> str:
    """Return the canonical form of a project-relative *path*.

    Raises ``ValueError`` when the path is empty, absolute, or would
    escape the project root.
    """
    if path is None or not path.strip():
        raise ValueError("path is empty")

    raw = path.strip().replace("\\", "/")
    if raw.startswith("/") or _DRIVE_RE.match(raw):
        raise ValueError(f"path {path!r} is absolute")

    parts: list[str] = []
    for segment in raw.split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            raise ValueError(f"path {path!r} escapes the project root")
        if segment in _BLOCKED_SEGMENTS:
            raise ValueError(f"path {path!r} targets a reserved directory")
        parts.append(segment)

    if not parts:
        raise ValueError(f"path {path!r} does not name a file")
    return "/".join(parts)


def content_hash(content: str) -> str:
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------


class FileRecord(BaseModel):
    """A single file in the store."""

    model_config = ConfigDict(frozen=True)

    path: str
    content: str
    content_hash: str
    version: int = Field(..., ge=1, description="Store revision that last modified the file")

    @property
    def size_bytes(self) -> int:
        return len(self.content.encode("utf-8"))


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class FileStore:
    """Ordered, versioned path → content mapping.

    Each public mutator either applies its full effect or raises before
    touching state, so callers never observe a half-applied operation.
    """

    __slots__ = ("_files", "_revision")

    def __init__(self, files: Mapping[str, str] | None = None) -> None:
        self._files: dict[str, FileRecord] = {}
        self._revision = 0
        for path, content in (files or {}).items():
            self.write(path, content)

    # -- Queries ------------------------------------------------------------

    @property
    def revision(self) -> int:
        return self._revision

    def __contains__(self, path: object) -> bool:
        return isinstance(path, str) and path in self._files

    def __len__(self) -> int:
        return len(self._files)

    def __iter__(self) -> Iterator[FileRecord]:
        return iter(list(self._files.values()))

    def paths(self) -> list[str]:
        return list(self._files.keys())

    def get(self, path: str) -> FileRecord:
        record = self._files.get(path)
        if record is None:
            raise FileNotFound(path)
        return record

    def read(self, path: str) -> str:
        return self.get(path).content

    def snapshot(self) -> dict[str, str]:
        """Return a detached copy of the current path → content mapping."""
        return {path: rec.content for path, rec in self._files.items()}

    def digest(self, *, preview_lines: int = 0) -> str:
        """Compact listing of the store for model context.

        One line per file with size and short hash; optionally the first
        *preview_lines* lines of each file.
        """
        lines: list[str] = [f"{len(self._files)} file(s), revision {self._revision}"]
        for rec in self._files.values():
            lines.append(f"- {rec.path} ({rec.size_bytes} bytes, {rec.content_hash[:8]})")
            if preview_lines > 0:
                for ln in rec.content.splitlines()[:preview_lines]:
                    lines.append(f"    {ln}")
        return "\n".join(lines)

    # -- Mutations ----------------------------------------------------------

    def _next_revision(self) -> int:
        self._revision += 1
        return self._revision

    def write(self, path: str, content: str) -> FileRecord:
        """Create or fully replace *path*."""
        path = normalize_path(path)
        record = FileRecord(
            path=path,
            content=content,
            content_hash=content_hash(content),
            version=self._next_revision(),
        )
        self._files[path] = record
        return record

    def delete(self, path: str) -> FileRecord:
        record = self.get(path)
        del self._files[path]
        self._next_revision()
        return record

    def rename(self, path: str, new_path: str, *, overwrite: bool = False) -> FileRecord:
        record = self.get(path)
        new_path = normalize_path(new_path)
        if new_path == path:
            return record
        if new_path in self._files and not overwrite:
            raise FileExistsError(new_path)
        moved = FileRecord(
            path=new_path,
            content=record.content,
            content_hash=record.content_hash,
            version=self._next_revision(),
        )
        del self._files[path]
        self._files[new_path] = moved
        return moved


__all__ = [
    "FileRecord",
    "FileStore",
    "content_hash",
    "normalize_path",
]
