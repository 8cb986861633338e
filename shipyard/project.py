"""Project aggregate — owns files, versions, turns, attempts and deployments."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from shipyard.contracts import (
    BuildAttempt,
    ChatTurn,
    Deployment,
    Environment,
    ProjectStatus,
    Version,
)
from shipyard.file_store import FileStore

_SLUG_RE = re.compile(r"[^a-z0-9]+")


def slugify(name: str, *, fallback: str = "app") -> str:
    slug = _SLUG_RE.sub("-", name.lower()).strip("-")
    return slug[:40].strip("-") or fallback


@dataclass
class Project:
    """One generated application and everything recorded about it.

    Child collections are append-only apart from ``store``, which only
    the tool executor mutates.
    """

    name: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: ProjectStatus = ProjectStatus.PLANNING
    store: FileStore = field(default_factory=FileStore)
    versions: list[Version] = field(default_factory=list)
    turns: list[ChatTurn] = field(default_factory=list)
    build_attempts: list[BuildAttempt] = field(default_factory=list)
    deployments: list[Deployment] = field(default_factory=list)
    failure: dict | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def slug(self) -> str:
        return f"{slugify(self.name)}-{self.id[:6]}"

    @property
    def latest_version(self) -> Version | None:
        return self.versions[-1] if self.versions else None

    @property
    def next_version_number(self) -> int:
        return len(self.versions) + 1

    @property
    def in_flight_turn(self) -> ChatTurn | None:
        """The outermost turn still running (repair turns nest under it)."""
        return next((t for t in self.turns if not t.is_terminal), None)

    def set_status(self, status: ProjectStatus) -> None:
        self.status = status
        self.updated_at = datetime.now(timezone.utc)

    def get_version(self, version_id: str) -> Version | None:
        for version in self.versions:
            if version.id == version_id:
                return version
        return None

    def add_version(self, version: Version) -> None:
        attempt = self.latest_attempt_for(version.id)
        if attempt is None or not attempt.success:
            raise ValueError(f"version {version.id} has no successful build attempt")
        self.versions.append(version)

    def latest_attempt_for(self, version_id: str) -> BuildAttempt | None:
        """Most recent build attempt that produced *version_id*."""
        for attempt in reversed(self.build_attempts):
            if attempt.version_id == version_id:
                return attempt
        return None

    def latest_deployment(self, environment: Environment | None = None) -> Deployment | None:
        for deployment in reversed(self.deployments):
            if environment is None or deployment.environment == environment:
                return deployment
        return None

    def summary(self) -> dict:
        latest = self.latest_version
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "status": self.status.value,
            "file_count": len(self.store),
            "versions": len(self.versions),
            "latest_version": latest.number if latest else None,
            "turns": len(self.turns),
            "build_attempts": len(self.build_attempts),
            "deployments": len(self.deployments),
            "failure": self.failure,
            "updated_at": self.updated_at.isoformat(),
        }
