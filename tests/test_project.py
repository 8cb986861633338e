"""Tests for shipyard.project — the project aggregate."""

import pytest

from shipyard.contracts import (
    BuildArtifact,
    BuildAttempt,
    ChatTurn,
    Deployment,
    Environment,
    ProjectStatus,
    TurnRole,
    TurnStatus,
    Version,
)
from shipyard.project import Project, slugify


def _version(number: int = 1) -> Version:
    return Version(number=number, files={}, build_attempt=1, artifact=BuildArtifact(files={"a": b"1"}))


@pytest.mark.parametrize(
    "name, expected",
    [
        ("Hello World", "hello-world"),
        ("  My  Shop!! ", "my-shop"),
        ("Ünïcode ☃", "n-code"),
        ("!!!", "app"),
        ("x" * 60, "x" * 40),
    ],
)
def test_slugify(name, expected):
    assert slugify(name) == expected


def test_slug_includes_id_prefix():
    project = Project(name="Hello World", id="abc123def456")
    assert project.slug == "hello-world-abc123"


def test_new_project_defaults():
    project = Project(name="p")
    assert project.status is ProjectStatus.PLANNING
    assert project.latest_version is None
    assert project.next_version_number == 1
    assert len(project.store) == 0


def test_add_version_requires_successful_attempt():
    project = Project(name="p")
    version = _version()
    with pytest.raises(ValueError, match="no successful build attempt"):
        project.add_version(version)

    project.build_attempts.append(BuildAttempt(number=1, success=False, version_id=version.id))
    with pytest.raises(ValueError):
        project.add_version(version)

    project.build_attempts.append(BuildAttempt(number=2, success=True, version_id=version.id))
    project.add_version(version)
    assert project.latest_version is version
    assert project.get_version(version.id) is version
    assert project.get_version("missing") is None
    assert project.next_version_number == 2


def test_latest_attempt_for():
    project = Project(name="p")
    project.build_attempts.extend([
        BuildAttempt(number=1, success=True, version_id="v1"),
        BuildAttempt(number=2, success=False),
        BuildAttempt(number=3, success=False, version_id="v1"),
    ])
    assert project.latest_attempt_for("v1").number == 3
    assert project.latest_attempt_for("v2") is None


def test_latest_deployment_by_environment():
    project = Project(name="p")
    project.deployments.extend([
        Deployment(version_id="v1", environment=Environment.PRODUCTION, success=True),
        Deployment(version_id="v2", environment=Environment.PREVIEW, success=True),
    ])
    assert project.latest_deployment().version_id == "v2"
    assert project.latest_deployment(Environment.PRODUCTION).version_id == "v1"


def test_in_flight_turn():
    project = Project(name="p")
    assert project.in_flight_turn is None
    project.turns.append(ChatTurn(index=0, role=TurnRole.AGENT, status=TurnStatus.EXECUTING))
    assert project.in_flight_turn is project.turns[0]
    # a repair turn nested under it does not displace the outer turn
    project.turns.append(ChatTurn(
        index=1, role=TurnRole.AGENT, parent_index=0, status=TurnStatus.EXECUTING,
    ))
    assert project.in_flight_turn is project.turns[0]
    project.turns[1].status = TurnStatus.COMPLETED
    project.turns[0].status = TurnStatus.COMPLETED
    assert project.in_flight_turn is None


def test_set_status_touches_updated_at():
    project = Project(name="p")
    before = project.updated_at
    project.set_status(ProjectStatus.GENERATING)
    assert project.status is ProjectStatus.GENERATING
    assert project.updated_at >= before


def test_summary():
    project = Project(name="Hello World", id="abc123def456")
    project.store.write("index.html", "<h1>Hi</h1>")
    summary = project.summary()
    assert summary["id"] == "abc123def456"
    assert summary["slug"] == "hello-world-abc123"
    assert summary["status"] == "planning"
    assert summary["file_count"] == 1
    assert summary["latest_version"] is None
    assert summary["failure"] is None
