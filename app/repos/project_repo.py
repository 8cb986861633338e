"""Project repository -- in-process storage for projects.

Projects live in a module-level dict for the lifetime of the process.
The async signatures match a database-backed repository so callers do not
change if persistence moves out of process.
"""

from shipyard.project import Project

_projects: dict[str, Project] = {}


async def create_project(name: str) -> Project:
    """Create and store a new project."""
    project = Project(name=name)
    _projects[project.id] = project
    return project


async def get_project_by_id(project_id: str) -> Project | None:
    """Fetch a project by id. Returns None if not found."""
    return _projects.get(project_id)


async def list_projects() -> list[Project]:
    """All projects, newest first."""
    return sorted(_projects.values(), key=lambda p: p.created_at, reverse=True)


def clear() -> None:
    """Drop every stored project (test helper)."""
    _projects.clear()
