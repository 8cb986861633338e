"""Projects router -- project creation, generation, abort, deploy and rollback."""

from fastapi import APIRouter, Query
from pydantic import BaseModel, Field

from app.errors import NotFoundError
from app.services import pipeline_service
from shipyard.contracts import Deployment, Environment, Version
from shipyard.project import Project

router = APIRouter(prefix="/projects", tags=["projects"])


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreateProjectRequest(BaseModel):
    """Request body for creating a project."""

    name: str = Field(..., min_length=1, max_length=255, description="Project name")


class GenerateRequest(BaseModel):
    """Request body for running an instruction."""

    instruction: str = Field(..., min_length=1, max_length=20_000, description="What to build or change")


class DeployRequest(BaseModel):
    """Request body for a deployment."""

    environment: Environment = Field(Environment.PREVIEW, description="preview | production")
    version_id: str | None = Field(None, description="Version to deploy (default: latest)")


class RollbackRequest(BaseModel):
    """Request body for a rollback."""

    environment: Environment = Field(Environment.PRODUCTION, description="preview | production")


# ---------------------------------------------------------------------------
# Serializers
# ---------------------------------------------------------------------------


def _version_to_dict(version: Version) -> dict:
    return {
        "id": version.id,
        "number": version.number,
        "build_attempt": version.build_attempt,
        "files": sorted(version.files),
        "output_files": sorted(version.artifact.files),
        "created_at": version.created_at.isoformat(),
    }


def _deployment_to_dict(deployment: Deployment) -> dict:
    return deployment.model_dump(mode="json")


def _project_detail(project: Project) -> dict:
    detail = project.summary()
    detail["files"] = project.store.paths()
    detail["versions"] = [_version_to_dict(v) for v in project.versions]
    detail["build_attempts"] = [
        a.model_dump(mode="json", exclude={"raw_output"}) for a in project.build_attempts
    ]
    detail["deployments"] = [_deployment_to_dict(d) for d in project.deployments]
    current: dict[str, dict | None] = {}
    for env in Environment:
        latest = project.latest_deployment(env)
        current[env.value] = _deployment_to_dict(latest) if latest is not None else None
    detail["current_deployments"] = current
    in_flight = project.in_flight_turn
    detail["in_flight_turn"] = in_flight.index if in_flight is not None else None
    detail["busy"] = pipeline_service.is_busy(project.id)
    return detail


# ---------------------------------------------------------------------------
# Project CRUD
# ---------------------------------------------------------------------------


@router.post("", status_code=201)
async def create_project(body: CreateProjectRequest) -> dict:
    """Create a new, empty project."""
    project = await pipeline_service.create_project(body.name)
    return project.summary()


@router.get("")
async def list_projects(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
) -> dict:
    """List projects, newest first."""
    projects = await pipeline_service.list_projects()
    page = projects[offset : offset + limit]
    return {"items": [p.summary() for p in page], "total": len(projects)}


@router.get("/{project_id}")
async def get_project(project_id: str) -> dict:
    """Project detail: status, files, versions, attempts, deployments."""
    project = await pipeline_service.get_project(project_id)
    return _project_detail(project)


@router.get("/{project_id}/turns")
async def get_turns(project_id: str) -> dict:
    """Conversation history for the project."""
    project = await pipeline_service.get_project(project_id)
    return {"items": [t.model_dump(mode="json") for t in project.turns]}


@router.get("/{project_id}/files/{path:path}")
async def get_file(project_id: str, path: str) -> dict:
    """Current content of one project file."""
    project = await pipeline_service.get_project(project_id)
    if path not in project.store:
        raise NotFoundError(f"File {path} not found")
    record = project.store.get(path)
    return {"path": record.path, "content": record.content, "version": record.version}


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


@router.post("/{project_id}/generate", status_code=202)
async def generate(project_id: str, body: GenerateRequest) -> dict:
    """Start a generation session in the background."""
    project = await pipeline_service.start_generation(project_id, body.instruction)
    return {"id": project.id, "status": project.status.value, "accepted": True}


@router.post("/{project_id}/abort")
async def abort(project_id: str) -> dict:
    """Abort the running session."""
    project = await pipeline_service.abort(project_id)
    return {"id": project.id, "aborting": True}


@router.post("/{project_id}/deploy")
async def deploy(project_id: str, body: DeployRequest) -> dict:
    """Deploy a version to the edge platform."""
    deployment = await pipeline_service.deploy(
        project_id, body.environment, version_id=body.version_id,
    )
    return _deployment_to_dict(deployment)


@router.post("/{project_id}/rollback")
async def rollback(project_id: str, body: RollbackRequest) -> dict:
    """Re-deploy the previous successfully deployed version."""
    deployment = await pipeline_service.rollback(project_id, body.environment)
    return _deployment_to_dict(deployment)
