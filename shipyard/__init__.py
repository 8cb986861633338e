"""Shipyard runtime — generate, build, heal and deploy AI-authored projects.

Public API
----------
Session::

    GenerationSession, PipelineConfig

Orchestrator::

    TurnOrchestrator, OrchestratorConfig, OrchestratorResult,
    OrchestratorEvent, TurnStartedEvent, CommentaryEvent,
    ToolExecutedEvent, FinishedEvent,

Model turns::

    TurnModel, ModelTurn, AnthropicTurnModel, parse_anthropic_response

Tools::

    ToolExecutor, Registry, FileStore, FileRecord, normalize_path,
    apply_patch, apply_search_replace, parse_unified_diff

Build & healing::

    Bundler, parse_diagnostics, classify, Classification,
    SelfHealingLoop, HealState, RepairRequest, apply_repair

Deployment::

    DeploymentService, DeploymentConfig

Contracts (Pydantic models)::

    ToolName, ToolUse, ToolCall, ToolResponse, ChatTurn,
    Diagnostic, BuildArtifact, BuildResult, BuildAttempt,
    Version, Deployment, ProjectStatus, Environment,
    ErrorCategory, RepairStrategy

Errors::

    ShipyardError, ToolValidationError, PathEscape, PatchConflict,
    FileNotFound, MalformedPatch, ProtocolViolation, TurnCeilingExceeded,
    ModelError, SessionAborted, BuildFailure, HealingExhausted,
    DeploymentPreconditionError, DeploymentFailure
"""

from shipyard.backoff import ExponentialBackoff, LinearBackoff
from shipyard.bundler import Bundler
from shipyard.classifier import Classification, classify
from shipyard.contracts import (
    BuildArtifact,
    BuildAttempt,
    BuildResult,
    ChatTurn,
    Deployment,
    Diagnostic,
    Environment,
    ErrorCategory,
    ProjectStatus,
    RepairStrategy,
    ToolCall,
    ToolName,
    ToolResponse,
    ToolUse,
    Version,
)
from shipyard.deploy import DeploymentConfig, DeploymentService
from shipyard.diagnostics import parse_diagnostics
from shipyard.errors import (
    BuildFailure,
    DeploymentFailure,
    DeploymentPreconditionError,
    FileNotFound,
    HealingExhausted,
    MalformedPatch,
    ModelError,
    PatchConflict,
    PathEscape,
    ProtocolViolation,
    SessionAborted,
    ShipyardError,
    ToolValidationError,
    TurnCeilingExceeded,
)
from shipyard.executor import ToolExecutor
from shipyard.file_store import FileRecord, FileStore, normalize_path
from shipyard.healing import HealState, RepairRequest, SelfHealingLoop
from shipyard.orchestrator import (
    CommentaryEvent,
    FinishedEvent,
    OrchestratorConfig,
    OrchestratorEvent,
    OrchestratorResult,
    ToolExecutedEvent,
    TurnOrchestrator,
    TurnStartedEvent,
)
from shipyard.patcher import apply_patch, apply_search_replace, parse_unified_diff
from shipyard.project import Project
from shipyard.registry import Registry
from shipyard.repairs import apply_repair
from shipyard.session import GenerationSession, PipelineConfig
from shipyard.turns import AnthropicTurnModel, ModelTurn, TurnModel, parse_anthropic_response

__all__ = [
    # Session
    "GenerationSession",
    "PipelineConfig",
    "Project",
    # Orchestrator
    "CommentaryEvent",
    "FinishedEvent",
    "OrchestratorConfig",
    "OrchestratorEvent",
    "OrchestratorResult",
    "ToolExecutedEvent",
    "TurnOrchestrator",
    "TurnStartedEvent",
    # Model turns
    "AnthropicTurnModel",
    "ModelTurn",
    "TurnModel",
    "parse_anthropic_response",
    # Tools
    "FileRecord",
    "FileStore",
    "Registry",
    "ToolExecutor",
    "apply_patch",
    "apply_search_replace",
    "normalize_path",
    "parse_unified_diff",
    # Build & healing
    "Bundler",
    "Classification",
    "HealState",
    "RepairRequest",
    "SelfHealingLoop",
    "apply_repair",
    "classify",
    "parse_diagnostics",
    # Backoff
    "ExponentialBackoff",
    "LinearBackoff",
    # Deployment
    "DeploymentConfig",
    "DeploymentService",
    # Contracts
    "BuildArtifact",
    "BuildAttempt",
    "BuildResult",
    "ChatTurn",
    "Deployment",
    "Diagnostic",
    "Environment",
    "ErrorCategory",
    "ProjectStatus",
    "RepairStrategy",
    "ToolCall",
    "ToolName",
    "ToolResponse",
    "ToolUse",
    "Version",
    # Errors
    "BuildFailure",
    "DeploymentFailure",
    "DeploymentPreconditionError",
    "FileNotFound",
    "HealingExhausted",
    "MalformedPatch",
    "ModelError",
    "PatchConflict",
    "PathEscape",
    "ProtocolViolation",
    "SessionAborted",
    "ShipyardError",
    "ToolValidationError",
    "TurnCeilingExceeded",
]
