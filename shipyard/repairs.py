"""Deterministic build repairs — fixes that need no model call.

Each repair reads the current file store, computes new content and
commits it through the tool executor (so repairs obey the same path
rules and atomicity as model edits).  A repair that finds nothing to
change reports an empty ``changed`` list; the healing loop treats that
as a no-op and escalates to a model strategy.

Model-driven strategies (``model_single_file``, ``model_full_context``)
are not handled here.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

from shipyard.classifier import Classification
from shipyard.contracts import RepairStrategy
from shipyard.executor import ToolExecutor

logger = logging.getLogger(__name__)

TS_NOCHECK = "// @ts-nocheck"
TSCONFIG_PATH = "tsconfig.json"
PACKAGE_JSON_PATH = "package.json"
WINDOW_TYPES_PATH = "src/types/window.d.ts"

# Versions for packages generated apps commonly forget to declare
KNOWN_VERSIONS: dict[str, str] = {
    "clsx": "^2.1.0",
    "tailwind-merge": "^2.2.0",
    "sonner": "^1.3.1",
    "next-themes": "^0.2.1",
    "lucide-react": "^0.344.0",
    "class-variance-authority": "^0.7.0",
}

_RELAXED_COMPILER_OPTIONS: dict[str, bool] = {
    "strict": False,
    "noUnusedLocals": False,
    "noUnusedParameters": False,
    "noImplicitAny": False,
}

_TS_SUFFIXES = (".ts", ".tsx", ".mts", ".cts")

DETERMINISTIC_STRATEGIES: frozenset[RepairStrategy] = frozenset({
    RepairStrategy.RELAX_CHECK,
    RepairStrategy.SYNTHESIZE_TYPES,
    RepairStrategy.ADD_DEPENDENCY,
})


@dataclass
class RepairOutcome:
    """What a deterministic repair did."""

    strategy: RepairStrategy
    changed: list[str] = field(default_factory=list)
    notes: list[str] = field(default_factory=list)

    @property
    def applied(self) -> bool:
        return bool(self.changed)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load_json(executor: ToolExecutor, path: str) -> dict | None:
    if path not in executor.store:
        return None
    try:
        data = json.loads(executor.store.read(path))
    except json.JSONDecodeError as exc:
        logger.warning("[heal] %s is not plain JSON (%s), leaving it alone", path, exc)
        return None
    return data if isinstance(data, dict) else None


async def _commit(executor: ToolExecutor, path: str, content: str, outcome: RepairOutcome) -> None:
    if path in executor.store and executor.store.read(path) == content:
        return
    call = await executor.write(path, content)
    if call.success:
        outcome.changed.append(path)
    else:
        outcome.notes.append(f"write {path} failed: {call.result.error}")


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


async def relax_check(classification: Classification, executor: ToolExecutor) -> RepairOutcome:
    """Disable type checking where it fails.

    Offending TypeScript files get a ``// @ts-nocheck`` header; when no
    such file is known, ``tsconfig.json`` strictness flags are turned off.
    """
    outcome = RepairOutcome(RepairStrategy.RELAX_CHECK)
    ts_files = [
        f for f in classification.files
        if f.endswith(_TS_SUFFIXES) and not f.endswith(".d.ts") and f in executor.store
    ]
    for path in ts_files:
        content = executor.store.read(path)
        if content.lstrip().startswith(TS_NOCHECK):
            continue
        await _commit(executor, path, f"{TS_NOCHECK}\n{content}", outcome)

    if not ts_files:
        config = _load_json(executor, TSCONFIG_PATH)
        if config is not None:
            options = config.setdefault("compilerOptions", {})
            for key, value in _RELAXED_COMPILER_OPTIONS.items():
                if key in options or key == "strict":
                    options[key] = value
            await _commit(executor, TSCONFIG_PATH, json.dumps(config, indent=2) + "\n", outcome)
    return outcome


def _window_declarations(existing: str, properties: list[str]) -> str:
    if "interface Window {" in existing:
        content = existing
        for prop in properties:
            if f"{prop}:" not in content:
                content = content.replace(
                    "interface Window {", f"interface Window {{\n    {prop}: any;", 1,
                )
        return content
    members = "\n".join(f"    {prop}: any;" for prop in properties)
    block = (
        "declare global {\n"
        "  interface Window {\n"
        f"{members}\n"
        "  }\n"
        "}\n"
        "\n"
        "export {};\n"
    )
    return (existing.rstrip() + "\n\n" + block) if existing.strip() else block


async def synthesize_types(classification: Classification, executor: ToolExecutor) -> RepairOutcome:
    """Add the declarations the diagnostics say are missing.

    Window properties go into ``src/types/window.d.ts``; an unresolved
    ``@/`` import gets the alias added to ``tsconfig.json``.
    """
    outcome = RepairOutcome(RepairStrategy.SYNTHESIZE_TYPES)

    if classification.window_properties:
        existing = (
            executor.store.read(WINDOW_TYPES_PATH) if WINDOW_TYPES_PATH in executor.store else ""
        )
        content = _window_declarations(existing, classification.window_properties)
        await _commit(executor, WINDOW_TYPES_PATH, content, outcome)

    if classification.path_alias:
        config = _load_json(executor, TSCONFIG_PATH)
        if config is not None:
            options = config.setdefault("compilerOptions", {})
            options.setdefault("baseUrl", ".")
            paths = options.setdefault("paths", {})
            paths["@/*"] = ["./src/*"]
            await _commit(executor, TSCONFIG_PATH, json.dumps(config, indent=2) + "\n", outcome)
    return outcome


def package_version(name: str) -> str:
    return KNOWN_VERSIONS.get(name, "latest")


async def add_dependency(classification: Classification, executor: ToolExecutor) -> RepairOutcome:
    """Declare missing packages in ``package.json`` dependencies."""
    outcome = RepairOutcome(RepairStrategy.ADD_DEPENDENCY)
    config = _load_json(executor, PACKAGE_JSON_PATH)
    if config is None:
        outcome.notes.append("package.json missing or unreadable")
        return outcome

    deps = config.setdefault("dependencies", {})
    dev_deps = config.get("devDependencies", {})
    for name in classification.packages:
        if name in deps or name in dev_deps:
            continue
        deps[name] = package_version(name)
        outcome.notes.append(f"added {name}@{deps[name]}")
    await _commit(executor, PACKAGE_JSON_PATH, json.dumps(config, indent=2) + "\n", outcome)
    return outcome


_REPAIRS = {
    RepairStrategy.RELAX_CHECK: relax_check,
    RepairStrategy.SYNTHESIZE_TYPES: synthesize_types,
    RepairStrategy.ADD_DEPENDENCY: add_dependency,
}


async def apply_repair(classification: Classification, executor: ToolExecutor) -> RepairOutcome:
    """Run the deterministic repair for *classification*'s strategy.

    Raises ``ValueError`` for model strategies.
    """
    repair = _REPAIRS.get(classification.strategy)
    if repair is None:
        raise ValueError(f"{classification.strategy.value} is not a deterministic repair")
    outcome = await repair(classification, executor)
    logger.info(
        "[heal] %s changed %s%s",
        classification.strategy.value,
        ", ".join(outcome.changed) or "nothing",
        f" ({'; '.join(outcome.notes)})" if outcome.notes else "",
    )
    return outcome


__all__ = [
    "DETERMINISTIC_STRATEGIES",
    "KNOWN_VERSIONS",
    "RepairOutcome",
    "add_dependency",
    "apply_repair",
    "package_version",
    "relax_check",
    "synthesize_types",
]
