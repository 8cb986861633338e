"""Tool registry — maps the closed set of tool names to handlers.

The ``Registry`` is a plain class (not a singleton) so tests can create
fresh instances.  Only names from ``ToolName`` may be registered, which
keeps the command set closed: dispatch is a dictionary lookup, never
reflection, and every call is validated against its Pydantic request
model before the handler sees it.
"""

from __future__ import annotations

import inspect
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from pydantic import BaseModel, ValidationError

from shipyard.contracts import ToolName, ToolResponse
from shipyard.errors import ShipyardError


@dataclass
class _ToolEntry:
    """Internal record for a registered tool."""

    name: ToolName
    handler: Callable
    request_model: type[BaseModel]
    description: str
    definition: dict[str, Any] = field(default_factory=dict)


class Registry:
    """Tool registry with schema-validated dispatch.

    Usage::

        reg = Registry()
        reg.register(ToolName.WRITE_FILE, handler, WriteFileRequest, "Write a file ...")
        result = await reg.dispatch("write_file", {"path": "a.ts", "content": ""})
    """

    def __init__(self) -> None:
        self._tools: dict[ToolName, _ToolEntry] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(
        self,
        name: ToolName | str,
        handler: Callable,
        request_model: type[BaseModel],
        description: str,
    ) -> None:
        """Register a handler for one member of the closed tool set.

        Raises ``ValueError`` for names outside ``ToolName`` or duplicates.
        """
        try:
            tool = ToolName(name)
        except ValueError:
            raise ValueError(f"'{name}' is not part of the tool set") from None
        if tool in self._tools:
            raise ValueError(f"Tool '{tool.value}' is already registered")

        self._tools[tool] = _ToolEntry(
            name=tool,
            handler=handler,
            request_model=request_model,
            description=description,
            definition=_build_tool_definition(tool.value, description, request_model),
        )

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    async def dispatch(self, name: str, params: dict[str, Any]) -> ToolResponse:
        """Validate *params*, call the tool handler, and return a
        ``ToolResponse`` with measured duration.

        * Unknown tool name → ``ToolResponse.fail`` (``ToolValidationError``)
        * Invalid params → ``ToolResponse.fail`` with validation details
        * ``ShipyardError`` from the handler → ``ToolResponse.fail`` typed
          with the error class name, unless it is fatal (re-raised)
        """
        start = time.perf_counter()

        entry = self._lookup(name)
        if entry is None:
            return ToolResponse.fail(
                f"Unknown tool '{name}'. Available: {', '.join(self.tool_names())}",
                error_type="ToolValidationError",
                duration_ms=_elapsed_ms(start),
            )

        try:
            validated = entry.request_model.model_validate(params or {})
        except ValidationError as exc:
            return ToolResponse.fail(
                f"Invalid arguments for '{entry.name.value}': {_summarise_validation(exc)}",
                error_type="ToolValidationError",
                duration_ms=_elapsed_ms(start),
            )

        try:
            if inspect.iscoroutinefunction(entry.handler):
                result = await entry.handler(validated)
            else:
                result = entry.handler(validated)
        except ShipyardError as exc:
            if exc.fatal:
                raise
            return ToolResponse.fail(
                str(exc), error_type=type(exc).__name__, duration_ms=_elapsed_ms(start),
            )
        except Exception as exc:
            return ToolResponse.fail(
                f"{entry.name.value} failed: {exc}",
                error_type=type(exc).__name__,
                duration_ms=_elapsed_ms(start),
            )

        elapsed = _elapsed_ms(start)
        if isinstance(result, ToolResponse):
            return result.model_copy(update={"duration_ms": elapsed})
        if isinstance(result, dict):
            return ToolResponse.ok(result, duration_ms=elapsed)
        return ToolResponse.ok({"result": str(result)}, duration_ms=elapsed)

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def list_tools(self) -> list[dict[str, Any]]:
        """Return Anthropic-compatible tool definitions for all
        registered tools.
        """
        return [entry.definition for entry in self._tools.values()]

    def has_tool(self, name: str) -> bool:
        return self._lookup(name) is not None

    def tool_names(self) -> list[str]:
        return [t.value for t in self._tools]

    def _lookup(self, name: str) -> _ToolEntry | None:
        try:
            return self._tools.get(ToolName(name))
        except ValueError:
            return None


# -----------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


def _summarise_validation(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ())) or "arguments"
        parts.append(f"{loc}: {err.get('msg', 'invalid')}")
    return "; ".join(parts)


def _build_tool_definition(
    name: str, description: str, request_model: type[BaseModel]
) -> dict[str, Any]:
    """Build an Anthropic-compatible tool definition from a Pydantic model."""
    schema = request_model.model_json_schema()
    defs = schema.get("$defs", {})
    properties = schema.get("properties", {})
    required = schema.get("required", [])

    clean_props: dict[str, Any] = {}
    for prop_name, prop_schema in properties.items():
        # Inline enum references (e.g. RunBuildRequest.mode)
        ref = prop_schema.get("$ref", "")
        if not ref and len(prop_schema.get("allOf", [])) == 1:
            ref = prop_schema["allOf"][0].get("$ref", "")
        if ref:
            prop_schema = {**defs.get(ref.rsplit("/", 1)[-1], {}), **prop_schema}
        # Optional[str] renders as anyOf [str, null]
        for option in prop_schema.get("anyOf", []):
            if option.get("type") not in (None, "null"):
                prop_schema = {**option, **prop_schema}
                break
        cleaned = {
            k: v
            for k, v in prop_schema.items()
            if k in ("type", "description", "default", "enum", "items")
        }
        if "type" not in cleaned:
            cleaned["type"] = "string"
        clean_props[prop_name] = cleaned

    return {
        "name": name,
        "description": description,
        "input_schema": {
            "type": "object",
            "properties": clean_props,
            "required": required,
        },
    }
