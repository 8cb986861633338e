"""Build error classifier — maps diagnostics to a failure category.

Rules are evaluated in priority order and the first one that matches
decides the category for the whole diagnostic set:

1. ``type_check``          — static type violations (TS2xxx+ codes)
2. ``missing_dependency``  — unresolved bare package imports
3. ``syntax``              — parse errors confined to one file
4. ``unclassified``        — everything else

Each category has a fixed repair strategy; for type-check failures the
classifier prefers synthesising the missing declaration when the
diagnostics make it unambiguous and falls back to relaxing the check.
"""

from __future__ import annotations

import re

from pydantic import BaseModel, ConfigDict, Field

from shipyard.contracts import Diagnostic, ErrorCategory, RepairStrategy
from shipyard.diagnostics import files_with_errors

# ---------------------------------------------------------------------------
# Patterns
# ---------------------------------------------------------------------------

_TYPE_MESSAGE_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"Property '[^']+' does not exist on type"),
    re.compile(r"Type '.+' is not assignable to type"),
    re.compile(r"Argument of type '.+' is not assignable to parameter"),
    re.compile(r"Cannot find name '[^']+'"),
    re.compile(r"is declared but its value is never read"),
    re.compile(r"implicitly has an? '?any'? type"),
    re.compile(r"Cannot find module '(?:@/|\.{1,2}/)[^']*'"),
    re.compile(r"has no exported member"),
    re.compile(r"Object is possibly '(?:null|undefined)'"),
)

_WINDOW_PROPERTY_RE = re.compile(
    r"Property '(?P<prop>[A-Za-z_$][\w$]*)' does not exist on type 'Window(?: & typeof globalThis)?'",
)
_PATH_ALIAS_RE = re.compile(r"Cannot find module '@/[^']*'")

_DEPENDENCY_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r'Cannot resolve import "(?P<module>[^"]+)"'),
    re.compile(r'Could not resolve "(?P<module>[^"]+)"'),
    re.compile(r"Cannot find module '(?P<module>[^']+)' or its corresponding type declarations"),
    re.compile(r"Module not found: Error: Can't resolve '(?P<module>[^']+)'"),
)

_SYNTAX_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"^Expected\b"),
    re.compile(r"\bUnexpected (?:token|end of file|character|\"[^\"]*\")"),
    re.compile(r"\bUnterminated\b"),
    re.compile(r"SyntaxError"),
    re.compile(r"'[^']+' expected\.?$"),
    re.compile(r"\bParse error\b", re.IGNORECASE),
    re.compile(r"Invalid character"),
    re.compile(r"JSX element '[^']+' has no corresponding closing tag"),
)

# Node built-ins are never npm dependencies
_NODE_BUILTINS: frozenset[str] = frozenset({
    "fs", "path", "os", "crypto", "stream", "http", "https", "url", "util",
    "buffer", "events", "child_process", "net", "tls", "zlib",
})


# ---------------------------------------------------------------------------
# Model
# ---------------------------------------------------------------------------


class Classification(BaseModel):
    """Outcome of classifying one failed build."""

    model_config = ConfigDict(frozen=True)

    category: ErrorCategory
    strategy: RepairStrategy
    files: list[str] = Field(default_factory=list, description="Files with error diagnostics")
    packages: list[str] = Field(default_factory=list, description="Missing npm packages")
    window_properties: list[str] = Field(default_factory=list)
    path_alias: bool = Field(default=False, description="'@/' alias is unresolved")
    reason: str = ""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def package_name(specifier: str) -> str | None:
    """Return the npm package for an import *specifier*, or None when the
    specifier is relative, aliased, absolute or a Node built-in.
    """
    spec = specifier.strip()
    if not spec or spec.startswith((".", "/", "@/", "~/", "virtual:", "node:")):
        return None
    parts = spec.split("/")
    if spec.startswith("@"):
        if len(parts) < 2 or not parts[1]:
            return None
        name = "/".join(parts[:2])
    else:
        name = parts[0]
    if name in _NODE_BUILTINS:
        return None
    return name


def _is_type_error(diag: Diagnostic) -> bool:
    if diag.severity != "error":
        return False
    if diag.code and diag.code.startswith("TS"):
        number = diag.code[2:]
        # TS1xxx are parser errors; TS2307 on a bare package is a dependency
        if number.startswith("1"):
            return False
        if number == "2307" and _missing_package(diag) is not None:
            return False
        return True
    return any(r.search(diag.message) for r in _TYPE_MESSAGE_RES)


def _missing_package(diag: Diagnostic) -> str | None:
    for regex in _DEPENDENCY_RES:
        m = regex.search(diag.message)
        if m:
            return package_name(m.group("module"))
    return None


def _is_syntax_error(diag: Diagnostic) -> bool:
    if diag.severity != "error":
        return False
    if diag.code and diag.code.startswith("TS1"):
        return True
    first_line = diag.message.splitlines()[0] if diag.message else ""
    return any(r.search(first_line) for r in _SYNTAX_RES)


# ---------------------------------------------------------------------------
# Classifier
# ---------------------------------------------------------------------------


def classify(diagnostics: list[Diagnostic]) -> Classification:
    """Classify a failed build's diagnostics.

    Always returns a classification; unknown shapes land in
    ``unclassified`` so the healing loop can still make progress.
    """
    errors = [d for d in diagnostics if d.severity == "error"]
    files = files_with_errors(errors)

    # 1. Type-checking violations
    type_errors = [d for d in errors if _is_type_error(d)]
    if type_errors:
        window_props: list[str] = []
        alias = False
        unambiguous = True
        for d in type_errors:
            wm = _WINDOW_PROPERTY_RE.search(d.message)
            if wm:
                if wm.group("prop") not in window_props:
                    window_props.append(wm.group("prop"))
            elif _PATH_ALIAS_RE.search(d.message):
                alias = True
            else:
                unambiguous = False
        strategy = (
            RepairStrategy.SYNTHESIZE_TYPES if unambiguous else RepairStrategy.RELAX_CHECK
        )
        return Classification(
            category=ErrorCategory.TYPE_CHECK,
            strategy=strategy,
            files=files_with_errors(type_errors),
            window_properties=window_props,
            path_alias=alias,
            reason=f"{len(type_errors)} type error(s)",
        )

    # 2. Missing dependencies
    packages: list[str] = []
    for d in errors:
        pkg = _missing_package(d)
        if pkg and pkg not in packages:
            packages.append(pkg)
    if packages:
        return Classification(
            category=ErrorCategory.MISSING_DEPENDENCY,
            strategy=RepairStrategy.ADD_DEPENDENCY,
            files=files,
            packages=packages,
            reason=f"missing package(s): {', '.join(packages)}",
        )

    # 3. Syntax error localised to one file
    if errors and len(files) == 1 and all(d.file in ("", files[0]) for d in errors):
        if any(_is_syntax_error(d) for d in errors):
            return Classification(
                category=ErrorCategory.SYNTAX,
                strategy=RepairStrategy.MODEL_SINGLE_FILE,
                files=files,
                reason=f"syntax error in {files[0]}",
            )

    # 4. Everything else
    return Classification(
        category=ErrorCategory.UNCLASSIFIED,
        strategy=RepairStrategy.MODEL_FULL_CONTEXT,
        files=files,
        reason=f"{len(errors)} unclassified error(s) across {len(files)} file(s)",
    )


__all__ = [
    "Classification",
    "classify",
    "package_name",
]
