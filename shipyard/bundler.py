"""Build service — runs the external bundler against a file store snapshot.

The snapshot is serialised into a throwaway project directory.  When it
carries a ``package.json`` the install command runs there first, then the
bundler command, each as an asyncio subprocess sharing one timeout.
Cancelling the awaiting task kills the running subprocess; so does
exceeding the timeout.  Output is captured, truncated and parsed into
structured diagnostics.  On success every file in the output directory
becomes part of the ``BuildArtifact``.

No LLM involvement; this is a pure systems layer.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import tempfile
import time
from collections.abc import Mapping
from pathlib import Path

from shipyard.contracts import BuildArtifact, BuildResult, Diagnostic, Environment
from shipyard.diagnostics import fallback_diagnostic, parse_diagnostics

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

DEFAULT_BUILD_COMMAND = "npx vite build --mode {mode} --outDir {out_dir}"
DEFAULT_INSTALL_COMMAND = "npm install"
PACKAGE_MANIFEST = "package.json"
DEFAULT_TIMEOUT_S: float = 120.0
OUT_DIR = "dist"

MAX_STDOUT_BYTES: int = 50_000  # 50 KB
MAX_STDERR_BYTES: int = 10_000  # 10 KB

ENTRY_CANDIDATES: tuple[str, ...] = ("worker.js", "index.js")

# Env vars safe to propagate to the bundler (no secrets).
_SAFE_ENV_KEYS: tuple[str, ...] = (
    "PATH", "SYSTEMROOT", "TEMP", "TMP", "HOME", "USERPROFILE",
    "NODE_PATH", "NPM_CONFIG_CACHE",
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _build_env(extra: Mapping[str, str] | None = None) -> dict[str, str]:
    env: dict[str, str] = {}
    for key in _SAFE_ENV_KEYS:
        val = os.environ.get(key)
        if val:
            env[key] = val
    if extra:
        env.update(extra)
    return env


def _truncate(text: str, max_bytes: int) -> str:
    if len(text) <= max_bytes:
        return text
    return text[:max_bytes] + f"\n\n[... truncated at {max_bytes} bytes ...]"


def render_command(template: str, *, mode: Environment, out_dir: str) -> list[str]:
    """Split *template* into argv, then substitute ``{mode}``/``{out_dir}``.

    Splitting first keeps substituted paths with spaces as single args.
    """
    argv = shlex.split(template)
    if not argv:
        raise ValueError("build command is empty")
    return [arg.format(mode=mode.value, out_dir=out_dir) for arg in argv]


def write_tree(root: Path, files: Mapping[str, str]) -> None:
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


def collect_artifact(out_dir: Path, mode: Environment) -> BuildArtifact:
    """Read every file under *out_dir* into a ``BuildArtifact``."""
    files: dict[str, bytes] = {}
    if out_dir.is_dir():
        for path in sorted(out_dir.rglob("*")):
            if path.is_file():
                files[path.relative_to(out_dir).as_posix()] = path.read_bytes()
    return BuildArtifact(files=files, entry=pick_entry(list(files)), mode=mode)


def pick_entry(paths: list[str]) -> str:
    for candidate in ENTRY_CANDIDATES:
        if candidate in paths:
            return candidate
    scripts = sorted(p for p in paths if p.endswith(".js"))
    return scripts[0] if scripts else ""


async def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is None:
        try:
            proc.kill()
        except ProcessLookupError:
            pass
        await proc.wait()


# ---------------------------------------------------------------------------
# Bundler
# ---------------------------------------------------------------------------


class Bundler:
    """Runs the install and bundler commands for one snapshot at a time.

    Parameters
    ----------
    command:
        Command template; ``{mode}`` and ``{out_dir}`` are substituted.
    install_command:
        Dependency install run first when the snapshot has a
        ``package.json``.  Empty disables the step.
    timeout_s:
        Wall-clock limit for one build, install included.
    env:
        Extra environment variables merged over the safe base set.
    """

    def __init__(
        self,
        *,
        command: str = DEFAULT_BUILD_COMMAND,
        install_command: str = DEFAULT_INSTALL_COMMAND,
        timeout_s: float = DEFAULT_TIMEOUT_S,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.command = command
        self.install_command = install_command
        self.timeout_s = timeout_s
        self.env = dict(env or {})

    async def build(self, files: Mapping[str, str], mode: Environment) -> BuildResult:
        """Build *files* in *mode* and return a ``BuildResult``.

        Never raises for install or bundler failures; those come back as
        diagnostics.  ``asyncio.CancelledError`` propagates after the
        running process is killed.
        """
        start = time.perf_counter()
        deadline = start + self.timeout_s
        steps = [("bundler", self.command)]
        if self.install_command.strip() and PACKAGE_MANIFEST in files:
            steps.insert(0, ("dependency install", self.install_command))

        with tempfile.TemporaryDirectory(prefix="shipyard-build-") as tmp:
            root = Path(tmp)
            write_tree(root, files)
            out_dir = root / OUT_DIR
            output = ""

            for step, template in steps:
                argv = render_command(template, mode=mode, out_dir=str(out_dir))
                logger.info("[build] %s: %s (%d files, mode=%s)", step, argv[0], len(files), mode.value)
                try:
                    returncode, step_output = await self._execute(
                        argv, root, deadline - time.perf_counter(),
                    )
                except OSError as exc:
                    return self._failed(
                        [Diagnostic(message=f"could not start {step}: {exc}")],
                        raw_output="\n".join(part for part in (output, str(exc)) if part),
                        start=start,
                    )
                output = "\n".join(part for part in (output, step_output) if part)

                if returncode is None:
                    logger.warning("[build] %s timed out after %.0fs", step, self.timeout_s)
                    return self._failed(
                        [Diagnostic(message=f"build timed out after {self.timeout_s:g}s during {step}")],
                        raw_output=output,
                        start=start,
                        timed_out=True,
                    )
                if returncode != 0:
                    diagnostics = parse_diagnostics(step_output)
                    if not any(d.severity == "error" for d in diagnostics):
                        diagnostics.append(fallback_diagnostic(
                            step_output, reason=f"{step} exited with code {returncode}",
                        ))
                    return self._failed(diagnostics, raw_output=output, start=start)

            artifact = collect_artifact(out_dir, mode)
            if not artifact.files:
                return self._failed(
                    [fallback_diagnostic(output, reason="build produced no output files")],
                    raw_output=output,
                    start=start,
                )

        elapsed = int((time.perf_counter() - start) * 1000)
        logger.info(
            "[build] ok: %d file(s), %d bytes, entry=%s (%dms)",
            len(artifact.files), artifact.size_bytes, artifact.entry or "-", elapsed,
        )
        return BuildResult(
            success=True,
            artifact=artifact,
            diagnostics=parse_diagnostics(output),
            raw_output=output,
            duration_ms=elapsed,
        )

    async def _execute(
        self, argv: list[str], cwd: Path, timeout_s: float,
    ) -> tuple[int | None, str]:
        """Run *argv* in *cwd*.  Returns ``(returncode, output)``.

        ``returncode`` is ``None`` when *timeout_s* ran out and the process
        was killed.  ``OSError`` propagates when it cannot be started.
        """
        proc = await asyncio.create_subprocess_exec(
            *argv,
            cwd=str(cwd),
            env=_build_env(self.env),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            raw_out, raw_err = await asyncio.wait_for(
                proc.communicate(), timeout=max(timeout_s, 0.0),
            )
        except asyncio.TimeoutError:
            await _kill(proc)
            return None, ""
        except asyncio.CancelledError:
            await _kill(proc)
            raise

        stdout = _truncate(raw_out.decode("utf-8", errors="replace"), MAX_STDOUT_BYTES)
        stderr = _truncate(raw_err.decode("utf-8", errors="replace"), MAX_STDERR_BYTES)
        return proc.returncode, "\n".join(part for part in (stdout, stderr) if part)

    @staticmethod
    def _failed(
        diagnostics: list[Diagnostic],
        *,
        raw_output: str,
        start: float,
        timed_out: bool = False,
    ) -> BuildResult:
        elapsed = int((time.perf_counter() - start) * 1000)
        errors = sum(1 for d in diagnostics if d.severity == "error")
        logger.info("[build] failed: %d error(s) (%dms)", errors, elapsed)
        return BuildResult(
            success=False,
            diagnostics=diagnostics,
            raw_output=raw_output,
            duration_ms=elapsed,
            timed_out=timed_out,
        )


__all__ = [
    "DEFAULT_BUILD_COMMAND",
    "DEFAULT_INSTALL_COMMAND",
    "Bundler",
    "collect_artifact",
    "pick_entry",
    "render_command",
]
