"""Reviewer process execution.

Each call spawns one external reviewer process, writes the prompt to its
stdin, closes it, and collects output until the process exits or the
deadline expires. Structured output is recovered with best-effort JSON
extraction; output that contains no JSON object is returned as raw text
and callers treat it as zero usable suggestions.

Live processes are registered per run id in a ProcessRegistry so that
cancelling a run can terminate whatever that run is waiting on.
"""

import asyncio
import os
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from ..core.exceptions import (
    ExecutableNotFoundError,
    ProcessError,
    ProcessTimeoutError,
)
from ..core.json_extract import extract_json

# Seconds between SIGTERM and SIGKILL
KILL_GRACE_SECONDS = 5.0


@dataclass
class ExecutionResult:
    """Output of one reviewer invocation.

    Attributes:
        data: Parsed JSON object, or None when the output was unparsed
        raw: Raw stdout text
        duration_seconds: Wall-clock time of the invocation
    """

    data: dict[str, Any] | None
    raw: str
    duration_seconds: float = 0.0

    @property
    def parsed(self) -> bool:
        return self.data is not None


class ProcessRegistry:
    """Tracks live reviewer processes per analysis run."""

    def __init__(self) -> None:
        self._processes: dict[str, set[asyncio.subprocess.Process]] = {}

    def register(self, run_id: str, process: asyncio.subprocess.Process) -> None:
        self._processes.setdefault(run_id, set()).add(process)

    def unregister(self, run_id: str, process: asyncio.subprocess.Process) -> None:
        processes = self._processes.get(run_id)
        if processes is None:
            return
        processes.discard(process)
        if not processes:
            del self._processes[run_id]

    def kill(self, run_id: str) -> int:
        """Terminate every live process of ``run_id``.

        Sends SIGTERM immediately and SIGKILL after a grace period to any
        process still alive.

        Returns:
            Number of processes signalled
        """
        processes = list(self._processes.pop(run_id, ()))
        killed = 0
        for process in processes:
            if process.returncode is not None:
                continue
            try:
                process.terminate()
                killed += 1
            except ProcessLookupError:
                continue
            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                continue
            loop.call_later(KILL_GRACE_SECONDS, _force_kill, process)
        return killed


def _force_kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        try:
            process.kill()
        except ProcessLookupError:
            pass


class ProcessExecutor:
    """Runs the external reviewer command.

    Commands containing a space (e.g. ``"devx claude"``) are run through
    the shell; single-word commands are executed directly.

    Example:
        >>> executor = ProcessExecutor("claude", prompt_args=["-p"])
        >>> result = await executor.execute(prompt, cwd=worktree, timeout=600)
        >>> if result.parsed:
        ...     print(result.data["suggestions"])
    """

    def __init__(
        self,
        command: str = "claude",
        prompt_args: list[str] | None = None,
        extra_args: list[str] | None = None,
        extra_path: list[str] | None = None,
        registry: ProcessRegistry | None = None,
    ) -> None:
        self.command = command.strip()
        self.prompt_args = ["-p"] if prompt_args is None else list(prompt_args)
        self.extra_args = list(extra_args or [])
        self.extra_path = list(extra_path or [])
        self.registry = registry or ProcessRegistry()
        self.use_shell = " " in self.command

    def _build_env(self) -> dict[str, str]:
        env = dict(os.environ)
        if self.extra_path:
            parts = [env.get("PATH", ""), *self.extra_path]
            env["PATH"] = os.pathsep.join(p for p in parts if p)
        return env

    async def _spawn(self, cwd: Path) -> asyncio.subprocess.Process:
        args = [*self.prompt_args, *self.extra_args]
        pipes = {
            "stdin": asyncio.subprocess.PIPE,
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "cwd": str(cwd),
            "env": self._build_env(),
        }
        try:
            if self.use_shell:
                command_line = " ".join([self.command, *map(shlex.quote, args)])
                return await asyncio.create_subprocess_shell(command_line, **pipes)
            return await asyncio.create_subprocess_exec(self.command, *args, **pipes)
        except FileNotFoundError as e:
            raise ExecutableNotFoundError(
                f"Reviewer command not found: {self.command!r}. "
                "Install it or set PAIR_REVIEW_CLAUDE_CMD."
            ) from e

    async def execute(
        self,
        prompt: str,
        cwd: Path,
        timeout: float,
        run_id: str | None = None,
        label: str = "reviewer",
    ) -> ExecutionResult:
        """Run the reviewer once with ``prompt`` on stdin.

        Args:
            prompt: Prompt text written to the process's stdin
            cwd: Working directory (the checked-out change)
            timeout: Deadline in seconds for this invocation
            run_id: Owning run, used to register the process for cancellation
            label: Label for log messages

        Returns:
            ExecutionResult with parsed JSON or raw text

        Raises:
            ProcessTimeoutError: Deadline expired; the process was killed
            ProcessError: Non-zero exit status
            ExecutableNotFoundError: Command could not be started
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        logger.info(f"[{label}] Starting reviewer process (timeout {timeout:g}s)")

        process = await self._spawn(cwd)
        if run_id is not None:
            self.registry.register(run_id, process)

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(
                process.communicate(prompt.encode("utf-8")), timeout=timeout
            )
        except asyncio.TimeoutError:
            await self._terminate(process)
            logger.warning(f"[{label}] Reviewer process timed out after {timeout:g}s")
            raise ProcessTimeoutError(timeout, {"label": label, "run_id": run_id})
        except asyncio.CancelledError:
            await self._terminate(process)
            raise
        finally:
            if run_id is not None:
                self.registry.unregister(run_id, process)

        duration = loop.time() - started
        stdout = stdout_bytes.decode("utf-8", errors="replace")
        stderr = stderr_bytes.decode("utf-8", errors="replace")

        if process.returncode != 0:
            logger.error(f"[{label}] Reviewer exited with code {process.returncode}")
            raise ProcessError(
                process.returncode, stderr, {"label": label, "run_id": run_id}
            )

        data = extract_json(stdout, label=label)
        if data is None:
            logger.warning(
                f"[{label}] Reviewer output was not JSON "
                f"({len(stdout)} chars); treating as zero suggestions"
            )
        else:
            logger.info(f"[{label}] Reviewer finished in {duration:.1f}s")

        return ExecutionResult(data=data, raw=stdout, duration_seconds=duration)

    async def _terminate(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_GRACE_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Reviewer process {process.pid} did not exit after kill")

    async def check_available(self, cwd: Path | None = None, timeout: float = 30.0) -> bool:
        """Probe the reviewer command with a trivial prompt."""
        try:
            result = await self.execute(
                'Respond with just: {"status": "ok"}',
                cwd=cwd or Path.cwd(),
                timeout=timeout,
                label="availability",
            )
        except (ExecutableNotFoundError, ProcessError, ProcessTimeoutError) as e:
            logger.warning(f"Reviewer not available: {e}")
            return False
        if result.data is not None:
            return result.data.get("status") == "ok"
        return "ok" in result.raw
