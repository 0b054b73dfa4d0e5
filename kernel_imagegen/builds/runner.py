"""Tool runner for executing external build tools.

This module handles:
- Locating tool executables
- Executing tools with subprocess, one child process per invocation
- Capturing stdout/stderr and appending them to the build log
- Terminating in-flight child processes on interrupt

Stages never spawn processes directly; they hand a ToolInvocation to a
ToolRunner so tests can substitute a fake runner.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from kernel_imagegen.types import ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

# Exit status reported when a tool cannot be located (matches the shell)
TOOL_NOT_FOUND_EXIT = 127


def exit_status(returncode: int) -> int:
    """Map a child's return code to a shell exit status.

    A negative return code means the child was killed by that signal; the
    shell reports it as 128 + signal number.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


class ToolInvocationError(Exception):
    """Raised when an external tool fails or cannot be run."""

    def __init__(
        self,
        message: str,
        stage: str,
        tool: str,
        exit_code: int | None = None,
        diagnostics: str = "",
        log_path: Path | None = None,
        code: str = "tool_failed",
    ) -> None:
        super().__init__(message)
        self.stage = stage
        self.tool = tool
        self.exit_code = exit_code
        self.diagnostics = diagnostics
        self.log_path = log_path
        self.code = code


class ToolRunner(Protocol):
    """Capability to run an external tool."""

    def run(self, invocation: ToolInvocation) -> ToolResult:
        """Run invocation to completion and return its result."""
        ...

    def terminate_all(self) -> None:
        """Stop every child process still running."""
        ...


class SubprocessToolRunner:
    """ToolRunner backed by real child processes.

    Args:
        log_dir: Directory for build.log (None = no log file).
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL.
    """

    def __init__(
        self,
        log_dir: Path | None = None,
        terminate_timeout: float = 5.0,
    ) -> None:
        self.log_dir = log_dir
        self.terminate_timeout = terminate_timeout
        self._processes: set[subprocess.Popen[str]] = set()
        self._lock = threading.Lock()
        self._log_lock = threading.Lock()

    @property
    def log_path(self) -> Path | None:
        """Path of the shared build log."""
        return self.log_dir / "build.log" if self.log_dir else None

    def run(self, invocation: ToolInvocation) -> ToolResult:
        """Execute an invocation.

        Args:
            invocation: Tool call to execute.

        Returns:
            ToolResult; a nonzero exit code is reported, not raised.

        Raises:
            ToolInvocationError: If the tool is not found or fails to start.
        """
        executable = shutil.which(invocation.tool)
        if executable is None:
            raise ToolInvocationError(
                f"{invocation.stage}: tool not found: {invocation.tool}",
                stage=invocation.stage,
                tool=invocation.tool,
                exit_code=TOOL_NOT_FOUND_EXIT,
                code="tool_not_found",
            )

        cmd_str = shlex.join(invocation.argv)
        logger.info("[%s] %s", invocation.stage, cmd_str)
        if invocation.cwd:
            logger.debug("Working directory: %s", invocation.cwd)

        env: dict[str, str] | None = None
        if invocation.env:
            env = dict(os.environ)
            env.update(invocation.env)

        pipe = subprocess.PIPE if invocation.capture else None
        started_at = datetime.now(timezone.utc)
        try:
            proc = subprocess.Popen(
                [executable, *invocation.args],
                cwd=invocation.cwd,
                env=env,
                stdout=pipe,
                stderr=pipe,
                text=True,
            )
        except OSError as e:
            raise ToolInvocationError(
                f"{invocation.stage}: failed to execute {invocation.tool}: {e}",
                stage=invocation.stage,
                tool=invocation.tool,
                code="execution_error",
            ) from e

        with self._lock:
            self._processes.add(proc)
        try:
            stdout, stderr = proc.communicate()
        except BaseException:
            # Interrupted while waiting; the child must not outlive us
            self._stop(proc)
            raise
        finally:
            with self._lock:
                self._processes.discard(proc)

        result = ToolResult(
            invocation=invocation,
            exit_code=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            log_path=self.log_path,
        )
        self._write_log(cmd_str, result)

        if not result.success:
            logger.error(
                "[%s] %s exited with status %d",
                invocation.stage,
                invocation.tool,
                result.exit_code,
            )
        return result

    def terminate_all(self) -> None:
        """Terminate every running child, killing those that ignore SIGTERM."""
        with self._lock:
            processes = list(self._processes)
        for proc in processes:
            if proc.poll() is None:
                logger.warning("Terminating %s (pid %d)", proc.args[0], proc.pid)
                proc.terminate()
        for proc in processes:
            try:
                proc.wait(timeout=self.terminate_timeout)
            except subprocess.TimeoutExpired:
                proc.kill()
                proc.wait()

    def _stop(self, proc: subprocess.Popen[str]) -> None:
        """Terminate one child, killing it if it ignores SIGTERM."""
        if proc.poll() is not None:
            return
        logger.warning("Terminating %s (pid %d)", proc.args[0], proc.pid)
        proc.terminate()
        try:
            proc.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            proc.kill()
            proc.wait()

    def _write_log(self, cmd_str: str, result: ToolResult) -> None:
        """Append one invocation block to the build log."""
        if self.log_path is None:
            return
        assert result.started_at is not None and result.finished_at is not None
        duration = (result.finished_at - result.started_at).total_seconds()
        cwd = result.invocation.cwd or Path.cwd()
        with self._log_lock:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            with self.log_path.open("a") as log_file:
                log_file.write(f"# Stage: {result.invocation.stage}\n")
                log_file.write(f"# Command: {cmd_str}\n")
                log_file.write(f"# Started: {result.started_at.isoformat()}\n")
                log_file.write(f"# CWD: {cwd}\n")
                log_file.write("# " + "=" * 70 + "\n")
                if result.stdout:
                    log_file.write(result.stdout.rstrip("\n") + "\n")
                if result.stderr:
                    log_file.write(result.stderr.rstrip("\n") + "\n")
                log_file.write(f"# Finished: {result.finished_at.isoformat()}\n")
                log_file.write(f"# Exit code: {result.exit_code}\n")
                log_file.write(f"# Duration: {duration:.1f}s\n\n")


def run_checked(runner: ToolRunner, invocation: ToolInvocation) -> ToolResult:
    """Run an invocation and raise if the tool exits nonzero.

    Args:
        runner: Tool runner.
        invocation: Tool call to execute.

    Returns:
        Successful ToolResult.

    Raises:
        ToolInvocationError: If the tool exits nonzero.
    """
    result = runner.run(invocation)
    if not result.success:
        message = (
            f"{invocation.stage}: {invocation.tool} failed "
            f"with exit code {result.exit_code}"
        )
        if result.diagnostics:
            message = f"{message}\n{result.diagnostics}"
        raise ToolInvocationError(
            message,
            stage=invocation.stage,
            tool=invocation.tool,
            exit_code=result.exit_code,
            diagnostics=result.diagnostics,
            log_path=result.log_path,
        )
    return result


__all__ = [
    "TOOL_NOT_FOUND_EXIT",
    "SubprocessToolRunner",
    "ToolInvocationError",
    "ToolRunner",
    "exit_status",
    "run_checked",
]
