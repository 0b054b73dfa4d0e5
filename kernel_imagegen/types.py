"""Shared type definitions for kernel_imagegen.

This module contains dataclasses, enums, and type aliases shared across
subpackages to avoid circular imports.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path


class BuildStatus(str, Enum):
    """Status of a build target within one pipeline run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class TargetKind(str, Enum):
    """Kind of artifact a build target produces."""

    OBJECT = "object"
    ARCHIVE = "archive"
    BINARY = "binary"
    IMAGE = "image"


@dataclass
class ToolInvocation:
    """A single external tool call.

    Attributes:
        tool: Executable name or path.
        args: Arguments passed after the executable.
        stage: Name of the pipeline stage issuing the call.
        expected_outputs: Paths the tool must produce on success.
        cwd: Working directory (None = current directory).
        env: Extra environment variables for this call only.
        capture: Capture stdout/stderr; False inherits the terminal.
    """

    tool: str
    args: list[str]
    stage: str
    expected_outputs: tuple[Path, ...] = ()
    cwd: Path | None = None
    env: dict[str, str] = field(default_factory=dict)
    capture: bool = True

    @property
    def argv(self) -> list[str]:
        """Full command line."""
        return [self.tool, *self.args]


@dataclass
class ToolResult:
    """Structured result of an external tool call."""

    invocation: ToolInvocation
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    started_at: datetime | None = None
    finished_at: datetime | None = None
    log_path: Path | None = None

    @property
    def success(self) -> bool:
        """True when the tool exited with status 0."""
        return self.exit_code == 0

    @property
    def missing_outputs(self) -> list[Path]:
        """Expected outputs that do not exist on disk."""
        return [p for p in self.invocation.expected_outputs if not p.exists()]

    @property
    def diagnostics(self) -> str:
        """Captured stderr, falling back to stdout."""
        return (self.stderr or self.stdout).strip()


@dataclass
class ArtifactInfo:
    """Information about a produced artifact."""

    path: str
    kind: str
    size_bytes: int
    modified_at: str
    sha256: str
    target: str | None = None


__all__ = [
    "ArtifactInfo",
    "BuildStatus",
    "TargetKind",
    "ToolInvocation",
    "ToolResult",
]
