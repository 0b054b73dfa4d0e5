"""Shared fixtures: a fake tool runner and a throwaway kernel source tree."""

import os
import threading
from collections.abc import Callable
from pathlib import Path

import pytest

from kernel_imagegen.builds.pipeline import Pipeline
from kernel_imagegen.config import (
    ProjectLayout,
    Settings,
    ToolchainConfig,
    resolve_layout,
    resolve_toolchain,
)
from kernel_imagegen.types import ToolInvocation, ToolResult

# Source files are dated here; the fake clock only moves forward from it.
T0 = 1_700_000_000 * 10**9
TICK = 10**9


def set_mtime(path: Path, ns: int) -> None:
    """Set both access and modification time of path (nanoseconds)."""
    os.utime(path, ns=(ns, ns))


class FakeToolRunner:
    """ToolRunner that records invocations instead of spawning processes.

    Successful invocations write their expected outputs, each stamped with
    the next tick of a fake clock so output mtimes strictly increase.
    """

    def __init__(self) -> None:
        self.invocations: list[ToolInvocation] = []
        self.hooks: dict[str, Callable[[ToolInvocation], None]] = {}
        self.skip_outputs: set[str] = set()
        self.terminated = False
        self._failures: list[tuple[str, int, str | None, bool]] = []
        self._clock = T0
        self._lock = threading.Lock()

    def tick(self) -> int:
        with self._lock:
            self._clock += TICK
            return self._clock

    def touch(self, path: Path) -> None:
        """Mark path as modified after everything built so far."""
        set_mtime(path, self.tick())

    def fail(
        self,
        stage: str,
        exit_code: int = 1,
        match: str | None = None,
        partial: bool = False,
    ) -> None:
        """Make invocations of stage (optionally matching argv) fail."""
        self._failures.append((stage, exit_code, match, partial))

    def clear(self) -> None:
        self.invocations.clear()
        self._failures.clear()
        self.skip_outputs.clear()
        self.hooks.clear()

    @property
    def stages(self) -> list[str]:
        return [i.stage for i in self.invocations]

    def run(self, invocation: ToolInvocation) -> ToolResult:
        with self._lock:
            self.invocations.append(invocation)

        hook = self.hooks.get(invocation.stage)
        if hook is not None:
            hook(invocation)

        argv = " ".join(invocation.argv)
        for stage, exit_code, match, partial in self._failures:
            if stage == invocation.stage and (match is None or match in argv):
                if partial:
                    self._write_outputs(invocation)
                return ToolResult(
                    invocation=invocation,
                    exit_code=exit_code,
                    stderr=f"{invocation.tool}: simulated failure",
                )

        if invocation.stage not in self.skip_outputs:
            self._write_outputs(invocation)
        return ToolResult(invocation=invocation, exit_code=0)

    def terminate_all(self) -> None:
        self.terminated = True

    def _write_outputs(self, invocation: ToolInvocation) -> None:
        for output in invocation.expected_outputs:
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(f"{invocation.stage}:{output.name}\n".encode() * 4)
            set_mtime(output, self.tick())


def write_source(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content)
    set_mtime(path, T0)
    return path


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """Create a minimal kernel tree with two entry-point units."""
    root = tmp_path / "os"
    write_source(root / "src" / "boot" / "a.asm", "global start\nstart:\n  hlt\n")
    write_source(root / "src" / "boot" / "b.asm", "global long_mode_start\n")
    write_source(root / "src" / "boot" / "linker.ld", "ENTRY(start)\n")
    write_source(
        root / "src" / "boot" / "grub.cfg",
        'menuentry "os" {\n  multiboot2 /boot/kernel.bin\n  boot\n}\n',
    )
    write_source(root / "src" / "lib.rs", "#![no_std]\n")
    write_source(root / "Cargo.toml", '[package]\nname = "os"\n')
    return root


@pytest.fixture
def settings(project: Path) -> Settings:
    return Settings(project_root=project, rust_target_path=project, jobs=2)


@pytest.fixture
def toolchain(settings: Settings) -> ToolchainConfig:
    return resolve_toolchain(settings)


@pytest.fixture
def layout(settings: Settings, toolchain: ToolchainConfig) -> ProjectLayout:
    return resolve_layout(settings, toolchain)


@pytest.fixture
def pipeline(
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
    fake_runner: FakeToolRunner,
) -> Pipeline:
    return Pipeline(toolchain, layout, runner=fake_runner, jobs=2)
