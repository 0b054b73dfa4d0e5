"""Image assembler.

This module handles:
- Creating a temporary staging tree under the output root
- Staging the kernel binary and boot-loader configuration into it
- Running the mastering tool against the staged tree
- Removing the staging tree on every exit path

Staged layout:
    boot/kernel.bin
    boot/grub/grub.cfg
"""

from __future__ import annotations

import logging
import shutil
import tempfile
from collections.abc import Iterator
from contextlib import contextmanager
from functools import partial
from pathlib import Path

from kernel_imagegen.builds.graph import BuildTarget, MissingInputError, TargetGraph
from kernel_imagegen.builds.runner import ToolRunner, run_checked
from kernel_imagegen.config import ProjectLayout, ToolchainConfig
from kernel_imagegen.types import TargetKind, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

STAGE = "image"
STAGED_KERNEL = Path("boot") / "kernel.bin"
STAGED_BOOT_CONFIG = Path("boot") / "grub" / "grub.cfg"


class StagingError(Exception):
    """Raised when the staging tree cannot be assembled."""

    def __init__(self, message: str, code: str = "staging_error") -> None:
        super().__init__(message)
        self.code = code


@contextmanager
def staging_tree(parent: Path, prefix: str) -> Iterator[Path]:
    """Create a staging directory that is removed on exit.

    Args:
        parent: Directory to create the staging tree in.
        prefix: Name prefix, used by reset to find leftovers.

    Yields:
        Path to the empty staging directory.
    """
    parent.mkdir(parents=True, exist_ok=True)
    staging = Path(tempfile.mkdtemp(prefix=prefix, dir=parent))
    logger.debug("Created staging tree %s", staging)
    try:
        yield staging
    finally:
        shutil.rmtree(staging, ignore_errors=True)
        logger.debug("Removed staging tree %s", staging)


def stage_boot_tree(staging: Path, binary: Path, boot_config: Path) -> Path:
    """Copy the binary and boot configuration into the staging layout.

    Raises:
        StagingError: If copying fails.
    """
    for source, rel in ((binary, STAGED_KERNEL), (boot_config, STAGED_BOOT_CONFIG)):
        dest = staging / rel
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(source, dest)
        except OSError as e:
            raise StagingError(f"Failed to stage {source} -> {dest}: {e}") from e
    return staging


def mkrescue_invocation(
    toolchain: ToolchainConfig,
    image: Path,
    staging: Path,
) -> ToolInvocation:
    """Compose the mastering tool call for a staged tree.

    Args:
        toolchain: Resolved toolchain.
        image: Output image path.
        staging: Populated staging tree.

    Returns:
        ToolInvocation producing image.
    """
    return ToolInvocation(
        tool=toolchain.mkrescue,
        args=["-o", str(image), str(staging)],
        stage=STAGE,
        expected_outputs=(image,),
    )


def build_image(
    runner: ToolRunner,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
) -> ToolResult:
    """Stage the boot tree and master the bootable image.

    Args:
        runner: Tool runner.
        toolchain: Resolved toolchain.
        layout: Project layout.

    Returns:
        ToolResult of the mastering tool.

    Raises:
        MissingInputError: If the binary or boot configuration is absent;
            raised before any staging tree exists.
        StagingError: If staging fails.
        ToolInvocationError: If the mastering tool fails.
    """
    missing = [p for p in (layout.binary_path, layout.boot_config) if not p.exists()]
    if missing:
        raise MissingInputError("image", missing)

    with staging_tree(layout.output_dir, layout.staging_prefix) as staging:
        stage_boot_tree(staging, layout.binary_path, layout.boot_config)
        layout.image_path.parent.mkdir(parents=True, exist_ok=True)
        return run_checked(runner, mkrescue_invocation(toolchain, layout.image_path, staging))


def find_staging_leftovers(layout: ProjectLayout) -> list[Path]:
    """Staging trees left behind under the output root."""
    if not layout.output_dir.is_dir():
        return []
    return sorted(
        p for p in layout.output_dir.glob(f"{layout.staging_prefix}*") if p.is_dir()
    )


def declare_image_target(
    graph: TargetGraph,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
    binary: BuildTarget,
) -> BuildTarget:
    """Declare the bootable image target."""
    return graph.add(
        BuildTarget(
            name="image",
            kind=TargetKind.IMAGE,
            output=layout.image_path,
            inputs=(binary.output, layout.boot_config),
            recipe=partial(build_image, toolchain=toolchain, layout=layout),
        )
    )


__all__ = [
    "STAGED_BOOT_CONFIG",
    "STAGED_KERNEL",
    "StagingError",
    "build_image",
    "declare_image_target",
    "find_staging_leftovers",
    "mkrescue_invocation",
    "stage_boot_tree",
    "staging_tree",
]
