"""Library build stage.

The freestanding library is built by an external cross toolchain (cargo)
whose own build graph is opaque here. The pipeline treats it as one target
with one output: the static archive under the per-triple subtree.
"""

from __future__ import annotations

import logging
from functools import partial
from pathlib import Path

from kernel_imagegen.builds.graph import BuildTarget, TargetGraph
from kernel_imagegen.builds.runner import ToolRunner, run_checked
from kernel_imagegen.config import ProjectLayout, ToolchainConfig
from kernel_imagegen.types import TargetKind, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

STAGE = "library"
TARGET_PATH_VAR = "RUST_TARGET_PATH"


def library_inputs(toolchain: ToolchainConfig, layout: ProjectLayout) -> tuple[Path, ...]:
    """Collect the files the library depends on.

    Expands the configured globs relative to the project root and adds the
    custom target specification (<triple>.json) when it exists.

    Args:
        toolchain: Resolved toolchain.
        layout: Project layout.

    Returns:
        Sorted, de-duplicated tuple of existing input paths.
    """
    found: set[Path] = set()
    for pattern in layout.library_sources:
        found.update(p for p in layout.project_root.glob(pattern) if p.is_file())

    target_spec = toolchain.rust_target_path / f"{toolchain.target_triple}.json"
    if target_spec.is_file():
        found.add(target_spec)

    # Outputs must never count as inputs
    return tuple(
        sorted(p for p in found if not p.is_relative_to(layout.output_dir))
    )


def library_invocation(toolchain: ToolchainConfig, layout: ProjectLayout) -> ToolInvocation:
    """Compose the cross toolchain call producing the static archive."""
    args = [toolchain.cargo_subcommand, "--target", toolchain.target_triple]
    if toolchain.release:
        args.append("--release")
    return ToolInvocation(
        tool=toolchain.cargo,
        args=args,
        stage=STAGE,
        expected_outputs=(layout.archive_path,),
        cwd=layout.project_root,
        env={TARGET_PATH_VAR: str(toolchain.rust_target_path)},
    )


def clean_invocation(toolchain: ToolchainConfig, layout: ProjectLayout) -> ToolInvocation:
    """Compose the cross toolchain call that drops its own build cache."""
    return ToolInvocation(
        tool=toolchain.cargo,
        args=["clean"],
        stage="clean",
        cwd=layout.project_root,
        env={TARGET_PATH_VAR: str(toolchain.rust_target_path)},
    )


def build_library(
    runner: ToolRunner,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
) -> ToolResult:
    """Run the cross toolchain."""
    return run_checked(runner, library_invocation(toolchain, layout))


def declare_library_target(
    graph: TargetGraph,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
) -> BuildTarget:
    """Declare the static archive target."""
    inputs = library_inputs(toolchain, layout)
    if not inputs:
        logger.warning(
            "No library sources matched %s under %s",
            ", ".join(layout.library_sources),
            layout.project_root,
        )
    return graph.add(
        BuildTarget(
            name="archive",
            kind=TargetKind.ARCHIVE,
            output=layout.archive_path,
            inputs=inputs,
            recipe=partial(build_library, toolchain=toolchain, layout=layout),
        )
    )


__all__ = [
    "TARGET_PATH_VAR",
    "build_library",
    "clean_invocation",
    "declare_library_target",
    "library_inputs",
    "library_invocation",
]
