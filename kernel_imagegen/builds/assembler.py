"""Assembler stage.

This module handles:
- Discovering entry-point assembly units under the source root
- Mapping each unit to a relocatable object mirroring its relative path
- Composing and running the assembler for one unit

Each unit is an independent object target; the scheduler may build them
concurrently.
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

STAGE = "assemble"
OBJECT_SUFFIX = ".o"


def discover_sources(source_dir: Path, suffix: str) -> list[Path]:
    """Find entry-point units under source_dir, sorted for stable ordering.

    Args:
        source_dir: Root directory to search recursively.
        suffix: File suffix of entry-point units (e.g. '.asm').

    Returns:
        Sorted list of source paths; empty if source_dir does not exist.
    """
    if not source_dir.is_dir():
        logger.warning("Source directory does not exist: %s", source_dir)
        return []
    return sorted(p for p in source_dir.rglob(f"*{suffix}") if p.is_file())


def object_path_for(source: Path, source_dir: Path, objects_dir: Path) -> Path:
    """Return the object path mirroring source's location under objects_dir."""
    return (objects_dir / source.relative_to(source_dir)).with_suffix(OBJECT_SUFFIX)


def assemble_invocation(
    toolchain: ToolchainConfig,
    source: Path,
    obj: Path,
) -> ToolInvocation:
    """Compose the assembler call for one unit.

    Args:
        toolchain: Resolved toolchain.
        source: Entry-point unit.
        obj: Output object path.

    Returns:
        ToolInvocation producing obj.
    """
    return ToolInvocation(
        tool=toolchain.assembler,
        args=["-f", toolchain.assembler_format, str(source), "-o", str(obj)],
        stage=STAGE,
        expected_outputs=(obj,),
    )


def assemble(
    runner: ToolRunner,
    toolchain: ToolchainConfig,
    source: Path,
    obj: Path,
) -> ToolResult:
    """Assemble one unit, creating the object's parent directories."""
    obj.parent.mkdir(parents=True, exist_ok=True)
    return run_checked(runner, assemble_invocation(toolchain, source, obj))


def declare_object_targets(
    graph: TargetGraph,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
) -> list[BuildTarget]:
    """Declare one concurrent object target per discovered unit."""
    targets: list[BuildTarget] = []
    for source in discover_sources(layout.source_dir, layout.entry_suffix):
        obj = object_path_for(source, layout.source_dir, layout.objects_dir)
        target = BuildTarget(
            name=obj.relative_to(layout.output_dir).as_posix(),
            kind=TargetKind.OBJECT,
            output=obj,
            inputs=(source,),
            recipe=partial(assemble, toolchain=toolchain, source=source, obj=obj),
            concurrent=True,
        )
        targets.append(graph.add(target))
    logger.debug("Declared %d object target(s)", len(targets))
    return targets


__all__ = [
    "OBJECT_SUFFIX",
    "assemble",
    "assemble_invocation",
    "declare_object_targets",
    "discover_sources",
    "object_path_for",
]
