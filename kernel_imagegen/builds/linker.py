"""Link stage.

Combines the relocatable objects and the static archive into one flat
binary under the placement script. Input order is significant: objects
come before the archive so the boot entry symbol resolves and lands at the
script's entry address.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from functools import partial
from pathlib import Path

from kernel_imagegen.builds.graph import BuildTarget, MissingInputError, TargetGraph
from kernel_imagegen.builds.runner import ToolRunner, run_checked
from kernel_imagegen.config import ProjectLayout, ToolchainConfig
from kernel_imagegen.types import TargetKind, ToolInvocation, ToolResult

logger = logging.getLogger(__name__)

STAGE = "link"

# -n: no page alignment of sections, matching a flat multiboot layout
LINK_FLAGS = ("-n", "--gc-sections", "--strip-debug")


def compose_link_args(
    linker_script: Path,
    binary: Path,
    objects: Sequence[Path],
    archive: Path,
) -> list[str]:
    """Compose linker arguments.

    Args:
        linker_script: Placement script.
        binary: Output binary.
        objects: Relocatable objects, in link order.
        archive: Static archive; always placed after the objects.

    Returns:
        Argument list (without the linker executable).
    """
    return [
        *LINK_FLAGS,
        "-T",
        str(linker_script),
        "-o",
        str(binary),
        *(str(o) for o in objects),
        str(archive),
    ]


def link_invocation(
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
    objects: Sequence[Path],
) -> ToolInvocation:
    """Compose the linker call producing the flat binary.

    Args:
        toolchain: Resolved toolchain.
        layout: Project layout.
        objects: Relocatable objects, in link order.

    Returns:
        ToolInvocation producing the binary.
    """
    return ToolInvocation(
        tool=toolchain.linker,
        args=compose_link_args(
            layout.linker_script, layout.binary_path, objects, layout.archive_path
        ),
        stage=STAGE,
        expected_outputs=(layout.binary_path,),
    )


def link(
    runner: ToolRunner,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
    objects: Sequence[Path],
) -> ToolResult:
    """Link the flat binary.

    Raises:
        MissingInputError: If there are no objects or any input is absent.
        ToolInvocationError: If the linker fails (e.g. unresolved symbols).
    """
    if not objects:
        raise MissingInputError(
            "binary",
            [layout.source_dir],
            message=f"No entry-point units found under {layout.source_dir}",
        )
    required = [*objects, layout.archive_path, layout.linker_script]
    missing = [p for p in required if not p.exists()]
    if missing:
        raise MissingInputError("binary", missing)

    layout.binary_path.parent.mkdir(parents=True, exist_ok=True)
    return run_checked(runner, link_invocation(toolchain, layout, objects))


def declare_binary_target(
    graph: TargetGraph,
    toolchain: ToolchainConfig,
    layout: ProjectLayout,
    objects: Sequence[BuildTarget],
    archive: BuildTarget,
) -> BuildTarget:
    """Declare the flat binary target."""
    object_paths = [t.output for t in objects]
    return graph.add(
        BuildTarget(
            name="binary",
            kind=TargetKind.BINARY,
            output=layout.binary_path,
            inputs=(*object_paths, archive.output, layout.linker_script),
            recipe=partial(
                link, toolchain=toolchain, layout=layout, objects=object_paths
            ),
        )
    )


__all__ = [
    "LINK_FLAGS",
    "compose_link_args",
    "declare_binary_target",
    "link",
    "link_invocation",
]
