"""Reset: delete every derived artifact.

Removes declared outputs, leftover staging trees, the build log directory
and the manifest, then prunes directories left empty under the output root.
Running it when nothing exists is a no-op.
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from kernel_imagegen.builds.graph import TargetGraph
from kernel_imagegen.builds.image import find_staging_leftovers
from kernel_imagegen.builds.library import clean_invocation
from kernel_imagegen.builds.runner import ToolRunner, run_checked
from kernel_imagegen.config import ProjectLayout, ToolchainConfig

logger = logging.getLogger(__name__)


def _prune_empty_dirs(root: Path) -> None:
    if not root.is_dir():
        return
    # Deepest first so parents become empty before they are checked
    for directory in sorted(
        (p for p in root.rglob("*") if p.is_dir()),
        key=lambda p: len(p.parts),
        reverse=True,
    ):
        if not any(directory.iterdir()):
            directory.rmdir()
    if not any(root.iterdir()):
        root.rmdir()


def reset(
    graph: TargetGraph,
    layout: ProjectLayout,
    runner: ToolRunner | None = None,
    toolchain: ToolchainConfig | None = None,
    deep: bool = False,
) -> list[Path]:
    """Delete all derived artifacts.

    Args:
        graph: Target graph whose outputs are removed.
        layout: Project layout.
        runner: Tool runner, required when deep is set.
        toolchain: Resolved toolchain, required when deep is set.
        deep: Also ask the cross toolchain to drop its own build cache.

    Returns:
        Paths that were removed.

    Raises:
        ValueError: If deep is set without a runner and toolchain.
        ToolInvocationError: If the deep clean tool fails.
    """
    if deep and (runner is None or toolchain is None):
        raise ValueError("deep reset requires a runner and a toolchain")

    removed: list[Path] = []
    for target in graph:
        if target.output.is_file() or target.output.is_symlink():
            target.output.unlink()
            removed.append(target.output)

    if layout.manifest_path.is_file():
        layout.manifest_path.unlink()
        removed.append(layout.manifest_path)

    for directory in [*find_staging_leftovers(layout), layout.log_dir]:
        if directory.is_dir():
            shutil.rmtree(directory)
            removed.append(directory)

    if deep:
        assert runner is not None and toolchain is not None
        run_checked(runner, clean_invocation(toolchain, layout))

    _prune_empty_dirs(layout.output_dir)

    for path in removed:
        logger.debug("Removed %s", path)
    logger.info("Removed %d artifact(s)", len(removed))
    return removed


__all__ = ["reset"]
