"""Build pipeline.

This module provides the high-level build API:
- declare_graph(): declare every target from toolchain and layout
- Pipeline.plan(): resolve what is stale for a target
- Pipeline.build(): execute the plan and record a manifest
- Pipeline.run(): bring the image up to date and boot it
- Pipeline.clean(): delete every derived artifact

Targets are declared once per invocation from static configuration and the
entry-point units discovered at construction time. Only one pipeline may
run against a given output root at a time; no locking is attempted.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable
from pathlib import Path

from kernel_imagegen.builds.artifacts import collect_artifacts, record_manifest
from kernel_imagegen.builds.assembler import declare_object_targets
from kernel_imagegen.builds.graph import (
    BuildPlan,
    TargetGraph,
    resolve,
    snapshot_mtimes,
)
from kernel_imagegen.builds.image import declare_image_target
from kernel_imagegen.builds.launcher import launch
from kernel_imagegen.builds.library import declare_library_target
from kernel_imagegen.builds.linker import declare_binary_target
from kernel_imagegen.builds.reset import reset
from kernel_imagegen.builds.runner import SubprocessToolRunner, ToolRunner
from kernel_imagegen.builds.scheduler import BuildReport, execute_plan
from kernel_imagegen.config import ProjectLayout, ToolchainConfig
from kernel_imagegen.types import ArtifactInfo

logger = logging.getLogger(__name__)

# Command name -> (target alias, targets forced regardless of timestamps)
COMMAND_TARGETS: dict[str, tuple[str, tuple[str, ...]]] = {
    "all": ("binary", ()),
    "kernel": ("binary", ("archive",)),
    "iso": ("image", ()),
    "run": ("image", ()),
}


def declare_graph(toolchain: ToolchainConfig, layout: ProjectLayout) -> TargetGraph:
    """Declare objects, archive, binary and image targets.

    Args:
        toolchain: Resolved toolchain.
        layout: Project layout.

    Returns:
        Populated TargetGraph.
    """
    graph = TargetGraph()
    objects = declare_object_targets(graph, toolchain, layout)
    archive = declare_library_target(graph, toolchain, layout)
    binary = declare_binary_target(graph, toolchain, layout, objects, archive)
    declare_image_target(graph, toolchain, layout, binary)
    return graph


class Pipeline:
    """Drives the build for one invocation.

    Args:
        toolchain: Resolved toolchain.
        layout: Project layout.
        runner: Tool runner; a SubprocessToolRunner logging under the
            output root is created if not provided.
        jobs: Maximum concurrent assembler invocations.
    """

    def __init__(
        self,
        toolchain: ToolchainConfig,
        layout: ProjectLayout,
        runner: ToolRunner | None = None,
        jobs: int = 1,
    ) -> None:
        self.toolchain = toolchain
        self.layout = layout
        self.runner: ToolRunner = runner or SubprocessToolRunner(log_dir=layout.log_dir)
        self.jobs = jobs
        self.graph = declare_graph(toolchain, layout)

    def plan(self, target: str | Path, force: Iterable[str] = ()) -> BuildPlan:
        """Resolve the targets needed to bring target up to date.

        Raises:
            GraphError: If target is unknown.
            MissingInputError: If an undeclared input is missing.
        """
        mtimes = snapshot_mtimes(self.graph.paths())
        return resolve(self.graph, target, mtimes, force=force)

    def build(self, target: str | Path, force: Iterable[str] = ()) -> BuildReport:
        """Bring target up to date.

        Args:
            target: Alias or output path.
            force: Aliases to rebuild regardless of timestamps.

        Returns:
            BuildReport of the run.

        Raises:
            MissingInputError: If resolution finds a missing input.
            PipelineError: If any target fails.
        """
        plan = self.plan(target, force=force)
        if not plan.is_empty:
            logger.info("Plan for %s: %s", plan.root.name, ", ".join(plan.names()))
        report = execute_plan(self.graph, plan, self.runner, jobs=self.jobs)
        if report.built:
            record_manifest(
                self.graph,
                self.layout,
                self.toolchain,
                built=[t.name for t in report.built],
            )
        return report

    def command(self, name: str) -> BuildReport:
        """Build for one of the CLI commands in COMMAND_TARGETS."""
        target, force = COMMAND_TARGETS[name]
        return self.build(target, force=force)

    def run(self) -> int:
        """Ensure the image is current, then boot it.

        Returns:
            The emulator's exit status.
        """
        self.command("run")
        return launch(self.runner, self.toolchain, self.layout.image_path)

    def clean(self, deep: bool = False) -> list[Path]:
        """Delete every derived artifact."""
        return reset(
            self.graph,
            self.layout,
            runner=self.runner,
            toolchain=self.toolchain,
            deep=deep,
        )

    def artifacts(self) -> list[ArtifactInfo]:
        """List produced artifacts relative to the project root."""
        return collect_artifacts(self.graph, root=self.layout.project_root)


__all__ = ["COMMAND_TARGETS", "Pipeline", "declare_graph"]
