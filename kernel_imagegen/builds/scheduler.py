"""Plan execution.

This module handles:
- Running each step of a BuildPlan in order
- Dispatching concurrent steps on a thread pool, one child process per worker
- Stopping at the first failure while letting in-flight siblings finish
- Discarding outputs of failed targets so the next run rebuilds them
- Terminating child processes on interrupt
"""

from __future__ import annotations

import logging
import os
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from pathlib import Path

from kernel_imagegen.builds.graph import (
    BuildPlan,
    BuildTarget,
    LayoutError,
    MissingInputError,
    TargetGraph,
)
from kernel_imagegen.builds.runner import ToolInvocationError, ToolRunner, exit_status
from kernel_imagegen.types import BuildStatus, ToolResult

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a target fails and the pipeline halts.

    Attributes:
        target: Alias of the first target that failed.
        error: The underlying exception.
        not_started: Aliases of targets that were never started.
    """

    def __init__(
        self,
        target: str,
        error: BaseException,
        not_started: list[str] | None = None,
    ) -> None:
        super().__init__(f"{target}: {error}")
        self.target = target
        self.error = error
        self.not_started = not_started or []
        self.code = getattr(error, "code", "pipeline_error")

    @property
    def exit_code(self) -> int:
        """Exit status to report: the tool's own status where there is one."""
        if isinstance(self.error, ToolInvocationError) and self.error.exit_code:
            return exit_status(self.error.exit_code)
        return 1


@dataclass
class BuildReport:
    """Outcome of a successful plan execution."""

    plan: BuildPlan
    built: list[BuildTarget] = field(default_factory=list)
    results: dict[Path, ToolResult] = field(default_factory=dict)

    @property
    def up_to_date(self) -> bool:
        """True when nothing needed building."""
        return not self.built


def discard_output(target: BuildTarget) -> None:
    """Remove a possibly partial output so it is treated as missing."""
    try:
        target.output.unlink()
        logger.debug("Removed partial output %s", target.output)
    except FileNotFoundError:
        pass


def refresh_output(target: BuildTarget) -> None:
    """Bring an output level with its newest input.

    A tool may succeed without rewriting an output it considers current
    (the cross toolchain does this when no crate source changed). The
    output is then re-stamped so the next run sees it as fresh.
    """
    newest = max((p.stat().st_mtime_ns for p in target.inputs), default=None)
    if newest is None:
        return
    if target.output.stat().st_mtime_ns < newest:
        os.utime(target.output, ns=(newest, newest))
        logger.debug("Refreshed timestamp of unchanged output %s", target.output)


def build_target(
    graph: TargetGraph,
    target: BuildTarget,
    runner: ToolRunner,
) -> ToolResult:
    """Build a single target.

    Args:
        graph: Target graph recording status.
        target: Target to build.
        runner: Tool runner handed to the recipe.

    Returns:
        ToolResult of the recipe.

    Raises:
        MissingInputError: If an input is missing before or after the build.
        ToolInvocationError: If the recipe's tool fails.
    """
    missing = [p for p in target.inputs if not p.exists()]
    if missing:
        graph.mark(target, BuildStatus.FAILED)
        raise MissingInputError(target.name, missing)

    graph.mark(target, BuildStatus.RUNNING)
    logger.info("Building %s", target.name)
    try:
        result = target.recipe(runner)
        if not target.output.exists():
            raise LayoutError(target.name, [target.output])
        refresh_output(target)
    except BaseException:
        graph.mark(target, BuildStatus.FAILED)
        discard_output(target)
        raise

    graph.mark(target, BuildStatus.SUCCEEDED)
    return result


def _skip(graph: TargetGraph, targets: list[BuildTarget]) -> list[str]:
    for target in targets:
        graph.mark(target, BuildStatus.SKIPPED)
    return [t.name for t in targets]


def _run_concurrent(
    graph: TargetGraph,
    targets: tuple[BuildTarget, ...],
    runner: ToolRunner,
    jobs: int,
    report: BuildReport,
) -> tuple[BuildTarget, BaseException, list[BuildTarget]] | None:
    """Run a concurrent step; return (failed, error, cancelled) on failure."""
    executor = ThreadPoolExecutor(
        max_workers=max(1, min(jobs, len(targets))),
        thread_name_prefix="kimg-build",
    )
    futures: dict[Future[ToolResult], BuildTarget] = {}
    try:
        for target in targets:
            futures[executor.submit(build_target, graph, target, runner)] = target
        done, _ = wait(futures, return_when=FIRST_EXCEPTION)

        failure: tuple[BuildTarget, BaseException] | None = None
        for future in done:
            error = future.exception()
            if error is not None:
                failure = (futures[future], error)
                break

        cancelled: list[BuildTarget] = []
        if failure is not None:
            # Pending work never starts; in-flight siblings run to completion.
            cancelled = [t for f, t in futures.items() if f.cancel()]
            wait(futures)

        for future, target in futures.items():
            if not future.cancelled() and future.exception() is None:
                report.built.append(target)
                report.results[target.output] = future.result()

        if failure is not None:
            return failure[0], failure[1], cancelled
        return None
    except BaseException:
        for future in futures:
            future.cancel()
        runner.terminate_all()
        raise
    finally:
        executor.shutdown(wait=True, cancel_futures=True)


def execute_plan(
    graph: TargetGraph,
    plan: BuildPlan,
    runner: ToolRunner,
    jobs: int = 1,
) -> BuildReport:
    """Execute a plan step by step.

    Args:
        graph: Target graph recording status.
        plan: Plan produced by resolve().
        runner: Tool runner.
        jobs: Maximum concurrent workers for concurrent steps.

    Returns:
        BuildReport listing built targets.

    Raises:
        PipelineError: If any target fails; wraps the underlying error.
        KeyboardInterrupt: After terminating running child processes.
    """
    report = BuildReport(plan=plan)
    if plan.is_empty:
        logger.info("%s is up to date", plan.root.name)
        return report

    remaining = plan.targets
    for index, step in enumerate(plan.steps):
        later = [t for s in plan.steps[index + 1 :] for t in s.targets]

        if step.concurrent and len(step.targets) > 1:
            failure = _run_concurrent(graph, step.targets, runner, jobs, report)
            if failure is not None:
                failed, error, cancelled = failure
                not_started = _skip(graph, cancelled + later)
                if not isinstance(error, Exception):
                    runner.terminate_all()
                    raise error
                logger.error("%s failed: %s", failed.name, error)
                raise PipelineError(failed.name, error, not_started) from error
            continue

        for target in step.targets:
            try:
                report.results[target.output] = build_target(graph, target, runner)
            except Exception as e:
                not_started = _skip(graph, later)
                logger.error("%s failed: %s", target.name, e)
                raise PipelineError(target.name, e, not_started) from e
            except BaseException:
                runner.terminate_all()
                raise
            report.built.append(target)

    logger.info(
        "Built %d of %d target(s) for %s",
        len(report.built),
        len(remaining),
        plan.root.name,
    )
    return report


__all__ = [
    "BuildReport",
    "PipelineError",
    "build_target",
    "discard_output",
    "execute_plan",
    "refresh_output",
]
