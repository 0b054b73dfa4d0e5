"""Target graph and staleness resolution.

This module handles:
- Declaring build targets with their inputs, output and recipe
- Snapshotting modification times once per invocation
- Deciding which targets are stale
- Ordering stale targets into steps that respect dependency edges

Staleness is a pure function of the graph and a modification-time snapshot;
nothing here touches the filesystem except snapshot_mtimes().
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING

from kernel_imagegen.types import BuildStatus, TargetKind, ToolResult

if TYPE_CHECKING:
    from kernel_imagegen.builds.runner import ToolRunner

logger = logging.getLogger(__name__)

Recipe = Callable[["ToolRunner"], ToolResult]
MtimeSnapshot = Mapping[Path, "int | None"]


class GraphError(Exception):
    """Raised when the target graph is malformed or queried incorrectly."""

    def __init__(self, message: str, code: str = "graph_error") -> None:
        super().__init__(message)
        self.code = code


class MissingInputError(Exception):
    """Raised when a target's input does not exist and cannot be built."""

    def __init__(
        self,
        target: str,
        missing: Iterable[Path],
        code: str = "missing_input",
        message: str | None = None,
    ) -> None:
        self.target = target
        self.missing = list(missing)
        if message is None:
            paths = ", ".join(str(p) for p in self.missing)
            message = f"Missing input for {target}: {paths}"
        super().__init__(message)
        self.code = code


class LayoutError(MissingInputError):
    """Raised when a tool reported success but its output is absent."""

    def __init__(self, target: str, missing: Iterable[Path]) -> None:
        missing = list(missing)
        paths = ", ".join(str(p) for p in missing)
        super().__init__(
            target,
            missing,
            code="layout_error",
            message=f"{target} reported success but did not produce: {paths}",
        )


@dataclass(eq=False)
class BuildTarget:
    """A declared build target.

    Attributes:
        name: Short alias used on the command line and in logs.
        kind: Kind of artifact produced.
        output: Output path; identity of the target.
        inputs: Ordered input paths.
        recipe: Callable producing the output through a tool runner.
        concurrent: Whether the target may build alongside its siblings.
    """

    name: str
    kind: TargetKind
    output: Path
    inputs: tuple[Path, ...]
    recipe: Recipe = field(repr=False)
    concurrent: bool = False

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class BuildStep:
    """Targets that run together; concurrent steps may run in parallel."""

    targets: tuple[BuildTarget, ...]
    concurrent: bool = False


@dataclass
class BuildPlan:
    """Ordered steps needed to bring a target up to date."""

    root: BuildTarget
    steps: list[BuildStep] = field(default_factory=list)
    fresh: list[BuildTarget] = field(default_factory=list)

    @property
    def targets(self) -> list[BuildTarget]:
        """All targets to build, in execution order."""
        return [t for step in self.steps for t in step.targets]

    @property
    def is_empty(self) -> bool:
        """True when everything is already up to date."""
        return not self.steps

    def names(self) -> list[str]:
        """Aliases of all targets to build, in execution order."""
        return [t.name for t in self.targets]


class TargetGraph:
    """In-memory graph of declared targets keyed by output path."""

    def __init__(self) -> None:
        self._targets: dict[Path, BuildTarget] = {}
        self._aliases: dict[str, Path] = {}
        self._status: dict[Path, BuildStatus] = {}

    def add(self, target: BuildTarget) -> BuildTarget:
        """Declare a target.

        Raises:
            GraphError: If the output path or alias is already declared.
        """
        if target.output in self._targets:
            raise GraphError(
                f"Output {target.output} is already produced by "
                f"{self._targets[target.output].name}",
                code="duplicate_target",
            )
        if target.name in self._aliases:
            raise GraphError(
                f"Target name already declared: {target.name}",
                code="duplicate_target",
            )
        self._targets[target.output] = target
        self._aliases[target.name] = target.output
        self._status[target.output] = BuildStatus.PENDING
        return target

    def get(self, name: str | Path) -> BuildTarget:
        """Look up a target by alias or output path.

        Raises:
            GraphError: If no such target is declared.
        """
        if isinstance(name, str) and name in self._aliases:
            return self._targets[self._aliases[name]]
        target = self._targets.get(Path(name))
        if target is None:
            raise GraphError(f"Unknown target: {name}", code="unknown_target")
        return target

    def producer_of(self, path: Path) -> BuildTarget | None:
        """Return the target producing path, if any."""
        return self._targets.get(path)

    def upstream(self, target: BuildTarget) -> list[BuildTarget]:
        """Declared targets whose outputs feed target."""
        return [t for p in target.inputs if (t := self._targets.get(p)) is not None]

    def of_kind(self, kind: TargetKind) -> list[BuildTarget]:
        """Targets of one kind, in declaration order."""
        return [t for t in self._targets.values() if t.kind == kind]

    def paths(self) -> set[Path]:
        """Every input and output path mentioned by the graph."""
        result: set[Path] = set()
        for target in self._targets.values():
            result.add(target.output)
            result.update(target.inputs)
        return result

    def status(self, target: BuildTarget) -> BuildStatus:
        """Last-known status of target in this run."""
        return self._status[target.output]

    def mark(self, target: BuildTarget, status: BuildStatus) -> None:
        """Record the status of target."""
        self._status[target.output] = status

    def __contains__(self, name: object) -> bool:
        if isinstance(name, str) and name in self._aliases:
            return True
        return isinstance(name, (str, Path)) and Path(name) in self._targets

    def __iter__(self) -> Iterator[BuildTarget]:
        return iter(list(self._targets.values()))

    def __len__(self) -> int:
        return len(self._targets)


def snapshot_mtimes(paths: Iterable[Path]) -> dict[Path, int | None]:
    """Read modification times (ns) of paths; None for missing files."""
    snapshot: dict[Path, int | None] = {}
    for path in paths:
        try:
            snapshot[path] = path.stat().st_mtime_ns
        except FileNotFoundError:
            snapshot[path] = None
    return snapshot


def is_stale(target: BuildTarget, mtimes: MtimeSnapshot) -> bool:
    """Check a single target against a modification-time snapshot.

    A target is stale if its output is missing or any input is missing or
    strictly newer than the output.
    """
    output_mtime = mtimes.get(target.output)
    if output_mtime is None:
        return True
    for path in target.inputs:
        input_mtime = mtimes.get(path)
        if input_mtime is None or input_mtime > output_mtime:
            return True
    return False


def resolve(
    graph: TargetGraph,
    name: str | Path,
    mtimes: MtimeSnapshot,
    force: Iterable[str] = (),
) -> BuildPlan:
    """Compute the ordered list of targets needed to bring name up to date.

    Walks inputs transitively. A target is rebuilt if it is stale, forced,
    or any declared target it depends on is rebuilt. Rebuilt targets are
    grouped into steps by dependency depth; concurrent targets of the same
    depth share one step, every other target gets a step of its own.

    Args:
        graph: Target graph.
        name: Alias or output path of the requested target.
        mtimes: Modification-time snapshot covering graph.paths().
        force: Aliases to rebuild regardless of timestamps.

    Returns:
        BuildPlan for the requested target.

    Raises:
        GraphError: If name is unknown or the graph has a cycle.
        MissingInputError: If an undeclared input does not exist.
    """
    root = graph.get(name)
    forced = set(force)
    rebuild: dict[Path, bool] = {}
    level: dict[Path, int] = {}
    order: list[BuildTarget] = []
    visiting: set[Path] = set()

    def visit(target: BuildTarget) -> None:
        if target.output in rebuild:
            return
        if target.output in visiting:
            raise GraphError(
                f"Dependency cycle through {target.name}", code="dependency_cycle"
            )
        visiting.add(target.output)

        missing = [
            p
            for p in target.inputs
            if graph.producer_of(p) is None and mtimes.get(p) is None
        ]
        if missing:
            raise MissingInputError(target.name, missing)

        upstream = graph.upstream(target)
        for dep in upstream:
            visit(dep)

        rebuilt_deps = [d for d in upstream if rebuild[d.output]]
        rebuild[target.output] = (
            target.name in forced or bool(rebuilt_deps) or is_stale(target, mtimes)
        )
        level[target.output] = max((level[d.output] + 1 for d in rebuilt_deps), default=0)
        visiting.discard(target.output)
        order.append(target)

    visit(root)

    plan = BuildPlan(root=root)
    stale = [t for t in order if rebuild[t.output]]
    plan.fresh = [t for t in order if not rebuild[t.output]]
    for depth in sorted({level[t.output] for t in stale}):
        at_depth = [t for t in stale if level[t.output] == depth]
        group = tuple(t for t in at_depth if t.concurrent)
        if group:
            plan.steps.append(BuildStep(targets=group, concurrent=True))
        for target in at_depth:
            if not target.concurrent:
                plan.steps.append(BuildStep(targets=(target,)))

    logger.debug(
        "Resolved %s: %d to build, %d fresh",
        root.name,
        len(stale),
        len(plan.fresh),
    )
    return plan


__all__ = [
    "BuildPlan",
    "BuildStep",
    "BuildTarget",
    "GraphError",
    "LayoutError",
    "MissingInputError",
    "Recipe",
    "TargetGraph",
    "is_stale",
    "resolve",
    "snapshot_mtimes",
]
