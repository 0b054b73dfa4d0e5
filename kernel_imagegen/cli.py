"""Thin CLI wrapper for kernel_imagegen.

This module provides the command-line interface using Typer.
All build logic is delegated to kernel_imagegen.builds.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import asdict
from typing import Annotated, Any

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.logging import RichHandler

from kernel_imagegen import __version__
from kernel_imagegen.builds.graph import GraphError, MissingInputError
from kernel_imagegen.builds.pipeline import COMMAND_TARGETS, Pipeline
from kernel_imagegen.builds.runner import ToolInvocationError, exit_status
from kernel_imagegen.builds.scheduler import BuildReport, PipelineError
from kernel_imagegen.config import (
    Settings,
    get_settings,
    print_settings_json,
    resolve_layout,
    resolve_toolchain,
)

app = typer.Typer(
    name="kimg",
    help="Kernel Image Generator - build, package and boot the kernel",
    invoke_without_command=True,
)
console = Console()
err_console = Console(stderr=True)

# Exit status for an operator interrupt (128 + SIGINT)
INTERRUPTED_EXIT = 130


def configure_logging(level: str) -> None:
    """Route library logging through Rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def print_json(text: str) -> None:
    """Print JSON verbatim (no wrapping or markup)."""
    console.print(text, soft_wrap=True, markup=False, highlight=False)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"kernel-imagegen version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    arch: Annotated[
        str | None,
        typer.Option("--arch", "-a", help="Target architecture"),
    ] = None,
    jobs: Annotated[
        int | None,
        typer.Option("--jobs", "-j", min=1, help="Concurrent assembler jobs"),
    ] = None,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Enable debug logging"),
    ] = False,
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """Kernel Image Generator - build, package and boot the kernel.

    Runs 'all' when no command is given.
    """
    state: dict[str, Any] = ctx.ensure_object(dict)
    try:
        settings = get_settings(
            arch=arch,
            jobs=jobs,
            log_level="DEBUG" if verbose else None,
        )
    except ValidationError as e:
        err_console.print(f"[red]Invalid configuration:[/red] {e}")
        raise typer.Exit(code=2) from None

    state["settings"] = settings
    configure_logging(settings.log_level)

    if ctx.invoked_subcommand is None:
        _build_command(ctx, "all")


def _pipeline(ctx: typer.Context) -> Pipeline:
    """Construct the pipeline from the settings resolved in main()."""
    state: dict[str, Any] = ctx.ensure_object(dict)
    settings: Settings = state["settings"]
    toolchain = resolve_toolchain(settings)
    layout = resolve_layout(settings, toolchain)
    return Pipeline(toolchain, layout, runner=state.get("runner"), jobs=settings.jobs)


def _guarded(action: Callable[[], Any]) -> Any:
    """Run action, turning build errors into exit codes."""
    try:
        return action()
    except PipelineError as e:
        err_console.print(f"[red]Build failed at {e.target}:[/red] {e.error}")
        if e.not_started:
            err_console.print(f"  Not started: {', '.join(e.not_started)}")
        log_path = getattr(e.error, "log_path", None)
        if log_path:
            err_console.print(f"  See log: {log_path}")
        raise typer.Exit(code=e.exit_code) from None
    except ToolInvocationError as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=exit_status(e.exit_code or 1)) from None
    except (MissingInputError, GraphError) as e:
        err_console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    except KeyboardInterrupt:
        err_console.print("[yellow]Interrupted[/yellow]")
        raise typer.Exit(code=INTERRUPTED_EXIT) from None


def _report(report: BuildReport) -> None:
    if report.up_to_date:
        console.print(f"[green]{report.plan.root.name} is up to date[/green]")
        return
    console.print(f"[bold]Built {len(report.built)} target(s):[/bold]")
    for target in report.built:
        console.print(f"  [green]✓ {target.name}[/green]")
    console.print(f"Output: {report.plan.root.output}")


def _build_command(ctx: typer.Context, name: str) -> None:
    pipeline = _pipeline(ctx)
    _report(_guarded(lambda: pipeline.command(name)))


@app.command("all")
def build_all(ctx: typer.Context) -> None:
    """Build the flat kernel binary (default)."""
    _build_command(ctx, "all")


@app.command("kernel")
def build_kernel(ctx: typer.Context) -> None:
    """Rebuild the library, assemble objects and link the binary."""
    _build_command(ctx, "kernel")


@app.command("iso")
def build_iso(ctx: typer.Context) -> None:
    """Build the bootable disc image."""
    _build_command(ctx, "iso")


@app.command("run")
def run_image(ctx: typer.Context) -> None:
    """Build the image, then boot it under the emulator."""
    pipeline = _pipeline(ctx)
    exit_code = _guarded(pipeline.run)
    if exit_code != 0:
        raise typer.Exit(code=exit_status(exit_code))


@app.command("clean")
def clean(
    ctx: typer.Context,
    deep: Annotated[
        bool,
        typer.Option("--deep", help="Also clean the cross toolchain's own cache"),
    ] = False,
) -> None:
    """Delete all derived artifacts."""
    pipeline = _pipeline(ctx)
    removed = _guarded(lambda: pipeline.clean(deep=deep))
    if removed:
        console.print(f"[bold]Removed {len(removed)} path(s)[/bold]")
    else:
        console.print("[yellow]Nothing to clean[/yellow]")


@app.command("plan")
def show_plan(
    ctx: typer.Context,
    command: Annotated[
        str,
        typer.Argument(help="Command to plan: all, kernel, iso or run"),
    ] = "all",
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show what would be built without running any tool."""
    if command not in COMMAND_TARGETS:
        err_console.print(f"[red]Unknown command: {command}[/red]")
        err_console.print(f"Valid values: {', '.join(COMMAND_TARGETS)}")
        raise typer.Exit(code=1)

    pipeline = _pipeline(ctx)
    target, force = COMMAND_TARGETS[command]
    plan = _guarded(lambda: pipeline.plan(target, force=force))

    if json_output:
        output = {
            "target": plan.root.name,
            "steps": [
                {"concurrent": s.concurrent, "targets": [t.name for t in s.targets]}
                for s in plan.steps
            ],
            "fresh": [t.name for t in plan.fresh],
        }
        print_json(json.dumps(output, indent=2))
        return

    if plan.is_empty:
        console.print(f"[green]{plan.root.name} is up to date[/green]")
        return
    console.print(f"[bold]Plan for {plan.root.name}:[/bold]")
    for index, step in enumerate(plan.steps, start=1):
        marker = " (concurrent)" if step.concurrent else ""
        names = ", ".join(t.name for t in step.targets)
        console.print(f"  {index}. {names}{marker}")


@app.command("artifacts")
def artifacts(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List produced artifacts."""
    found = _pipeline(ctx).artifacts()

    if not found:
        if json_output:
            print_json("[]")
        else:
            console.print("[yellow]No artifacts found[/yellow]")
        return

    if json_output:
        print_json(json.dumps([asdict(a) for a in found], indent=2))
        return

    console.print(f"[bold]Found {len(found)} artifact(s):[/bold]")
    console.print()
    for a in found:
        console.print(f"  [green]{a.path}[/green]")
        console.print(f"    Kind: {a.kind}")
        console.print(f"    Size: {a.size_bytes:,} bytes")
        console.print(f"    Modified: {a.modified_at}")
        console.print(f"    SHA256: {a.sha256[:16]}...")


@app.command()
def config(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings: Settings = ctx.ensure_object(dict)["settings"]
    if json_output:
        print_json(print_settings_json(settings))
        return

    toolchain = resolve_toolchain(settings)
    layout = resolve_layout(settings, toolchain)
    console.print("[bold]Effective Configuration:[/bold]")
    console.print()
    console.print("[bold]Target:[/bold]")
    console.print(f"  Architecture:        {toolchain.arch}")
    console.print(f"  Target triple:       {toolchain.target_triple}")
    console.print(f"  Library profile:     {toolchain.profile}")
    console.print()
    console.print("[bold]Toolchain:[/bold]")
    console.print(f"  Assembler:           {toolchain.assembler} (-f {toolchain.assembler_format})")
    console.print(f"  Linker:              {toolchain.linker}")
    console.print(f"  Cross toolchain:     {toolchain.cargo} {toolchain.cargo_subcommand}")
    console.print(f"  Mastering tool:      {toolchain.mkrescue}")
    console.print(f"  Emulator:            {toolchain.emulator}")
    console.print(f"  Target search path:  {toolchain.rust_target_path}")
    console.print()
    console.print("[bold]Paths:[/bold]")
    console.print(f"  Project root:        {layout.project_root}")
    console.print(f"  Source directory:    {layout.source_dir}")
    console.print(f"  Placement script:    {layout.linker_script}")
    console.print(f"  Boot configuration:  {layout.boot_config}")
    console.print(f"  Output root:         {layout.output_dir}")
    console.print(f"  Archive:             {layout.archive_path}")
    console.print(f"  Binary:              {layout.binary_path}")
    console.print(f"  Image:               {layout.image_path}")
    console.print()
    console.print("[bold]Operational:[/bold]")
    console.print(f"  Jobs:                {settings.jobs}")
    console.print(f"  Log level:           {settings.log_level}")
    console.print(f"  Debug port:          {toolchain.debug_port}")


if __name__ == "__main__":
    app()
