"""Execution launcher: boot the image under the emulator."""

from __future__ import annotations

import logging
from pathlib import Path

from kernel_imagegen.builds.graph import MissingInputError
from kernel_imagegen.builds.runner import ToolRunner
from kernel_imagegen.config import ToolchainConfig
from kernel_imagegen.types import ToolInvocation

logger = logging.getLogger(__name__)

STAGE = "run"


def compose_emulator_args(toolchain: ToolchainConfig, image: Path) -> list[str]:
    """Compose emulator arguments: CD-ROM boot, display, debug stub, serial."""
    return [
        "-cdrom",
        str(image),
        "-display",
        toolchain.display,
        "-gdb",
        f"tcp::{toolchain.debug_port}",
        "-serial",
        "stdio",
        *toolchain.emulator_args,
    ]


def emulator_invocation(toolchain: ToolchainConfig, image: Path) -> ToolInvocation:
    """Compose the emulator call for image.

    Output is not captured: serial output goes straight to the terminal.

    Args:
        toolchain: Resolved toolchain.
        image: Bootable image.

    Returns:
        Uncaptured ToolInvocation.
    """
    return ToolInvocation(
        tool=toolchain.emulator,
        args=compose_emulator_args(toolchain, image),
        stage=STAGE,
        capture=False,
    )


def launch(runner: ToolRunner, toolchain: ToolchainConfig, image: Path) -> int:
    """Boot image and block until the emulator exits.

    Args:
        runner: Tool runner.
        toolchain: Resolved toolchain.
        image: Bootable image.

    Returns:
        The emulator's exit status, unchanged.

    Raises:
        MissingInputError: If the image does not exist.
        ToolInvocationError: If the emulator cannot be started.
    """
    if not image.exists():
        raise MissingInputError("run", [image])

    logger.info("Booting %s (debugger on tcp::%d)", image.name, toolchain.debug_port)
    result = runner.run(emulator_invocation(toolchain, image))
    logger.info("Emulator exited with status %d", result.exit_code)
    return result.exit_code


__all__ = ["compose_emulator_args", "emulator_invocation", "launch"]
