"""Kernel Image Generator - build orchestration for a hobby x86 kernel.

This package drives the external assembler, cross toolchain, linker,
disc-image mastering tool and emulator that turn entry-point assembly and a
freestanding static library into a bootable image.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
