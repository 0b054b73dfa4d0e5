"""Build orchestration module.

This module handles:
- Target declaration and staleness resolution
- Running external tools behind a substitutable runner
- Concurrent execution of independent targets
- Image staging and mastering
- Launching the emulator and resetting derived artifacts
"""

from kernel_imagegen.builds.pipeline import Pipeline

__all__ = ["Pipeline"]

# Stage modules are imported directly, e.g. kernel_imagegen.builds.linker
