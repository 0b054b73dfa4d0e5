"""Configuration settings for kernel_imagegen.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.

Settings are read once at the CLI boundary and resolved into two frozen
values handed to the pipeline: ToolchainConfig (which tools to call and for
which target) and ProjectLayout (where every input and output lives).
"""

import os
from pathlib import Path
from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Architectures whose objects are assembled as 64-bit ELF
_ELF64_ARCHES = {"x86_64", "aarch64", "riscv64"}


def _default_jobs() -> int:
    """Return the default number of concurrent assembler jobs."""
    return os.cpu_count() or 1


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the KIMG_ prefix.
    CLI flags can override these at runtime. The library search path is
    also read from the conventional RUST_TARGET_PATH variable.
    """

    model_config = SettingsConfigDict(
        env_prefix="KIMG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # Target
    arch: str = Field(
        default="x86_64",
        description="Target architecture",
    )
    target_triple: str | None = Field(
        default=None,
        description="Target triple (derived as <arch>-os if not set)",
    )

    # Toolchain binaries
    assembler: str = Field(default="nasm", description="Assembler executable")
    linker: str = Field(default="ld", description="Linker executable")
    cargo: str = Field(default="cargo", description="Cross toolchain driver")
    cargo_subcommand: str = Field(
        default="xbuild",
        description="Cargo subcommand used to build the freestanding library",
    )
    mkrescue: str = Field(
        default="grub-mkrescue",
        description="Disc-image mastering tool",
    )
    emulator: str | None = Field(
        default=None,
        description="Emulator executable (derived as qemu-system-<arch> if not set)",
    )
    rust_target_path: Path | None = Field(
        default=None,
        validation_alias=AliasChoices(
            "rust_target_path", "KIMG_RUST_TARGET_PATH", "RUST_TARGET_PATH"
        ),
        description="Search path for the custom target specification",
    )

    # Project paths (relative paths resolve against project_root)
    project_root: Path = Field(
        default_factory=Path.cwd,
        description="Root of the kernel source tree",
    )
    source_dir: Path = Field(
        default=Path("src/boot"),
        description="Directory holding entry-point assembly units",
    )
    entry_suffix: str = Field(
        default=".asm",
        description="File suffix of entry-point assembly units",
    )
    linker_script: Path = Field(
        default=Path("src/boot/linker.ld"),
        description="Memory placement script",
    )
    boot_config: Path = Field(
        default=Path("src/boot/grub.cfg"),
        description="Boot-loader configuration file",
    )
    output_dir: Path = Field(
        default=Path("target"),
        description="Output root for all derived artifacts",
    )
    library_name: str = Field(
        default="os",
        description="Crate name of the freestanding library (lib<name>.a)",
    )
    library_sources: list[str] = Field(
        default_factory=lambda: ["src/**/*.rs", "Cargo.toml", "Cargo.lock"],
        description="Globs (relative to project_root) the library depends on",
    )
    release: bool = Field(
        default=False,
        description="Build the library with the release profile",
    )

    # Emulator
    display: str = Field(default="sdl", description="Emulator display backend")
    debug_port: int = Field(
        default=1234,
        ge=1,
        le=65535,
        description="TCP port for the emulator's debugger stub",
    )
    emulator_args: list[str] = Field(
        default_factory=list,
        description="Extra arguments appended to the emulator command",
    )

    # Operational
    jobs: int = Field(
        default_factory=_default_jobs,
        ge=1,
        description="Maximum concurrent assembler invocations",
    )
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )


class ToolchainConfig(BaseModel):
    """Resolved toolchain for one run. Immutable."""

    model_config = ConfigDict(frozen=True)

    arch: str
    target_triple: str
    assembler: str
    assembler_format: str
    linker: str
    cargo: str
    cargo_subcommand: str
    mkrescue: str
    emulator: str
    rust_target_path: Path
    release: bool = False
    display: str = "sdl"
    debug_port: int = 1234
    emulator_args: tuple[str, ...] = ()

    @property
    def profile(self) -> str:
        """Cargo profile directory name."""
        return "release" if self.release else "debug"


class ProjectLayout(BaseModel):
    """Fixed on-disk layout of inputs and outputs. Immutable."""

    model_config = ConfigDict(frozen=True)

    project_root: Path
    source_dir: Path
    entry_suffix: str
    linker_script: Path
    boot_config: Path
    library_sources: tuple[str, ...]
    output_dir: Path
    objects_dir: Path
    triple_dir: Path
    archive_path: Path
    binary_path: Path
    image_path: Path
    log_dir: Path
    manifest_path: Path

    staging_prefix: str = "isofiles-"


def get_settings(**overrides: Any) -> Settings:
    """Get the application settings.

    Args:
        **overrides: Values taking precedence over env vars; None is ignored.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings(**{k: v for k, v in overrides.items() if v is not None})


def resolve_toolchain(settings: Settings) -> ToolchainConfig:
    """Resolve the toolchain for a run.

    Args:
        settings: Application settings.

    Returns:
        Frozen ToolchainConfig with derived triple and emulator name.
    """
    arch = settings.arch
    root = settings.project_root.resolve()
    target_path = settings.rust_target_path or root
    if not target_path.is_absolute():
        target_path = root / target_path
    return ToolchainConfig(
        arch=arch,
        target_triple=settings.target_triple or f"{arch}-os",
        assembler=settings.assembler,
        assembler_format="elf64" if arch in _ELF64_ARCHES else "elf32",
        linker=settings.linker,
        cargo=settings.cargo,
        cargo_subcommand=settings.cargo_subcommand,
        mkrescue=settings.mkrescue,
        emulator=settings.emulator or f"qemu-system-{arch}",
        rust_target_path=target_path,
        release=settings.release,
        display=settings.display,
        debug_port=settings.debug_port,
        emulator_args=tuple(settings.emulator_args),
    )


def resolve_layout(settings: Settings, toolchain: ToolchainConfig) -> ProjectLayout:
    """Resolve the fixed output layout for a run.

    Layout under the output root:
        boot/<rel>.o                        relocatable objects
        <triple>/<profile>/lib<name>.a      static archive
        <triple>/kernel-<arch>.bin          flat binary
    The image lives at <project_root>/os-<arch>.iso.

    Args:
        settings: Application settings.
        toolchain: Resolved toolchain.

    Returns:
        Frozen ProjectLayout with absolute paths.
    """
    root = settings.project_root.resolve()

    def _abs(path: Path) -> Path:
        return path if path.is_absolute() else root / path

    output_dir = _abs(settings.output_dir)
    triple_dir = output_dir / toolchain.target_triple
    return ProjectLayout(
        project_root=root,
        source_dir=_abs(settings.source_dir),
        entry_suffix=settings.entry_suffix,
        linker_script=_abs(settings.linker_script),
        boot_config=_abs(settings.boot_config),
        library_sources=tuple(settings.library_sources),
        output_dir=output_dir,
        objects_dir=output_dir / "boot",
        triple_dir=triple_dir,
        archive_path=triple_dir / toolchain.profile / f"lib{settings.library_name}.a",
        binary_path=triple_dir / f"kernel-{toolchain.arch}.bin",
        image_path=root / f"os-{toolchain.arch}.iso",
        log_dir=output_dir / "logs",
        manifest_path=output_dir / "manifest.json",
    )


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2)


__all__ = [
    "ProjectLayout",
    "Settings",
    "ToolchainConfig",
    "get_settings",
    "print_settings_json",
    "resolve_layout",
    "resolve_toolchain",
]
