"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest
from pydantic import ValidationError

from kernel_imagegen.config import (
    Settings,
    get_settings,
    print_settings_json,
    resolve_layout,
    resolve_toolchain,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings()

        assert settings.arch == "x86_64"
        assert settings.target_triple is None
        assert settings.assembler == "nasm"
        assert settings.linker == "ld"
        assert settings.mkrescue == "grub-mkrescue"
        assert settings.emulator is None
        assert settings.rust_target_path is None
        assert settings.log_level == "INFO"
        assert settings.jobs >= 1

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "KIMG_ARCH": "i686",
                "KIMG_LOG_LEVEL": "DEBUG",
                "KIMG_JOBS": "4",
                "KIMG_LINKER": "ld.lld",
            },
        ):
            settings = Settings()
            assert settings.arch == "i686"
            assert settings.log_level == "DEBUG"
            assert settings.jobs == 4
            assert settings.linker == "ld.lld"

    def test_rust_target_path_from_conventional_variable(self) -> None:
        """RUST_TARGET_PATH should be read without the KIMG_ prefix."""
        with patch.dict(os.environ, {"RUST_TARGET_PATH": "/opt/targets"}):
            settings = Settings()
            assert settings.rust_target_path == Path("/opt/targets")

    def test_invalid_debug_port_rejected(self) -> None:
        """Out-of-range ports should fail validation."""
        with pytest.raises(ValidationError):
            Settings(debug_port=70000)


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)

    def test_overrides_take_precedence(self) -> None:
        """Explicit overrides should beat environment variables."""
        with patch.dict(os.environ, {"KIMG_ARCH": "i686"}):
            settings = get_settings(arch="aarch64")
            assert settings.arch == "aarch64"

    def test_none_overrides_ignored(self) -> None:
        """None overrides should fall through to env/defaults."""
        with patch.dict(os.environ, {"KIMG_ARCH": "i686"}):
            settings = get_settings(arch=None, jobs=None)
            assert settings.arch == "i686"


class TestResolveToolchain:
    """Tests for resolve_toolchain function."""

    def test_derived_names(self, tmp_path: Path) -> None:
        """Triple and emulator should derive from the architecture."""
        toolchain = resolve_toolchain(Settings(project_root=tmp_path))

        assert toolchain.target_triple == "x86_64-os"
        assert toolchain.emulator == "qemu-system-x86_64"
        assert toolchain.assembler_format == "elf64"
        assert toolchain.profile == "debug"

    def test_32bit_arch(self, tmp_path: Path) -> None:
        """32-bit architectures should assemble elf32 objects."""
        toolchain = resolve_toolchain(Settings(project_root=tmp_path, arch="i686"))

        assert toolchain.target_triple == "i686-os"
        assert toolchain.emulator == "qemu-system-i686"
        assert toolchain.assembler_format == "elf32"

    def test_explicit_overrides(self, tmp_path: Path) -> None:
        """Explicit triple and emulator should be used verbatim."""
        toolchain = resolve_toolchain(
            Settings(
                project_root=tmp_path,
                target_triple="x86_64-unknown-none",
                emulator="/opt/qemu/bin/qemu",
                release=True,
            )
        )
        assert toolchain.target_triple == "x86_64-unknown-none"
        assert toolchain.emulator == "/opt/qemu/bin/qemu"
        assert toolchain.profile == "release"

    def test_target_path_defaults_to_project_root(self, tmp_path: Path) -> None:
        """Without RUST_TARGET_PATH the project root holds the target spec."""
        with patch.dict(os.environ, {}, clear=True):
            toolchain = resolve_toolchain(Settings(project_root=tmp_path))
        assert toolchain.rust_target_path == tmp_path.resolve()

    def test_relative_target_path_resolves_against_root(self, tmp_path: Path) -> None:
        """A relative search path is anchored at the project root."""
        toolchain = resolve_toolchain(
            Settings(project_root=tmp_path, rust_target_path=Path("targets"))
        )
        assert toolchain.rust_target_path == tmp_path.resolve() / "targets"

    def test_toolchain_is_frozen(self, tmp_path: Path) -> None:
        """Resolved toolchain should be immutable."""
        toolchain = resolve_toolchain(Settings(project_root=tmp_path))
        with pytest.raises(ValidationError):
            toolchain.linker = "gold"  # type: ignore[misc]


class TestResolveLayout:
    """Tests for resolve_layout function."""

    def test_fixed_layout(self, tmp_path: Path) -> None:
        """Outputs should follow the fixed layout under the output root."""
        settings = Settings(project_root=tmp_path)
        layout = resolve_layout(settings, resolve_toolchain(settings))
        root = tmp_path.resolve()

        assert layout.output_dir == root / "target"
        assert layout.objects_dir == root / "target" / "boot"
        assert layout.archive_path == root / "target" / "x86_64-os" / "debug" / "libos.a"
        assert layout.binary_path == root / "target" / "x86_64-os" / "kernel-x86_64.bin"
        assert layout.image_path == root / "os-x86_64.iso"
        assert layout.linker_script == root / "src" / "boot" / "linker.ld"
        assert layout.boot_config == root / "src" / "boot" / "grub.cfg"

    def test_release_archive_path(self, tmp_path: Path) -> None:
        """Release builds should read the archive from the release profile."""
        settings = Settings(project_root=tmp_path, release=True, library_name="kernel")
        layout = resolve_layout(settings, resolve_toolchain(settings))
        assert layout.archive_path.parts[-2:] == ("release", "libkernel.a")

    def test_absolute_output_dir_kept(self, tmp_path: Path) -> None:
        """Absolute paths should not be re-anchored."""
        out = tmp_path / "elsewhere"
        settings = Settings(project_root=tmp_path / "os", output_dir=out)
        layout = resolve_layout(settings, resolve_toolchain(settings))
        assert layout.output_dir == out


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self, tmp_path: Path) -> None:
        """print_settings_json should return valid JSON."""
        json_str = print_settings_json(Settings(project_root=tmp_path))
        parsed = json.loads(json_str)

        assert parsed["arch"] == "x86_64"
        assert "assembler" in parsed
        assert "output_dir" in parsed
        assert "debug_port" in parsed

    def test_print_settings_json_default(self) -> None:
        """print_settings_json without args should use default settings."""
        parsed = json.loads(print_settings_json())
        assert "arch" in parsed
