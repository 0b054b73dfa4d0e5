"""Tests for the CLI.

Commands run against a throwaway kernel tree with the FakeToolRunner
injected through the Typer context object; no external tools are needed.
"""

import json

import pytest
from typer.testing import CliRunner

from kernel_imagegen import __version__
from kernel_imagegen.builds.runner import TOOL_NOT_FOUND_EXIT, ToolInvocationError
from kernel_imagegen.cli import INTERRUPTED_EXIT, app

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_env(project, monkeypatch):
    """Point the CLI at the throwaway tree and keep logs quiet."""
    monkeypatch.chdir(project)
    monkeypatch.setenv("KIMG_PROJECT_ROOT", str(project))
    monkeypatch.setenv("KIMG_RUST_TARGET_PATH", str(project))
    monkeypatch.setenv("KIMG_LOG_LEVEL", "WARNING")
    monkeypatch.setenv("KIMG_JOBS", "2")


def invoke(args, fake_runner):
    return runner.invoke(app, args, obj={"runner": fake_runner})


class TestCLIHelp:
    """Test CLI help and version commands."""

    def test_help_returns_zero(self) -> None:
        """CLI --help should return exit code 0."""
        result = runner.invoke(app, ["--help"])
        assert result.exit_code == 0
        assert "Kernel Image Generator" in result.stdout

    def test_version_flag(self) -> None:
        """CLI --version should print version and exit 0."""
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.stdout

    def test_short_version_flag(self) -> None:
        """CLI -V should print version and exit 0."""
        result = runner.invoke(app, ["-V"])
        assert result.exit_code == 0
        assert __version__ in result.stdout


class TestCLIBuild:
    """Test the build commands."""

    def test_no_command_builds_binary(self, fake_runner, layout) -> None:
        """No command behaves like 'all'."""
        result = invoke([], fake_runner)

        assert result.exit_code == 0
        assert "Built 4 target(s)" in result.stdout
        assert layout.binary_path.exists()
        assert "image" not in fake_runner.stages

    def test_second_run_up_to_date(self, fake_runner) -> None:
        """A repeated build reports that nothing changed."""
        invoke(["all"], fake_runner)
        fake_runner.clear()

        result = invoke(["all"], fake_runner)

        assert result.exit_code == 0
        assert "up to date" in result.stdout
        assert fake_runner.invocations == []

    def test_iso(self, fake_runner, layout) -> None:
        """'iso' produces the image."""
        result = invoke(["iso"], fake_runner)
        assert result.exit_code == 0
        assert layout.image_path.exists()

    def test_kernel_rebuilds_library(self, fake_runner) -> None:
        """'kernel' re-invokes the cross toolchain every time."""
        invoke(["all"], fake_runner)
        fake_runner.clear()

        result = invoke(["kernel"], fake_runner)

        assert result.exit_code == 0
        assert fake_runner.stages == ["library", "link"]

    def test_tool_status_is_exit_code(self, fake_runner) -> None:
        """A failing tool's status becomes the exit status."""
        fake_runner.fail("link", exit_code=7)
        result = invoke(["all"], fake_runner)
        assert result.exit_code == 7

    def test_tool_not_found(self, fake_runner) -> None:
        """A missing tool exits with 127."""

        def not_found(invocation):
            raise ToolInvocationError(
                "assemble: tool not found: nasm",
                stage="assemble",
                tool="nasm",
                exit_code=TOOL_NOT_FOUND_EXIT,
                code="tool_not_found",
            )

        fake_runner.hooks["assemble"] = not_found
        result = invoke(["all"], fake_runner)
        assert result.exit_code == TOOL_NOT_FOUND_EXIT

    def test_missing_input_exits_one(self, fake_runner, layout) -> None:
        """A missing source exits 1 without running any tool."""
        layout.linker_script.unlink()
        result = invoke(["all"], fake_runner)
        assert result.exit_code == 1
        assert fake_runner.invocations == []

    def test_interrupt(self, fake_runner) -> None:
        """An interrupt exits 130."""

        def interrupt(invocation):
            raise KeyboardInterrupt

        fake_runner.hooks["library"] = interrupt
        result = invoke(["all"], fake_runner)
        assert result.exit_code == INTERRUPTED_EXIT
        assert fake_runner.terminated


class TestCLIRun:
    """Test the run command."""

    def test_run_boots_image(self, fake_runner) -> None:
        """'run' builds the image and starts the emulator."""
        result = invoke(["run"], fake_runner)
        assert result.exit_code == 0
        assert fake_runner.stages[-2:] == ["image", "run"]

    def test_run_passes_emulator_status(self, fake_runner) -> None:
        """The emulator's exit status is the command's exit status."""
        fake_runner.fail("run", exit_code=3)
        result = invoke(["run"], fake_runner)
        assert result.exit_code == 3

    def test_run_emulator_killed(self, fake_runner) -> None:
        """An emulator killed by a signal exits with 128 + signal number."""
        fake_runner.fail("run", exit_code=-9)
        result = invoke(["run"], fake_runner)
        assert result.exit_code == 137


class TestCLIClean:
    """Test the clean command."""

    def test_clean(self, fake_runner, layout) -> None:
        """'clean' removes outputs; a second clean finds nothing."""
        invoke(["iso"], fake_runner)

        result = invoke(["clean"], fake_runner)
        assert result.exit_code == 0
        assert "Removed" in result.stdout
        assert not layout.image_path.exists()

        result = invoke(["clean"], fake_runner)
        assert result.exit_code == 0
        assert "Nothing to clean" in result.stdout

    def test_clean_deep(self, fake_runner) -> None:
        """'clean --deep' also cleans the cross toolchain cache."""
        result = invoke(["clean", "--deep"], fake_runner)
        assert result.exit_code == 0
        assert fake_runner.stages == ["clean"]


class TestCLIPlan:
    """Test the plan command."""

    def test_plan_json(self, fake_runner) -> None:
        """Plan JSON lists steps without running anything."""
        result = invoke(["plan", "iso", "--json"], fake_runner)

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert data["target"] == "image"
        assert data["steps"][0] == {
            "concurrent": True,
            "targets": ["boot/a.o", "boot/b.o"],
        }
        assert [s["targets"] for s in data["steps"][1:]] == [
            ["archive"],
            ["binary"],
            ["image"],
        ]
        assert fake_runner.invocations == []

    def test_plan_up_to_date(self, fake_runner) -> None:
        """An up-to-date tree plans nothing."""
        invoke(["all"], fake_runner)
        result = invoke(["plan"], fake_runner)
        assert result.exit_code == 0
        assert "up to date" in result.stdout

    def test_plan_unknown_command(self, fake_runner) -> None:
        """Unknown commands are rejected."""
        result = invoke(["plan", "flash"], fake_runner)
        assert result.exit_code == 1


class TestCLIArtifacts:
    """Test the artifacts command."""

    def test_no_artifacts_json(self, fake_runner) -> None:
        """An unbuilt tree lists nothing."""
        result = invoke(["artifacts", "--json"], fake_runner)
        assert result.exit_code == 0
        assert json.loads(result.stdout) == []

    def test_artifacts_json(self, fake_runner) -> None:
        """Built outputs are listed with kind and checksum."""
        invoke(["iso"], fake_runner)

        result = invoke(["artifacts", "--json"], fake_runner)

        assert result.exit_code == 0
        data = json.loads(result.stdout)
        assert {a["kind"] for a in data} == {"object", "archive", "binary", "image"}
        assert all(len(a["sha256"]) == 64 for a in data)


class TestCLIConfig:
    """Test CLI config command."""

    def test_config_json(self) -> None:
        """Config JSON reflects the environment."""
        result = runner.invoke(app, ["config", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["jobs"] == 2

    def test_arch_option(self) -> None:
        """--arch overrides the configured architecture."""
        result = runner.invoke(app, ["--arch", "i686", "config", "--json"])
        assert result.exit_code == 0
        assert json.loads(result.stdout)["arch"] == "i686"

    def test_config_human(self) -> None:
        """Human output shows every section."""
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 0
        for section in ("Target:", "Toolchain:", "Paths:", "Operational:"):
            assert section in result.stdout
        assert "x86_64-os" in result.stdout

    def test_invalid_config_exits_two(self, monkeypatch) -> None:
        """Invalid settings are reported before anything runs."""
        monkeypatch.setenv("KIMG_DEBUG_PORT", "0")
        result = runner.invoke(app, ["config"])
        assert result.exit_code == 2
