"""Tests for cli.py -- the ghcworker command line."""

import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from fakes import make_negotiator

from ghcworker import __version__, cli
from ghcworker.errors import InstallFailureError
from ghcworker.models import InstallStatus

OUTPUT = (
    "/tmp/scratch/Foo.hs:4:1: warning: [-Wunused-imports]\n"
    "    The import of ‘Data.Maybe’ is redundant\n"
    "src/Bar.hs:7:3: error:\n"
    "    Illegal tuple section: use TupleSections\n"
)


@pytest.fixture()
def runner() -> CliRunner:
    return CliRunner()


def test_version(runner: CliRunner) -> None:
    result = runner.invoke(cli.main, ["--version"])
    assert result.exit_code == 0
    assert __version__ in result.output


class TestParse:
    def test_stdin(self, runner: CliRunner) -> None:
        result = runner.invoke(cli.main, ["parse", "-"], input=OUTPUT)
        assert result.exit_code == 0
        diagnostics = json.loads(result.output)
        assert [d["severity"] for d in diagnostics] == ["warning", "error"]
        assert diagnostics[1]["suggestions"][0]["extension"] == "TupleSections"

    def test_staging(self, runner: CliRunner, tmp_path: Path) -> None:
        source = tmp_path / "out.txt"
        source.write_text(OUTPUT, encoding="utf-8")
        result = runner.invoke(
            cli.main,
            ["parse", str(source), "--staging", "/tmp/scratch/Foo.hs=src/Foo.hs"],
        )
        assert result.exit_code == 0
        assert json.loads(result.output)[0]["file"] == "src/Foo.hs"

    def test_extension_filter(self, runner: CliRunner) -> None:
        result = runner.invoke(
            cli.main, ["parse", "-", "--extension", "LambdaCase"], input=OUTPUT
        )
        assert result.exit_code == 0
        assert json.loads(result.output)[1]["suggestions"] == []

    def test_bad_staging(self, runner: CliRunner) -> None:
        result = runner.invoke(cli.main, ["parse", "-", "--staging", "nonsense"], input="")
        assert result.exit_code == 2
        assert "SCRATCH=LOGICAL" in result.output


class TestCheck:
    @pytest.mark.parametrize(
        "status,exit_code",
        [(InstallStatus.INSTALLED, 0), (InstallStatus.WRONG_VERSION, 1)],
    )
    def test_exit_code(
        self,
        runner: CliRunner,
        tmp_path: Path,
        monkeypatch: pytest.MonkeyPatch,
        status: InstallStatus,
        exit_code: int,
    ) -> None:
        negotiator = make_negotiator(status)
        monkeypatch.setattr(cli, "InstallNegotiator", lambda launcher: negotiator)
        result = runner.invoke(cli.main, ["check", "--root", str(tmp_path)])
        assert result.exit_code == exit_code
        assert result.output.strip() == status.value


class TestInstall:
    def test_failure_prints_transcript(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        negotiator = make_negotiator(
            InstallStatus.NOT_INSTALLED,
            install_error=InstallFailureError(
                "Installing intero-0.1.40 failed (exit code 1)",
                transcript="error: dependency cycle",
            ),
        )
        monkeypatch.setattr(cli, "InstallNegotiator", lambda launcher: negotiator)
        result = runner.invoke(cli.main, ["install", "--root", str(tmp_path)])
        assert result.exit_code == 1
        assert "dependency cycle" in result.output
        negotiator.install.assert_awaited_once_with(str(tmp_path), ghc_version="8.4.4")

    def test_success(
        self, runner: CliRunner, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        negotiator = make_negotiator(InstallStatus.NOT_INSTALLED)
        monkeypatch.setattr(cli, "InstallNegotiator", lambda launcher: negotiator)
        result = runner.invoke(cli.main, ["install", "--root", str(tmp_path)])
        assert result.exit_code == 0
        assert "installed" in result.output
