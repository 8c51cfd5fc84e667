"""Tests for config.py -- environment-driven settings."""

import pytest
from pydantic import ValidationError

from ghcworker.config import Settings


class TestListSettings:
    def test_comma_separated(self) -> None:
        settings = Settings(ghci_options="-Wall, -fno-warn-tabs")
        assert settings.ghci_options == ["-Wall", "-fno-warn-tabs"]

    def test_json_array(self) -> None:
        settings = Settings(setup_commands='[":set -fobject-code", ":set -Wall"]')
        assert settings.setup_commands == [":set -fobject-code", ":set -Wall"]

    def test_single_value(self) -> None:
        assert Settings(project_blacklist="/etc").project_blacklist == ["/etc"]

    def test_empty_string(self) -> None:
        assert Settings(project_whitelist="").project_whitelist == []

    def test_from_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("GHCWORKER_PROJECT_BLACKLIST", "/etc,/usr")
        monkeypatch.setenv("GHCWORKER_WORKER_VERSION", "0.1.41")
        settings = Settings()
        assert settings.project_blacklist == ["/etc", "/usr"]
        assert settings.worker_version == "0.1.41"


class TestFrameMarker:
    def test_default(self) -> None:
        settings = Settings()
        assert settings.frame_marker_bytes == b"\x04"

    @pytest.mark.parametrize("marker", ["", "\x04\x04", "λ", "\n"])
    def test_rejected(self, marker: str) -> None:
        with pytest.raises(ValidationError):
            Settings(frame_marker=marker)

    def test_prompt_command_default(self) -> None:
        assert Settings().prompt_command == ':set prompt "\\4"'

    def test_prompt_command_follows_marker(self) -> None:
        settings = Settings(frame_marker="\x07")
        assert settings.frame_marker_bytes == b"\x07"
        assert settings.prompt_command == ':set prompt "\\7"'
        assert settings.prompt_command not in settings.setup_commands


def test_defaults() -> None:
    settings = Settings()
    assert settings.worker_package == "intero"
    assert settings.resolver_by_ghc_version["8.4.4"] == "lts-12.26"
    assert "cannot satisfy -package" in settings.unsatisfied_dependency_markers
    assert settings.setup_commands == [":set -fobject-code"]
