"""Application configuration using Pydantic Settings.

This module provides centralized configuration for ghcworker sessions.
All settings can be overridden via ``GHCWORKER_*`` environment variables
or a .env file.
"""

import json
import logging
import sys
from typing import Any

import structlog
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Settings loaded from the environment.

    Attributes:
        stack_executable: Name or path of the ``stack`` tool.
        worker_package: Name of the worker executable/package (e.g. intero).
        worker_version: The pinned worker version that must be installed.
        install_extra_packages: Extra packages built alongside the worker.
        resolver_by_ghc_version: Snapshot used for installs, keyed by the
            project's GHC version.
        auto_install: Install the worker automatically when it is missing.
        ghci_options: Extra options passed through ``--ghci-options``.
        stack_yaml: Optional explicit stack.yaml for the project.
        docker_run_args: Value of ``--docker-run-args`` for the worker.
        setup_commands: Baseline commands written after spawning the worker.
            The prompt command derived from frame_marker follows them.
        frame_marker: The single byte terminating every response frame.
        unsatisfied_dependency_markers: Output fragments meaning the worker
            died because a dependency has not been built yet.
        startup_timeout_seconds: How long ensure_ready waits for a worker.
        blocking_call_timeout_seconds: Default timeout for blocking calls
            (None waits forever).
        version_check_timeout_seconds: Timeout for version probes.
        install_timeout_seconds: Timeout for the install build.
        allow_secondary_channel: If False, all queries use the primary queue
            (sandboxed or remote deployments).
        secondary_host: Host of the worker's service port.
        secondary_connect_timeout_seconds: Connect timeout for queries.
        transcript_max_bytes: Cap on the failure transcript kept per session.
        project_whitelist: If non-empty, only roots under these directories
            may start a worker.
        project_blacklist: Roots under these directories never start a worker.
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR).
        log_format: Log format (json or text).
    """

    # Toolchain
    stack_executable: str = "stack"
    worker_package: str = "intero"
    worker_version: str = "0.1.40"
    install_extra_packages: str | list[str] = [
        "ghc-paths-0.1.0.9",
        "mtl-2.2.2",
        "network-2.6.3.6",
        "random-1.1",
        "syb-0.7",
    ]
    resolver_by_ghc_version: dict[str, str] = {
        "7.10.3": "lts-6.35",
        "8.0.1": "lts-7.24",
        "8.0.2": "lts-9.21",
        "8.2.1": "nightly-2017-08-25",
        "8.2.2": "lts-11.22",
        "8.4.3": "lts-12.14",
        "8.4.4": "lts-12.26",
    }
    auto_install: bool = True

    # Worker startup
    ghci_options: str | list[str] = []
    stack_yaml: str | None = None
    docker_run_args: str = "--interactive=true --tty=false"
    setup_commands: str | list[str] = [":set -fobject-code"]
    frame_marker: str = "\x04"
    unsatisfied_dependency_markers: str | list[str] = [
        "cannot satisfy -package",
    ]

    # Timeouts
    startup_timeout_seconds: float = 600.0
    blocking_call_timeout_seconds: float | None = None
    version_check_timeout_seconds: float = 60.0
    install_timeout_seconds: float = 3600.0

    # Secondary channel
    allow_secondary_channel: bool = True
    secondary_host: str = "127.0.0.1"
    secondary_connect_timeout_seconds: float = 2.0

    # Session bookkeeping
    transcript_max_bytes: int = 64 * 1024
    project_whitelist: str | list[str] = []
    project_blacklist: str | list[str] = []

    log_level: str = "WARNING"
    log_format: str = "text"

    @field_validator(
        "install_extra_packages",
        "ghci_options",
        "setup_commands",
        "unsatisfied_dependency_markers",
        "project_whitelist",
        "project_blacklist",
        mode="before",
    )
    @classmethod
    def parse_string_list(cls, v: Any) -> list[str]:
        """Parse list settings from a string or a list.

        Accepts:
        - JSON array: '["-Wall", "-fno-warn-tabs"]'
        - Comma-separated: '-Wall,-fno-warn-tabs'
        - Single value: '-Wall'
        - Already a list
        """
        if isinstance(v, list):
            return [str(item) for item in v]
        if isinstance(v, str):
            v = v.strip()
            if v.startswith("["):
                try:
                    return [str(item) for item in json.loads(v)]
                except json.JSONDecodeError:
                    pass
            return [item.strip() for item in v.split(",") if item.strip()]
        return []

    @field_validator("frame_marker")
    @classmethod
    def check_frame_marker(cls, v: str) -> str:
        """The frame marker must encode to exactly one byte."""
        if len(v.encode("utf-8")) != 1:
            raise ValueError("frame_marker must be a single byte")
        if v in ("\n", "\r"):
            raise ValueError("frame_marker must not be a line terminator")
        return v

    model_config = SettingsConfigDict(
        env_prefix="GHCWORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @property
    def frame_marker_bytes(self) -> bytes:
        return self.frame_marker.encode("utf-8")

    @property
    def prompt_command(self) -> str:
        """Command setting the prompt to the frame marker, e.g. ``:set prompt "\\4"``."""
        return f':set prompt "\\{ord(self.frame_marker)}"'


def configure_logging(log_level: str = "WARNING", log_format: str = "text") -> None:
    """Configure structured logging.

    Logs go to stderr so that command output on stdout stays clean.

    Args:
        log_level: The minimum log level to emit (DEBUG, INFO, WARNING, ERROR).
        log_format: Output format - 'json' for machine consumption, 'text'
            for humans.
    """
    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.UnicodeDecoder(),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=False))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )


# Global settings instance
settings = Settings()

# Configure logging on module import
configure_logging(settings.log_level, settings.log_format)
