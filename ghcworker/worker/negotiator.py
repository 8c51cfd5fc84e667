"""Install and version negotiation for the worker tool.

The worker is installed per compiler as a stack compiler tool, so whether it
is usable depends on the project root. ``check`` probes the installed
version; ``install`` builds the pinned version, choosing a resolver snapshot
from the project's compiler version when one is known.
"""

import re
import shlex
from collections.abc import Mapping, Sequence

import structlog

from ghcworker.config import settings
from ghcworker.errors import InstallFailureError
from ghcworker.models import InstallStatus
from ghcworker.worker.options import (
    ghc_version_arguments,
    install_arguments,
    supported_extensions_arguments,
    version_check_arguments,
)
from ghcworker.worker.process import ProcessLauncher

logger = structlog.get_logger()

VERSION_PATTERN = re.compile(r"\d+(?:\.\d+)+")


def parse_version(output: str) -> str | None:
    """First dotted version number in ``output``, if any."""
    match = VERSION_PATTERN.search(output)
    return match.group(0) if match else None


class InstallNegotiator:
    """Determines whether the pinned worker is available and installs it.

    Results are never cached: every ``check`` runs the tool again, so an
    install performed outside this process is picked up.

    Attributes:
        worker_package: The worker tool's package name.
        worker_version: The version that must be installed.
    """

    def __init__(
        self,
        launcher: ProcessLauncher,
        *,
        stack_executable: str | None = None,
        worker_package: str | None = None,
        worker_version: str | None = None,
        extra_packages: Sequence[str] | None = None,
        resolver_table: Mapping[str, str] | None = None,
        stack_yaml: str | None = None,
        version_check_timeout: float | None = None,
        install_timeout: float | None = None,
    ) -> None:
        self.launcher = launcher
        self.stack_executable = stack_executable or settings.stack_executable
        self.worker_package = worker_package or settings.worker_package
        self.worker_version = worker_version or settings.worker_version
        self.extra_packages = list(
            settings.install_extra_packages if extra_packages is None else extra_packages
        )
        self.resolver_table = dict(
            settings.resolver_by_ghc_version if resolver_table is None else resolver_table
        )
        self.stack_yaml = stack_yaml if stack_yaml is not None else settings.stack_yaml
        self.version_check_timeout = (
            version_check_timeout or settings.version_check_timeout_seconds
        )
        self.install_timeout = install_timeout or settings.install_timeout_seconds

    async def check(self, root: str) -> InstallStatus:
        """Probe the worker's version in a project root.

        Args:
            root: The project root.

        Returns:
            ``not-installed`` if the tool cannot be run or exits non-zero,
            ``wrong-version`` if it reports a different version, otherwise
            ``installed``.
        """
        argv = version_check_arguments(
            self.stack_executable, self.worker_package, self.stack_yaml
        )
        try:
            result = await self.launcher.run(
                argv, cwd=root, timeout=self.version_check_timeout
            )
        except OSError as e:
            logger.info("worker_version_check_failed", root=root, error=str(e))
            return InstallStatus.NOT_INSTALLED

        if not result.succeeded:
            logger.info(
                "worker_not_installed",
                root=root,
                exit_code=result.exit_code,
            )
            return InstallStatus.NOT_INSTALLED

        version = parse_version(result.output)
        if version != self.worker_version:
            logger.info(
                "worker_wrong_version",
                root=root,
                found=version,
                required=self.worker_version,
            )
            return InstallStatus.WRONG_VERSION

        return InstallStatus.INSTALLED

    def resolver_for(self, ghc_version: str | None) -> str | None:
        """Snapshot to install with for a compiler version, if one is configured."""
        if not ghc_version:
            return None
        return self.resolver_table.get(ghc_version)

    async def install(self, root: str, *, ghc_version: str | None = None) -> str:
        """Build and install the pinned worker version.

        Args:
            root: The project root (selects the compiler).
            ghc_version: The project's compiler version, used to pick a
                resolver snapshot.

        Returns:
            The install transcript.

        Raises:
            InstallFailureError: If the build could not be run or exited
                non-zero; carries the full transcript.
        """
        argv = install_arguments(
            stack_executable=self.stack_executable,
            worker_package=self.worker_package,
            worker_version=self.worker_version,
            extra_packages=self.extra_packages,
            resolver=self.resolver_for(ghc_version),
            stack_yaml=self.stack_yaml,
        )
        header = f"$ {shlex.join(argv)}"
        logger.info("worker_install_started", root=root, argv=argv)

        try:
            result = await self.launcher.run(argv, cwd=root, timeout=self.install_timeout)
        except OSError as e:
            raise InstallFailureError(
                f"Could not run {self.stack_executable}: {e}",
                transcript=f"{header}\n{e}",
            ) from e

        transcript = f"{header}\n{result.output}"
        if not result.succeeded:
            logger.warning(
                "worker_install_failed",
                root=root,
                exit_code=result.exit_code,
                timed_out=result.timed_out,
            )
            raise InstallFailureError(
                f"Installing {self.worker_package}-{self.worker_version} failed "
                f"(exit code {result.exit_code})",
                transcript=transcript,
            )

        logger.info("worker_install_complete", root=root)
        return transcript

    async def ghc_version(self, root: str) -> str | None:
        """The project's compiler version, or None if it cannot be determined."""
        argv = ghc_version_arguments(self.stack_executable, self.stack_yaml)
        try:
            result = await self.launcher.run(
                argv, cwd=root, timeout=self.version_check_timeout
            )
        except OSError as e:
            logger.info("ghc_version_unavailable", root=root, error=str(e))
            return None
        if not result.succeeded:
            return None
        return parse_version(result.output)

    async def supported_extensions(self, root: str) -> list[str]:
        """Language extensions the project's compiler accepts (empty if unknown)."""
        argv = supported_extensions_arguments(self.stack_executable, self.stack_yaml)
        try:
            result = await self.launcher.run(
                argv, cwd=root, timeout=self.version_check_timeout
            )
        except OSError as e:
            logger.info("supported_extensions_unavailable", root=root, error=str(e))
            return []
        if not result.succeeded:
            return []
        return [line.strip() for line in result.output.splitlines() if line.strip()]
