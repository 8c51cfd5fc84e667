"""CLI entrypoint for ghcworker."""

import asyncio
import json
import sys
from pathlib import Path
from typing import TextIO

import click

from ghcworker import __version__
from ghcworker.diagnostics import parse_diagnostics
from ghcworker.errors import InstallFailureError, WorkerSessionError
from ghcworker.models import InstallStatus
from ghcworker.session_manager import WorkerSessionManager
from ghcworker.worker import InstallNegotiator, ProcessLauncher

ROOT_OPTION = click.option(
    "--root",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    default=Path("."),
    show_default=True,
    help="Project root directory.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ghcworker")
def main() -> None:
    """Drive a GHCi-based worker from the command line."""


@main.command("check")
@ROOT_OPTION
def check(root: Path) -> None:
    """Report whether the pinned worker version is installed."""

    negotiator = InstallNegotiator(ProcessLauncher())
    status = asyncio.run(negotiator.check(str(root)))
    click.echo(status.value)
    if status != InstallStatus.INSTALLED:
        sys.exit(1)


@main.command("install")
@ROOT_OPTION
def install(root: Path) -> None:
    """Install the pinned worker version for the project's compiler."""

    async def _install() -> str:
        negotiator = InstallNegotiator(ProcessLauncher())
        ghc_version = await negotiator.ghc_version(str(root))
        return await negotiator.install(str(root), ghc_version=ghc_version)

    try:
        transcript = asyncio.run(_install())
    except InstallFailureError as e:
        click.echo(str(e), err=True)
        sys.exit(1)
    click.echo(transcript)


@main.command("parse")
@click.argument("file", type=click.File("r", encoding="utf-8"))
@click.option(
    "--staging",
    "staging",
    multiple=True,
    metavar="SCRATCH=LOGICAL",
    help="Report diagnostics for SCRATCH against LOGICAL. Can be repeated.",
)
@click.option(
    "--extension",
    "extensions",
    multiple=True,
    help="Supported language extension, filters extension suggestions. Can be repeated.",
)
def parse(file: TextIO, staging: tuple[str, ...], extensions: tuple[str, ...]) -> None:
    """Parse compiler output (FILE, or - for stdin) into JSON diagnostics."""

    staging_paths: dict[str, str] = {}
    for entry in staging:
        scratch, sep, logical = entry.partition("=")
        if not sep or not scratch or not logical:
            raise click.BadParameter(
                f"expected SCRATCH=LOGICAL, got {entry!r}", param_hint="--staging"
            )
        staging_paths[scratch] = logical

    diagnostics = parse_diagnostics(
        file.read(),
        staging_paths=staging_paths,
        extensions=list(extensions) or None,
    )
    click.echo(
        json.dumps(
            [diagnostic.model_dump(mode="json") for diagnostic in diagnostics],
            indent=2,
            ensure_ascii=False,
        )
    )


@main.command("repl")
@ROOT_OPTION
@click.option(
    "--target",
    "targets",
    multiple=True,
    help="Package target to load. Can be repeated.",
)
def repl(root: Path, targets: tuple[str, ...]) -> None:
    """Send commands read from stdin to a worker and print each response."""

    async def _repl() -> int:
        manager = WorkerSessionManager()
        try:
            session = await manager.ensure_ready(str(root), targets=list(targets))
            loop = asyncio.get_running_loop()
            while True:
                line = await loop.run_in_executor(None, sys.stdin.readline)
                if not line:
                    return 0
                command = line.rstrip("\r\n")
                if not command.strip():
                    continue
                try:
                    click.echo(await session.blocking_call(command))
                except ValueError as e:
                    click.echo(str(e), err=True)
        except WorkerSessionError as e:
            click.echo(str(e), err=True)
            return 1
        finally:
            await manager.cleanup_all()

    sys.exit(asyncio.run(_repl()))
