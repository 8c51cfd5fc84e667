"""Command-line construction for the worker and its helper invocations."""

from collections.abc import Sequence

from ghcworker.models import StartMode


def stack_prefix(stack_executable: str, stack_yaml: str | None = None) -> list[str]:
    """``stack`` plus the ``--stack-yaml`` flag when one is configured."""
    argv = [stack_executable]
    if stack_yaml:
        argv += ["--stack-yaml", stack_yaml]
    return argv


def build_start_arguments(
    *,
    stack_executable: str,
    worker_package: str,
    object_dir: str,
    mode: StartMode,
    docker_run_args: str = "",
    stack_yaml: str | None = None,
    ghci_options: Sequence[str] = (),
    targets: Sequence[str] = (),
) -> list[str]:
    """Build the argv that starts a worker in a project root.

    The worker loads nothing by itself (``--no-load``); modules are loaded
    through the primary channel. In ``fast`` mode dependencies are not built,
    so a missing one makes the worker exit with an unsatisfied-package error.

    Args:
        stack_executable: The ``stack`` program.
        worker_package: The GHCi-compatible worker passed to ``--with-ghc``.
        object_dir: Directory for object and interface files.
        mode: Start mode.
        docker_run_args: Passed through ``--docker-run-args`` when non-empty.
        stack_yaml: Optional explicit stack.yaml.
        ghci_options: Extra options, each passed as ``--ghci-options``.
        targets: Package targets to load.

    Returns:
        The complete argv.
    """
    argv = stack_prefix(stack_executable, stack_yaml)
    argv += ["ghci", "--with-ghc", worker_package]
    if docker_run_args:
        argv.append(f"--docker-run-args={docker_run_args}")
    if mode == StartMode.FAST:
        argv.append("--no-build")
    argv += [
        "--no-load",
        "--ghci-options",
        f"-odir={object_dir}",
        "--ghci-options",
        f"-hidir={object_dir}",
    ]
    for option in ghci_options:
        argv += ["--ghci-options", option]
    argv += list(targets)
    return argv


def version_check_arguments(
    stack_executable: str, worker_package: str, stack_yaml: str | None = None
) -> list[str]:
    return stack_prefix(stack_executable, stack_yaml) + [
        "exec",
        "--verbosity",
        "silent",
        "--",
        worker_package,
        "--version",
    ]


def install_arguments(
    *,
    stack_executable: str,
    worker_package: str,
    worker_version: str,
    extra_packages: Sequence[str] = (),
    resolver: str | None = None,
    stack_yaml: str | None = None,
) -> list[str]:
    """``stack build --copy-compiler-tool`` for the pinned worker version."""
    argv = stack_prefix(stack_executable, stack_yaml) + [
        "build",
        "--copy-compiler-tool",
        f"{worker_package}-{worker_version}",
    ]
    argv += list(extra_packages)
    if resolver:
        argv += ["--resolver", resolver]
    return argv


def ghc_version_arguments(stack_executable: str, stack_yaml: str | None = None) -> list[str]:
    return stack_prefix(stack_executable, stack_yaml) + ["ghc", "--", "--numeric-version"]


def supported_extensions_arguments(
    stack_executable: str, stack_yaml: str | None = None
) -> list[str]:
    return stack_prefix(stack_executable, stack_yaml) + [
        "exec",
        "--verbosity",
        "silent",
        "--",
        "ghc",
        "--supported-extensions",
    ]
