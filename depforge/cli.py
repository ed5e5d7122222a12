"""Command line interface for depforge."""
from __future__ import annotations

from argparse import REMAINDER, ArgumentParser, Namespace
from pathlib import Path
from typing import Iterable, List
import logging
import os
import sys

from core.command_runner import RecordingCommandRunner, SubprocessCommandRunner

from .artifact_store import ArtifactStore, CacheKey
from .config_loader import ConfigurationStore
from .dependency_cache import dependency_fingerprint
from .devshell import DevEnvironmentProvisioner, enter_shell
from .errors import ConfigurationError, DepforgeError
from .logging_setup import configure_logging
from .matrix import PlatformMatrixEvaluator
from .native import ChainedResolver, NativeEnvironment, NativeLibraryResolver, PkgConfigResolver, SearchPathResolver
from .platforms import PlatformId, host_platform, parse_platforms
from .toolchains import ToolchainResolver

logger = logging.getLogger(__name__)

DEFAULT_LIBRARY_DIRS = (
    Path("/usr/local/lib"),
    Path("/usr/lib"),
    Path("/usr/lib64"),
    Path("/usr/lib/x86_64-linux-gnu"),
    Path("/usr/lib/aarch64-linux-gnu"),
    Path("/opt/homebrew/lib"),
)


def _config_directories(workspace: Path, cli_values: Iterable[str]) -> List[Path]:
    """``<workspace>/config``, then ``DEPFORGE_CONFIG_DIR`` entries, then ``-C`` values.

    Each value may hold several paths joined with :data:`os.pathsep`;
    relative paths are taken from the workspace. Later directories win.
    """

    raw_values = [os.environ.get("DEPFORGE_CONFIG_DIR", ""), *cli_values]
    directories = [workspace / "config"]
    for raw in raw_values:
        directories.extend(workspace / entry.strip() for entry in raw.split(os.pathsep) if entry.strip())
    return directories


def _load_configuration_store(args: Namespace, workspace: Path) -> ConfigurationStore:
    directories = _config_directories(workspace, getattr(args, "config_dirs", []))
    store = ConfigurationStore.from_directories(workspace, directories)
    configure_logging(store.global_config, verbose=getattr(args, "verbose", False), root=workspace)
    return store


def _selected_platforms(args: Namespace, store: ConfigurationStore) -> List[PlatformId]:
    requested = getattr(args, "platforms", None) or []
    return parse_platforms(requested) if requested else list(store.global_config.platforms)


def _library_resolver() -> NativeLibraryResolver:
    # Lookups only inspect the host, so they run even during a dry run.
    return ChainedResolver(
        [
            PkgConfigResolver(SubprocessCommandRunner(), host=host_platform()),
            SearchPathResolver(DEFAULT_LIBRARY_DIRS),
        ]
    )


def _parse_arguments(argv: Iterable[str]) -> Namespace:
    parser = ArgumentParser(prog="depforge", description="Reproducible multi-platform builds with a dependency cache")
    parser.add_argument(
        "-C",
        "--config-dir",
        dest="config_dirs",
        action="append",
        default=[],
        metavar="PATH",
        help="Additional configuration directory (repeat or separate with PATH separator)",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    build_parser = subparsers.add_parser("build", help="Build the project for each target platform")
    build_parser.add_argument(
        "-p",
        "--platform",
        dest="platforms",
        action="append",
        default=[],
        help="Platform(s) to build (comma-separated); defaults to the configured matrix",
    )
    build_parser.add_argument("-T", "--toolchain", help="Use a different configured toolchain")
    build_parser.add_argument("-j", "--jobs", type=int, help="Number of platforms built in parallel")
    build_parser.add_argument("-n", "--dry-run", action="store_true", help="Print commands without executing them")
    build_parser.add_argument("--no-cache", action="store_true", help="Recompile dependencies even on a cache hit")

    shell_parser = subparsers.add_parser("shell", help="Enter a development shell matching the build environment")
    shell_parser.add_argument("-p", "--platform", help="Platform to provision for; defaults to the host")
    shell_parser.add_argument("-T", "--toolchain", help="Use a different configured toolchain")
    shell_parser.add_argument("--print", dest="print_only", action="store_true", help="Print export statements instead of starting a shell")
    shell_parser.add_argument("command_args", nargs=REMAINDER, metavar="COMMAND", help="Command to run inside the shell")

    fingerprint_parser = subparsers.add_parser("fingerprint", help="Show the dependency fingerprint and cache keys")
    fingerprint_parser.add_argument("-p", "--platform", dest="platforms", action="append", default=[])
    fingerprint_parser.add_argument("-T", "--toolchain", help="Use a different configured toolchain")

    subparsers.add_parser("validate", help="Validate configuration files")

    cache_parser = subparsers.add_parser("cache", help="Inspect the dependency artifact store")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command", required=True)
    cache_subparsers.add_parser("list", help="List stored dependency artifact sets")

    return parser.parse_args(list(argv))


def main(argv: Iterable[str] | None = None) -> int:
    args = _parse_arguments(sys.argv[1:] if argv is None else argv)
    workspace = Path.cwd()

    handlers = {
        "build": _handle_build,
        "shell": _handle_shell,
        "fingerprint": _handle_fingerprint,
        "validate": _handle_validate,
        "cache": _handle_cache,
    }
    handler = handlers.get(args.command)
    if handler is None:
        raise ValueError(f"Unknown command: {args.command}")
    try:
        return handler(args, workspace)
    except ConfigurationError as exc:
        print(f"Error: {exc.message}")
        return 2


def _handle_build(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    platforms = _selected_platforms(args, store)
    spec = store.toolchain_spec(args.toolchain)

    runner: RecordingCommandRunner | SubprocessCommandRunner = (
        RecordingCommandRunner() if args.dry_run else SubprocessCommandRunner()
    )
    artifact_store = ArtifactStore(store.store_dir)
    evaluator = PlatformMatrixEvaluator(
        spec=spec,
        manifest=store.manifest,
        source_root=store.source_root,
        store=artifact_store,
        runner=runner,
        toolchains=ToolchainResolver(store.store_dir, runner, locks=artifact_store.locks),
        output_root=store.output_dir,
        native=NativeEnvironment(_library_resolver()),
        jobs=args.jobs or store.global_config.jobs,
        use_cache=not args.no_cache,
    )

    logger.info(
        "Building %s %s for %s with %s %s",
        store.manifest.name,
        store.manifest.version,
        ", ".join(str(platform) for platform in platforms),
        spec.name,
        spec.version,
    )
    report = evaluator.evaluate(platforms)

    if isinstance(runner, RecordingCommandRunner):
        for line in runner.iter_formatted(workspace=workspace):
            print(line)

    for line in report.lines():
        print(line)
    if not report.ok:
        print(f"{len(report.failed)} of {len(report.results)} platform(s) failed")
        return 1
    return 0


def _handle_shell(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    spec = store.toolchain_spec(args.toolchain)
    platform = PlatformId.parse(args.platform) if args.platform else host_platform()

    runner = SubprocessCommandRunner()
    provisioner = DevEnvironmentProvisioner(
        toolchains=ToolchainResolver(store.store_dir, runner),
        libraries=_library_resolver(),
    )
    try:
        environment = provisioner.provision(platform, spec, store.manifest)
    except DepforgeError as exc:
        print(f"Error: {exc}")
        if exc.diagnostic:
            print(f"  {exc.diagnostic}")
        return 1

    if args.print_only:
        print(environment.render_exports())
        return 0

    command = [part for part in args.command_args if part != "--"]
    return enter_shell(environment, runner, command=command or None, shell=store.global_config.shell)


def _handle_fingerprint(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    spec = store.toolchain_spec(args.toolchain)
    dependencies = store.manifest.dependencies
    fingerprint = dependency_fingerprint(dependencies)
    print(f"fingerprint: {fingerprint} ({len(dependencies)} dependencies)")
    print(f"toolchain:   {spec.name} {spec.version} ({spec.identity})")
    artifact_store = ArtifactStore(store.store_dir)
    for platform in _selected_platforms(args, store):
        if not spec.supports(platform):
            print(f"  {platform}: unsupported by toolchain")
            continue
        key = CacheKey(platform=str(platform), toolchain=spec.identity, fingerprint=fingerprint)
        state = "cached" if artifact_store.contains(key) else "missing"
        print(f"  {platform}: {key} [{state}]")
    return 0


def _handle_validate(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    errors = store.validate()
    if errors:
        print("Validation failed:")
        for message in errors:
            print(f"  {message}")
        return 1
    print("Validation successful")
    return 0


def _handle_cache(args: Namespace, workspace: Path) -> int:
    store = _load_configuration_store(args, workspace)
    artifact_store = ArtifactStore(store.store_dir)
    entries = list(artifact_store.entries())
    if not entries:
        print("No cached dependency artifacts")
        return 0

    rows = []
    for entry in entries:
        key = entry.get("key", {})
        rows.append(
            {
                "Platform": str(key.get("platform", "-")),
                "Toolchain": str(key.get("toolchain", "-")),
                "Fingerprint": str(key.get("fingerprint", "-"))[:16],
                "Files": str(len(entry.get("files", []))),
                "Created": str(entry.get("created_at", "-")),
            }
        )

    headers = ["Platform", "Toolchain", "Fingerprint", "Files", "Created"]
    widths = {header: max(len(header), *(len(row[header]) for row in rows)) for header in headers}

    def _format(row: dict[str, str]) -> str:
        return "  ".join(row.get(header, "").ljust(widths[header]) for header in headers).rstrip()

    print(_format({header: header for header in headers}))
    print("  ".join("-" * widths[header] for header in headers))
    for row in rows:
        print(_format(row))
    return 0


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())
