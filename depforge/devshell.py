"""Development shell derived from the same toolchain and manifest as the build."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Protocol, Sequence
import logging
import os
import shlex
import shutil

from core.command_runner import CommandRunner

from .errors import ToolchainUnavailable
from .manifest import ProjectManifest
from .native import NativeLibraryResolver, join_search_path, library_variables, resolve_library_dirs, unique_paths
from .platforms import PlatformId
from .toolchains import Toolchain, ToolchainSpec

logger = logging.getLogger(__name__)


class ShellToolchainProvider(Protocol):
    def resolve(self, spec: ToolchainSpec, platform: PlatformId) -> Toolchain:
        ...


@dataclass(frozen=True, slots=True)
class ShellTool:
    name: str
    path: Path


@dataclass(slots=True)
class DevEnvironment:
    name: str
    platform: PlatformId
    tools: List[ShellTool] = field(default_factory=list)
    library_path: List[Path] = field(default_factory=list)
    variables: Dict[str, str] = field(default_factory=dict)

    def render_exports(self) -> str:
        return "\n".join(f"export {key}={shlex.quote(value)}" for key, value in sorted(self.variables.items()))


class DevEnvironmentProvisioner:
    """Builds a :class:`DevEnvironment` for interactive use.

    Native libraries go through the same resolution as the build stages;
    their directories are also put on the platform's runtime library search
    variable so binaries linked at build time load at run time.
    Nothing is cached; each call inspects the host again.
    """

    def __init__(
        self,
        *,
        toolchains: ShellToolchainProvider,
        libraries: NativeLibraryResolver,
        base_environment: Mapping[str, str] | None = None,
    ) -> None:
        self._toolchains = toolchains
        self._libraries = libraries
        self._base = dict(os.environ if base_environment is None else base_environment)

    def _resolve_tool(self, tool: str, toolchain: Toolchain, platform: PlatformId) -> ShellTool:
        candidate = toolchain.bin_path / tool
        if candidate.is_file():
            return ShellTool(name=tool, path=candidate)
        found = shutil.which(tool, path=self._base.get("PATH", ""))
        if found is None:
            raise ToolchainUnavailable(f"Shell tool '{tool}' was not found", platform=str(platform), stage="shell")
        return ShellTool(name=tool, path=Path(found))

    def provision(self, platform: PlatformId, spec: ToolchainSpec, manifest: ProjectManifest) -> DevEnvironment:
        toolchain = self._toolchains.resolve(spec, platform)
        shell = manifest.shell
        name = shell.name if shell else f"{manifest.name}-shell"

        tools = [ShellTool(name=spec.name, path=toolchain.bin_path)]
        for tool in shell.tools if shell else []:
            tools.append(self._resolve_tool(tool, toolchain, platform))

        library_dirs = resolve_library_dirs(self._libraries, manifest.native, platform)
        tool_dirs = unique_paths([toolchain.bin_path, *(tool.path if tool.path.is_dir() else tool.path.parent for tool in tools[1:])])
        variables = {key: value for key, value in toolchain.environment().items() if key != "PATH"}
        if shell:
            variables.update(shell.environment)
        variables.update(library_variables(library_dirs, platform, self._base))

        if platform.runtime_library_variable == "PATH":
            variables["PATH"] = join_search_path([*tool_dirs, *library_dirs], self._base.get("PATH"))
        else:
            variables["PATH"] = join_search_path(tool_dirs, self._base.get("PATH"))

        variables["DEPFORGE_SHELL"] = name
        variables["DEPFORGE_PLATFORM"] = str(platform)
        logger.debug("Provisioned %s with %d tools and %d library directories", name, len(tools), len(library_dirs))
        return DevEnvironment(name=name, platform=platform, tools=tools, library_path=library_dirs, variables=variables)


def enter_shell(
    environment: DevEnvironment,
    runner: CommandRunner,
    *,
    command: Sequence[str] | None = None,
    shell: str | None = None,
) -> int:
    """Run ``command`` (or an interactive shell) inside ``environment``; returns its exit code."""

    argv = list(command) if command else [shell or os.environ.get("SHELL") or "/bin/sh"]
    result = runner.run(argv, env=environment.variables, check=False, stream=True, note=environment.name)
    return result.returncode


__all__ = [
    "DevEnvironment",
    "DevEnvironmentProvisioner",
    "ShellTool",
    "enter_shell",
]
