from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from clademap.exceptions import ExecutableNotFoundError
from clademap.logging import get_logger


@dataclass(frozen=True, slots=True)
class ToolSpec:
    name: str
    env_var: str
    executables: tuple[str, ...]


REQUIRED_TOOLS: tuple[ToolSpec, ...] = (
    ToolSpec(name="diamond", env_var="DIAMOND_PATH", executables=("diamond",)),
    ToolSpec(name="mafft", env_var="MAFFT_PATH", executables=("mafft",)),
    ToolSpec(name="trimal", env_var="TRIMAL_PATH", executables=("trimal",)),
    ToolSpec(name="iqtree", env_var="IQTREE_PATH", executables=("iqtree2", "iqtree")),
)


@dataclass(frozen=True, slots=True)
class ResolvedTool:
    name: str
    path: Path
    source: str


@dataclass(frozen=True, slots=True)
class ToolPaths:
    diamond: ResolvedTool
    mafft: ResolvedTool
    trimal: ResolvedTool
    iqtree: ResolvedTool

    def as_dict(self) -> dict[str, str]:
        return {tool.name: str(tool.path) for tool in (self.diamond, self.mafft, self.trimal, self.iqtree)}


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def resolve_tool(spec: ToolSpec, environ: Mapping[str, str] | None = None) -> ResolvedTool:
    """Resolve one tool from its environment variable directory, then from PATH."""

    env = os.environ if environ is None else environ
    override_dir = env.get(spec.env_var, "").strip()
    if override_dir:
        for executable in spec.executables:
            candidate = Path(override_dir).expanduser() / executable
            if _is_executable(candidate):
                return ResolvedTool(name=spec.name, path=candidate, source=spec.env_var)

    search_path = env.get("PATH") if environ is not None else None
    for executable in spec.executables:
        found = shutil.which(executable, path=search_path)
        if found is not None:
            return ResolvedTool(name=spec.name, path=Path(found), source="PATH")

    raise ExecutableNotFoundError(spec.name, spec.env_var, spec.executables)


def resolve_tools(environ: Mapping[str, str] | None = None) -> ToolPaths:
    """Resolve all four external executables; fail on the first missing one."""

    logger = get_logger("clademap.environment")
    resolved: dict[str, ResolvedTool] = {}
    for spec in REQUIRED_TOOLS:
        tool = resolve_tool(spec, environ)
        logger.debug("Resolved %s -> %s (via %s)", tool.name, tool.path, tool.source)
        resolved[spec.name] = tool
    return ToolPaths(**resolved)
