"""External tool runner adapters."""

from __future__ import annotations

from dataclasses import dataclass

from clademap.environment import ToolPaths
from clademap.logging import get_logger
from clademap.runners.diamond import DiamondRunner
from clademap.runners.iqtree import IqtreeRunner
from clademap.runners.mafft import MafftRunner
from clademap.runners.trimal import TrimalRunner


@dataclass(frozen=True, slots=True)
class ToolSuite:
    diamond: DiamondRunner
    mafft: MafftRunner
    trimal: TrimalRunner
    iqtree: IqtreeRunner

    @classmethod
    def from_paths(cls, paths: ToolPaths, *, timeout: float | None = None) -> "ToolSuite":
        logger = get_logger("clademap.runners")
        return cls(
            diamond=DiamondRunner(paths.diamond.path, timeout=timeout, logger=logger),
            mafft=MafftRunner(paths.mafft.path, timeout=timeout, logger=logger),
            trimal=TrimalRunner(paths.trimal.path, timeout=timeout, logger=logger),
            iqtree=IqtreeRunner(paths.iqtree.path, timeout=timeout, logger=logger),
        )


__all__ = [
    "DiamondRunner",
    "IqtreeRunner",
    "MafftRunner",
    "ToolSuite",
    "TrimalRunner",
]
