from __future__ import annotations

import logging
from pathlib import Path
from typing import Mapping, Sequence

from clademap.utils.subprocess import CommandResult, run_command


class ToolRunner:
    """Base abstraction for external tools with dry-run aware execution."""

    def __init__(
        self,
        executable: str | Path,
        *,
        timeout: float | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.executable = str(executable)
        self.timeout = timeout
        self.logger = logger

    def command(self, args: Sequence[str | Path]) -> list[str]:
        return [self.executable, *[str(arg) for arg in args]]

    def run(
        self,
        args: Sequence[str | Path],
        *,
        dry_run: bool = False,
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
        check: bool = True,
    ) -> CommandResult:
        return run_command(
            self.command(args),
            dry_run=dry_run,
            cwd=cwd,
            env=env,
            check=check,
            timeout=self.timeout,
            logger=self.logger,
        )

    def version(self, *, dry_run: bool = False) -> str:
        result = self.run(["--version"], dry_run=dry_run, check=False)
        version_line = result.stdout.strip() or result.stderr.strip()
        return version_line.splitlines()[0] if version_line else "unknown"
