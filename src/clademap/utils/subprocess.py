from __future__ import annotations

import logging
import os
import re
import shlex
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: list[str]
    returncode: int
    stdout: str
    stderr: str
    dry_run: bool


class CommandExecutionError(RuntimeError):
    def __init__(self, message: str, *, returncode: int | None = None, stderr: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CommandTimeoutError(CommandExecutionError):
    pass


def shell_join(command: Sequence[str]) -> str:
    return shlex.join(list(command))


def split_args(raw: str) -> list[str]:
    """Split a passthrough option string into argv tokens."""

    return shlex.split(raw) if raw.strip() else []


def is_transient_failure(exc: CommandExecutionError, patterns: Iterable[str]) -> bool:
    """True when a failed command looks like resource contention rather than bad input."""

    if isinstance(exc, CommandTimeoutError):
        return False
    if exc.returncode is not None and exc.returncode < 0:
        # killed by a signal, e.g. the OOM killer
        return True
    text = exc.stderr or str(exc)
    return any(re.search(pattern, text, flags=re.IGNORECASE) for pattern in patterns)


def run_command(
    command: Sequence[str],
    *,
    dry_run: bool = False,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    check: bool = True,
    timeout: float | None = None,
    logger: logging.Logger | None = None,
) -> CommandResult:
    command_list = list(command)
    cmd_text = shell_join(command_list)

    if logger is not None:
        logger.debug("Executing command: %s", cmd_text)

    if dry_run:
        return CommandResult(command=command_list, returncode=0, stdout="", stderr="", dry_run=True)

    env_payload: Mapping[str, str] | None
    if env is not None:
        env_payload = dict(os.environ)
        env_payload.update(env)
    else:
        env_payload = None

    try:
        completed = subprocess.run(
            command_list,
            cwd=str(cwd) if cwd is not None else None,
            env=env_payload,
            capture_output=True,
            text=True,
            errors="replace",
            check=False,
            timeout=timeout,
        )
    except OSError as exc:
        raise CommandExecutionError(
            f"Could not execute {cmd_text}: {exc}",
            returncode=None,
            stderr=str(exc),
        ) from exc
    except subprocess.TimeoutExpired as exc:
        raise CommandTimeoutError(
            f"Command timed out after {timeout:g}s: {cmd_text}",
            returncode=None,
            stderr=str(exc.stderr or ""),
        ) from exc

    result = CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
        dry_run=False,
    )

    if check and completed.returncode != 0:
        raise CommandExecutionError(
            f"Command failed with exit code {completed.returncode}: {cmd_text}\n{completed.stderr.strip()}",
            returncode=completed.returncode,
            stderr=completed.stderr,
        )

    return result
