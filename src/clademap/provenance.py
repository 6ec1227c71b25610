from __future__ import annotations

import subprocess
import sys
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence

from clademap import __version__
from clademap.utils.io import write_json

PROVENANCE_NAME = "clademap_run.json"


@dataclass(slots=True)
class RunManifest:
    command: str
    argv: list[str]
    started_at: str
    ended_at: str | None
    status: str
    cwd: str
    outdir: str
    dry_run: bool
    threads: int
    config_path: str | None
    git_commit: str | None
    versions: dict[str, str]
    input_paths: list[str]
    reference: str | None = None
    stage_window: list[str] = field(default_factory=list)
    tool_paths: dict[str, str] = field(default_factory=dict)
    tool_versions: dict[str, str] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    stages: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _package_version(package_name: str) -> str:
    try:
        return version(package_name)
    except PackageNotFoundError:
        return "unknown"


def _detect_git_commit(cwd: Path) -> str | None:
    try:
        process = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=cwd,
            check=True,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.CalledProcessError):
        return None
    return process.stdout.strip() or None


def create_run_manifest(
    *,
    command: str,
    argv: Sequence[str],
    outdir: Path,
    dry_run: bool,
    threads: int,
    config_path: Path | None,
    input_paths: Iterable[Path | None],
    reference: str | None = None,
    stage_window: Sequence[str] = (),
    tool_paths: Mapping[str, str] | None = None,
    tool_versions: Mapping[str, str] | None = None,
    parameters: Mapping[str, Any] | None = None,
) -> RunManifest:
    return RunManifest(
        command=command,
        argv=list(argv),
        started_at=_utcnow_iso(),
        ended_at=None,
        status="running",
        cwd=str(Path.cwd()),
        outdir=str(outdir),
        dry_run=dry_run,
        threads=threads,
        config_path=str(config_path) if config_path is not None else None,
        git_commit=_detect_git_commit(Path.cwd()),
        versions={
            "clademap": __version__,
            "python": sys.version.split()[0],
            "typer": _package_version("typer"),
            "pydantic": _package_version("pydantic"),
            "rich": _package_version("rich"),
            "biopython": _package_version("biopython"),
        },
        input_paths=[str(path) for path in input_paths if path is not None],
        reference=reference,
        stage_window=list(stage_window),
        tool_paths=dict(tool_paths or {}),
        tool_versions=dict(tool_versions or {}),
        parameters=dict(parameters or {}),
    )


def finalize_manifest(
    manifest: RunManifest,
    *,
    status: str,
    stages: Sequence[Mapping[str, Any]] = (),
    error: str | None = None,
) -> RunManifest:
    manifest.status = status
    manifest.ended_at = _utcnow_iso()
    manifest.stages = [dict(stage) for stage in stages]
    manifest.error = error
    return manifest


def write_manifest(outdir: Path, manifest: RunManifest) -> Path:
    return write_json(outdir / PROVENANCE_NAME, asdict(manifest), force=True)
