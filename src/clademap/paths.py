from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

STAGE_DIR_NAMES = (
    "translation",
    "clustering",
    "alignment",
    "model_selection",
    "tree_inference",
    "taxa_analysis",
    "block_analysis",
)


@dataclass(frozen=True, slots=True)
class OutputLayout:
    root: Path
    families_dir: Path
    provenance_path: Path

    def stage_dir(self, stage_name: str) -> Path:
        return self.root / stage_name


def sanitize_identifier(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned.strip("_") or "unknown"


def create_output_layout(outdir: Path) -> OutputLayout:
    root = outdir
    families_dir = root / "families"

    for path in (root, families_dir, *(root / name for name in STAGE_DIR_NAMES)):
        path.mkdir(parents=True, exist_ok=True)

    return OutputLayout(
        root=root,
        families_dir=families_dir,
        provenance_path=root / "clademap_run.json",
    )


def family_dir(layout: OutputLayout, family_id: str) -> Path:
    return layout.families_dir / sanitize_identifier(family_id)


def relative_path(layout: OutputLayout, path: Path) -> str:
    """Path as stored in artifact manifests: relative to the output root when possible."""

    try:
        return path.resolve().relative_to(layout.root.resolve()).as_posix()
    except ValueError:
        return str(path.resolve())
