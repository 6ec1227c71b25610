"""Path-addressed artifact store backing stage boundaries.

A stage is complete once `<outdir>/<stage>/artifacts.tsv` exists. That file
lists every artifact the stage produced (relative path plus SHA-256) and is
written last, after `failures.tsv`, so a partially written stage never looks
complete.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from clademap.exceptions import MissingPrerequisiteError
from clademap.paths import OutputLayout, relative_path
from clademap.pipeline.stages import Stage
from clademap.utils.io import read_tsv_rows, sha256_file, write_tsv

MANIFEST_NAME = "artifacts.tsv"
FAILURES_NAME = "failures.tsv"
STAGE_UNIT = "*"
MANIFEST_HEADER = ("unit_id", "kind", "path", "sha256")
FAILURES_HEADER = ("unit_id", "step", "transient", "message")


@dataclass(frozen=True, slots=True)
class Artifact:
    unit_id: str
    kind: str
    path: Path


@dataclass(frozen=True, slots=True)
class UnitFailure:
    unit_id: str
    step: str
    transient: bool
    message: str


class ArtifactStore:
    def __init__(self, layout: OutputLayout) -> None:
        self.layout = layout

    def stage_dir(self, stage: Stage) -> Path:
        return self.layout.stage_dir(stage.value)

    def manifest_path(self, stage: Stage) -> Path:
        return self.stage_dir(stage) / MANIFEST_NAME

    def failures_path(self, stage: Stage) -> Path:
        return self.stage_dir(stage) / FAILURES_NAME

    def is_complete(self, stage: Stage) -> bool:
        return self.manifest_path(stage).is_file()

    def invalidate(self, stage: Stage) -> None:
        for path in (self.manifest_path(stage), self.failures_path(stage)):
            path.unlink(missing_ok=True)

    def record(
        self,
        stage: Stage,
        artifacts: Iterable[Artifact],
        failures: Iterable[UnitFailure] = (),
    ) -> Path:
        failure_rows = sorted(
            ([failure.unit_id, failure.step, "1" if failure.transient else "0", failure.message.replace("\n", " ")]
             for failure in failures),
            key=lambda row: (row[0], row[1]),
        )
        write_tsv(self.failures_path(stage), FAILURES_HEADER, failure_rows, force=True)

        manifest_rows = sorted(
            (
                [artifact.unit_id, artifact.kind, relative_path(self.layout, artifact.path), sha256_file(artifact.path)]
                for artifact in artifacts
            ),
            key=lambda row: (row[0], row[1]),
        )
        return write_tsv(self.manifest_path(stage), MANIFEST_HEADER, manifest_rows, force=True)

    def _resolve(self, raw_path: str) -> Path:
        path = Path(raw_path)
        return path if path.is_absolute() else self.layout.root / path

    def load(self, stage: Stage, *, consumer: Stage, verify: bool = True) -> list[Artifact]:
        """Artifacts of a completed stage, validated for the consuming stage."""

        manifest = self.manifest_path(stage)
        if not manifest.is_file():
            raise MissingPrerequisiteError(consumer.value, manifest, f"`{stage.value}` artifact manifest missing")

        artifacts: list[Artifact] = []
        for row in read_tsv_rows(manifest):
            path = self._resolve(row["path"])
            if not path.is_file():
                raise MissingPrerequisiteError(consumer.value, path, f"`{stage.value}` artifact missing")
            if verify and row.get("sha256") and sha256_file(path) != row["sha256"]:
                raise MissingPrerequisiteError(consumer.value, path, f"`{stage.value}` artifact changed since it was recorded")
            artifacts.append(Artifact(unit_id=row["unit_id"], kind=row["kind"], path=path))
        return artifacts

    def load_failures(self, stage: Stage) -> list[UnitFailure]:
        path = self.failures_path(stage)
        if not path.is_file():
            return []
        return [
            UnitFailure(
                unit_id=row["unit_id"],
                step=row["step"],
                transient=row["transient"] == "1",
                message=row["message"],
            )
            for row in read_tsv_rows(path)
        ]


def by_kind(artifacts: Sequence[Artifact], kind: str) -> dict[str, Path]:
    return {artifact.unit_id: artifact.path for artifact in artifacts if artifact.kind == kind}


def single(
    artifacts: Sequence[Artifact],
    kind: str,
    *,
    stage: Stage,
    consumer: Stage,
    unit_id: str = STAGE_UNIT,
) -> Path:
    matches = [artifact.path for artifact in artifacts if artifact.kind == kind and artifact.unit_id == unit_id]
    if len(matches) != 1:
        raise MissingPrerequisiteError(
            consumer.value,
            f"{stage.value}/{MANIFEST_NAME} ({kind})",
            f"expected exactly one `{kind}` artifact, found {len(matches)}",
        )
    return matches[0]
