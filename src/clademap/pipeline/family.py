from __future__ import annotations

import shutil
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Sequence, TypeVar

from clademap.analysis.sequences import FastaRecord, read_fasta_records
from clademap.config import RunConfig
from clademap.exceptions import FamilyProcessingError
from clademap.logging import get_logger
from clademap.paths import OutputLayout, family_dir
from clademap.pipeline.pool import check_cancelled
from clademap.runners import ToolSuite
from clademap.runners.iqtree import parse_best_model, treefile_path
from clademap.utils.io import ensure_dir, write_text
from clademap.utils.subprocess import CommandExecutionError, is_transient_failure

T = TypeVar("T")

MAX_ATTEMPTS = 2


@dataclass(frozen=True, slots=True)
class FamilyPaths:
    root: Path
    sequences: Path
    alignment: Path
    trimmed: Path
    model_prefix: Path
    model_label: Path
    tree_prefix: Path

    @property
    def treefile(self) -> Path:
        return treefile_path(self.tree_prefix)


def family_paths(layout: OutputLayout, family_id: str) -> FamilyPaths:
    root = family_dir(layout, family_id)
    return FamilyPaths(
        root=root,
        sequences=root / "sequences.faa",
        alignment=root / "alignment.fasta",
        trimmed=root / "trimmed.fasta",
        model_prefix=root / "model",
        model_label=root / "model.txt",
        tree_prefix=root / "tree",
    )


def _short_message(exc: Exception) -> str:
    lines = [line.strip() for line in str(exc).splitlines() if line.strip()]
    if not lines:
        return type(exc).__name__
    if len(lines) == 1:
        return lines[0]
    return f"{lines[0]} ({lines[-1]})"


class FamilySteps:
    """External-tool steps for one gene family, each retried once when transient."""

    def __init__(self, tools: ToolSuite, cfg: RunConfig, layout: OutputLayout) -> None:
        self.tools = tools
        self.cfg = cfg
        self.layout = layout
        self.logger = get_logger("clademap.pipeline.family")

    def paths(self, family_id: str) -> FamilyPaths:
        return family_paths(self.layout, family_id)

    def attempt(
        self,
        family_id: str,
        step: str,
        action: Callable[[], T],
        cancel: threading.Event,
    ) -> T:
        for attempt in range(1, MAX_ATTEMPTS + 1):
            check_cancelled(cancel, family_id)
            try:
                return action()
            except CommandExecutionError as exc:
                transient = is_transient_failure(exc, self.cfg.transient_patterns)
                if transient and attempt < MAX_ATTEMPTS:
                    self.logger.warning(
                        "%s: transient %s failure, retrying (%s)", family_id, step, _short_message(exc)
                    )
                    continue
                raise FamilyProcessingError(family_id, step, _short_message(exc), transient=transient) from exc
            except OSError as exc:
                raise FamilyProcessingError(family_id, step, _short_message(exc)) from exc
        raise AssertionError("unreachable")

    def _read_records(self, family_id: str, step: str, path: Path) -> list[FastaRecord]:
        try:
            return read_fasta_records(path)
        except (OSError, UnicodeDecodeError) as exc:
            raise FamilyProcessingError(family_id, step, f"unreadable alignment {path}: {exc}") from exc

    def align(self, family_id: str, sequences: Path, cancel: threading.Event) -> tuple[Path, Path]:
        paths = self.paths(family_id)
        ensure_dir(paths.root)

        self.attempt(
            family_id,
            "align",
            lambda: self.tools.mafft.align(
                input_fasta=sequences,
                output_fasta=paths.alignment,
                threads=1,
                extra_args=self.cfg.mafft.passthrough(),
            ),
            cancel,
        )
        if not self._read_records(family_id, "align", paths.alignment):
            raise FamilyProcessingError(family_id, "align", f"aligner produced no sequences: {paths.alignment}")

        if self.cfg.trimal.mode == "none":
            self.attempt(family_id, "trim", lambda: shutil.copyfile(paths.alignment, paths.trimmed), cancel)
        else:
            self.attempt(
                family_id,
                "trim",
                lambda: self.tools.trimal.trim(
                    input_fasta=paths.alignment,
                    output_fasta=paths.trimmed,
                    mode=self.cfg.trimal.mode,
                    extra_args=self.cfg.trimal.passthrough(),
                ),
                cancel,
            )

        if not paths.trimmed.is_file():
            raise FamilyProcessingError(family_id, "trim", f"trimmed alignment not written: {paths.trimmed}")
        records = self._read_records(family_id, "trim", paths.trimmed)
        if len(records) < 3 or all(len(record.sequence) == 0 for record in records):
            raise FamilyProcessingError(
                family_id, "trim", f"trimmed alignment too small to build a tree ({len(records)} sequences)"
            )
        return paths.alignment, paths.trimmed

    def select_model(self, family_id: str, trimmed: Path, cancel: threading.Event) -> Path:
        paths = self.paths(family_id)
        ensure_dir(paths.root)
        model_set = self.cfg.iqtree.model_set

        self.attempt(
            family_id,
            "model_selection",
            lambda: self.tools.iqtree.select_model(
                alignment=trimmed,
                prefix=paths.model_prefix,
                threads=1,
                model_set=model_set,
                extra_args=self.cfg.iqtree.model_passthrough(),
            ),
            cancel,
        )
        model = parse_best_model(paths.model_prefix)
        if model is None:
            raise FamilyProcessingError(
                family_id, "model_selection", f"no best-fit model reported under {paths.model_prefix}"
            )
        return write_text(paths.model_label, f"{model}\n", force=True)

    def infer_tree(self, family_id: str, trimmed: Path, model_label: Path, cancel: threading.Event) -> Path:
        paths = self.paths(family_id)
        try:
            model = model_label.read_text(encoding="utf-8").strip()
        except (OSError, UnicodeDecodeError) as exc:
            raise FamilyProcessingError(family_id, "tree_inference", f"unreadable model label: {exc}") from exc
        if not model:
            raise FamilyProcessingError(family_id, "tree_inference", f"empty model label: {model_label}")

        extra_args: Sequence[str] = self.cfg.iqtree.passthrough()
        self.attempt(
            family_id,
            "tree_inference",
            lambda: self.tools.iqtree.infer_tree(
                alignment=trimmed,
                prefix=paths.tree_prefix,
                model=model,
                bootstrap=self.cfg.iqtree.bootstrap,
                threads=1,
                extra_args=extra_args,
            ),
            cancel,
        )
        if not paths.treefile.is_file():
            raise FamilyProcessingError(family_id, "tree_inference", f"tree file not written: {paths.treefile}")
        return paths.treefile
