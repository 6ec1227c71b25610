from __future__ import annotations

import threading
from pathlib import Path
from types import SimpleNamespace

import pytest

from clademap.config import RunConfig
from clademap.exceptions import FamilyProcessingError, StageCancelledError
from clademap.paths import create_output_layout
from clademap.pipeline.family import FamilySteps
from clademap.runners.mafft import MafftRunner
from clademap.utils.subprocess import CommandExecutionError


def _steps(tmp_path: Path) -> FamilySteps:
    cfg = RunConfig(outdir=tmp_path, transient_patterns=["resource temporarily unavailable"])
    return FamilySteps(tools=None, cfg=cfg, layout=create_output_layout(tmp_path))


class FlakyAction:
    def __init__(self, errors: list[CommandExecutionError]) -> None:
        self.errors = errors
        self.calls = 0

    def __call__(self) -> str:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return "done"


def _transient() -> CommandExecutionError:
    return CommandExecutionError("failed", returncode=1, stderr="fork: Resource temporarily unavailable")


def test_transient_failure_is_retried_once(tmp_path: Path) -> None:
    action = FlakyAction([_transient()])

    assert _steps(tmp_path).attempt("family_000001", "align", action, threading.Event()) == "done"
    assert action.calls == 2


def test_non_transient_failure_is_not_retried(tmp_path: Path) -> None:
    action = FlakyAction([CommandExecutionError("failed", returncode=1, stderr="invalid input")])

    with pytest.raises(FamilyProcessingError) as excinfo:
        _steps(tmp_path).attempt("family_000001", "align", action, threading.Event())

    assert action.calls == 1
    assert excinfo.value.transient is False
    assert excinfo.value.step == "align"


def test_repeated_transient_failure_gives_up(tmp_path: Path) -> None:
    action = FlakyAction([_transient(), _transient()])

    with pytest.raises(FamilyProcessingError) as excinfo:
        _steps(tmp_path).attempt("family_000001", "tree_inference", action, threading.Event())

    assert action.calls == 2
    assert excinfo.value.transient is True


def test_cancelled_stage_skips_the_action(tmp_path: Path) -> None:
    cancel = threading.Event()
    cancel.set()
    action = FlakyAction([])

    with pytest.raises(StageCancelledError):
        _steps(tmp_path).attempt("family_000001", "align", action, cancel)

    assert action.calls == 0


def test_os_error_becomes_a_fatal_family_failure(tmp_path: Path) -> None:
    def action() -> str:
        raise PermissionError(13, "Permission denied", str(tmp_path / "alignment.fasta"))

    with pytest.raises(FamilyProcessingError) as excinfo:
        _steps(tmp_path).attempt("family_000001", "trim", action, threading.Event())

    assert excinfo.value.step == "trim"
    assert excinfo.value.transient is False


def test_unexecutable_aligner_fails_only_its_family(tmp_path: Path) -> None:
    aligner = tmp_path / "mafft"
    aligner.write_bytes(b"\x7fnot a real binary\xff\xfe\n")
    aligner.chmod(0o755)
    sequences = tmp_path / "sequences.faa"
    sequences.write_text(">A__000001\nMKV\n", encoding="utf-8")
    cfg = RunConfig(outdir=tmp_path)
    steps = FamilySteps(
        tools=SimpleNamespace(mafft=MafftRunner(aligner)),
        cfg=cfg,
        layout=create_output_layout(tmp_path),
    )

    with pytest.raises(FamilyProcessingError) as excinfo:
        steps.align("family_000001", sequences, threading.Event())

    assert excinfo.value.family_id == "family_000001"
    assert excinfo.value.step == "align"
    assert excinfo.value.transient is False
    assert "Could not execute" in excinfo.value.message
