from __future__ import annotations

import sys
from pathlib import Path

import pytest

from clademap.runners import base
from clademap.runners.diamond import DiamondRunner
from clademap.runners.iqtree import IqtreeRunner, parse_best_model
from clademap.runners.mafft import MafftRunner
from clademap.runners.trimal import TrimalRunner
from clademap.utils.subprocess import (
    CommandExecutionError,
    CommandResult,
    CommandTimeoutError,
    is_transient_failure,
    run_command,
    split_args,
)


@pytest.fixture()
def captured(monkeypatch) -> list[list[str]]:
    calls: list[list[str]] = []

    def fake_run_command(command, **kwargs) -> CommandResult:
        calls.append(list(command))
        return CommandResult(command=list(command), returncode=0, stdout=">A__000001\nMK-V\n", stderr="", dry_run=False)

    monkeypatch.setattr(base, "run_command", fake_run_command)
    return calls


def test_diamond_blastp_arguments(captured, tmp_path: Path) -> None:
    runner = DiamondRunner("/opt/diamond")

    runner.blastp(
        query_faa=tmp_path / "all.faa",
        db_prefix=tmp_path / "db",
        output_tsv=tmp_path / "hits.tsv",
        threads=4,
        max_evalue=1e-5,
        max_target_seqs=500,
        sensitivity="more-sensitive",
        extra_args=["--masking", "0"],
    )

    command = captured[0]
    assert command[:2] == ["/opt/diamond", "blastp"]
    assert command[command.index("--outfmt") + 1 : command.index("--outfmt") + 8] == [
        "6",
        "qseqid",
        "sseqid",
        "pident",
        "length",
        "evalue",
        "bitscore",
    ]
    assert command[command.index("--evalue") + 1] == "1e-05"
    assert "--more-sensitive" in command
    assert command[-2:] == ["--masking", "0"]


def test_iqtree_model_selection_arguments(captured, tmp_path: Path) -> None:
    runner = IqtreeRunner("iqtree2")

    runner.select_model(alignment=tmp_path / "trimmed.fasta", prefix=tmp_path / "model", model_set="LG,WAG")
    runner.infer_tree(alignment=tmp_path / "trimmed.fasta", prefix=tmp_path / "tree", model="LG+G4", bootstrap=1000)

    select, infer = captured
    assert select[select.index("-m") + 1] == "MF"
    assert select[select.index("-mset") + 1] == "LG,WAG"
    assert infer[infer.index("-m") + 1] == "LG+G4"
    assert infer[infer.index("-B") + 1] == "1000"
    assert infer[infer.index("--prefix") + 1] == str(tmp_path / "tree")


def test_trimal_mode_flag(captured, tmp_path: Path) -> None:
    TrimalRunner("trimal").trim(input_fasta=tmp_path / "in.fasta", output_fasta=tmp_path / "out.fasta", mode="gappyout")

    assert captured[0][-2:] == ["-fasta", "-gappyout"]


def test_mafft_writes_stdout_to_output(captured, tmp_path: Path) -> None:
    output = tmp_path / "family" / "alignment.fasta"

    MafftRunner("mafft").align(input_fasta=tmp_path / "in.faa", output_fasta=output, extra_args=["--auto"])

    assert captured[0][:2] == ["mafft", "--auto"]
    assert captured[0][-1] == str(tmp_path / "in.faa")
    assert output.read_text(encoding="utf-8") == ">A__000001\nMK-V\n"


def test_parse_best_model_prefers_report_then_log(tmp_path: Path) -> None:
    prefix = tmp_path / "model"
    assert parse_best_model(prefix) is None

    Path(f"{prefix}.log").write_text("Best-fit model: WAG+I+G4 chosen according to BIC\n", encoding="utf-8")
    assert parse_best_model(prefix) == "WAG+I+G4"

    Path(f"{prefix}.iqtree").write_text("Best-fit model according to BIC: LG+F+R4\n", encoding="utf-8")
    assert parse_best_model(prefix) == "LG+F+R4"


def test_transient_failure_classification() -> None:
    patterns = ["cannot allocate memory"]

    assert is_transient_failure(CommandExecutionError("killed", returncode=-9), patterns)
    assert is_transient_failure(
        CommandExecutionError("failed", returncode=1, stderr="ERROR: Cannot allocate memory"), patterns
    )
    assert not is_transient_failure(CommandExecutionError("failed", returncode=2, stderr="bad alignment"), patterns)
    assert not is_transient_failure(CommandTimeoutError("timed out", returncode=None), patterns)


def test_split_args() -> None:
    assert split_args("") == []
    assert split_args("  ") == []
    assert split_args("--maxiterate 1000 --title 'two words'") == ["--maxiterate", "1000", "--title", "two words"]


def test_unexecutable_command_raises_command_error(tmp_path: Path) -> None:
    tool = tmp_path / "tool"
    tool.write_bytes(b"\x7fgarbage\n")
    tool.chmod(0o755)

    for command in ([str(tool)], [str(tmp_path / "missing")]):
        with pytest.raises(CommandExecutionError, match="Could not execute") as excinfo:
            run_command(command)
        assert excinfo.value.returncode is None


def test_undecodable_output_is_replaced() -> None:
    result = run_command([sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'ok\\xff')"])

    assert result.stdout == "ok\ufffd"
