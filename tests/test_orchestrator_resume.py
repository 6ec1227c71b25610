from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from clademap.analysis.sequences import read_fasta_records
from clademap.config import RunConfig
from clademap.exceptions import CladeMapUsageError, MissingPrerequisiteError, StageFailedError
from clademap.paths import create_output_layout
from clademap.pipeline.artifacts import ArtifactStore
from clademap.pipeline.orchestrator import Orchestrator
from clademap.pipeline.stages import Stage
from clademap.pipeline.steps import PipelineContext
from clademap.registry import parse_manifest
from clademap.runners import ToolSuite
from clademap.utils.io import read_tsv_rows
from clademap.utils.subprocess import CommandExecutionError, CommandResult

TAXA = (("A", "spA", "X"), ("B", "spB", "X"), ("C", "spC", "Y"), ("D", "spD", "Y"))
PROTEINS = ("MKVLAAGIVGLLW", "MSTRPQEHHWKLY", "MDEFIKLPQRSTW")

GFF = """##gff-version 3
1\tsrc\tgene\t100\t200\t.\t+\t.\tID=gene1
1\tsrc\tgene\t250\t300\t.\t+\t.\tID=gene2
1\tsrc\tgene\t400\t500\t.\t-\t.\tID=gene3
"""


def _ok(command: str) -> CommandResult:
    return CommandResult(command=[command], returncode=0, stdout="", stderr="", dry_run=False)


class FakeDiamond:
    """Reports a strong hit between every pair of proteins with the same index."""

    def makedb(self, *, input_faa: Path, db_prefix: Path, threads: int, **kwargs) -> CommandResult:
        return _ok("makedb")

    def blastp(self, *, query_faa: Path, output_tsv: Path, **kwargs) -> CommandResult:
        ids = [record.header for record in read_fasta_records(query_faa)]
        lines = [
            f"{query}\t{subject}\t90.0\t100\t1e-50\t200.0"
            for query in ids
            for subject in ids
            if query != subject and query.split("__")[1] == subject.split("__")[1]
        ]
        output_tsv.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return _ok("blastp")


class FakeMafft:
    def align(self, *, input_fasta: Path, output_fasta: Path, **kwargs) -> CommandResult:
        shutil.copyfile(input_fasta, output_fasta)
        return _ok("mafft")


class FakeTrimal:
    def trim(self, *, input_fasta: Path, output_fasta: Path, **kwargs) -> CommandResult:
        shutil.copyfile(input_fasta, output_fasta)
        return _ok("trimal")


class FakeIqtree:
    """Groups A with B for genes 1 and 2, and A with C for gene 3.

    Four-taxon trees are written unrooted with A first, the way IQ-TREE writes them.
    """

    def __init__(self, failing: str | None = None) -> None:
        self.failing = failing
        self.tree_calls = 0

    def select_model(self, *, prefix: Path, **kwargs) -> CommandResult:
        Path(f"{prefix}.iqtree").write_text("Best-fit model according to BIC: LG+G4\n", encoding="utf-8")
        return _ok("iqtree")

    def infer_tree(self, *, alignment: Path, prefix: Path, model: str, **kwargs) -> CommandResult:
        self.tree_calls += 1
        if prefix.parent.name == self.failing:
            raise CommandExecutionError("Command failed with exit code 2", returncode=2, stderr="ERROR: bad input")
        headers = [record.header for record in read_fasta_records(alignment)]
        index = headers[0].split("__")[1]
        partner = "B" if index != "000003" else "C"
        others = sorted(header.split("__")[0] for header in headers if header.split("__")[0] not in ("A", partner))
        if len(others) == 1:
            newick = f"((A__{index}:0.1,{partner}__{index}:0.1)95:0.05,{others[0]}__{index}:0.2);\n"
        else:
            newick = (
                f"(A__{index}:0.1,{partner}__{index}:0.1,"
                f"({others[0]}__{index}:0.1,{others[1]}__{index}:0.1)99:0.1);\n"
            )
        Path(f"{prefix}.treefile").write_text(newick, encoding="utf-8")
        return _ok("iqtree")


def _inputs(tmp_path: Path, taxa=TAXA) -> tuple[Path, Path]:
    rows = []
    for tag, species, clade in taxa:
        fasta = tmp_path / f"{tag}.faa"
        fasta.write_text(
            "".join(f">gene{index}\n{protein}\n" for index, protein in enumerate(PROTEINS, start=1)),
            encoding="utf-8",
        )
        rows.append(f"{tag}\t{species}\t1\t{clade}\t{fasta.name}")
    manifest = tmp_path / "manifest.tsv"
    manifest.write_text("\n".join(rows) + "\n", encoding="utf-8")
    annotation = tmp_path / "spA.gff3"
    annotation.write_text(GFF, encoding="utf-8")
    return manifest, annotation


def _orchestrator(
    tmp_path: Path,
    outdir: Path,
    *,
    iqtree: FakeIqtree | None = None,
    taxa=TAXA,
    **overrides,
) -> Orchestrator:
    manifest, annotation = _inputs(tmp_path, taxa)
    cfg = RunConfig(outdir=outdir, manifest=manifest, reference="spA", annotation=annotation, **overrides)
    layout = create_output_layout(outdir)
    tools = ToolSuite(diamond=FakeDiamond(), mafft=FakeMafft(), trimal=FakeTrimal(), iqtree=iqtree or FakeIqtree())
    context = PipelineContext(
        cfg=cfg,
        registry=parse_manifest(manifest),
        reference="spA",
        tools=tools,
        layout=layout,
        store=ArtifactStore(layout),
    )
    return Orchestrator(context)


def _blocks(outdir: Path) -> list[tuple[str, str, str, str]]:
    return [
        (row["start"], row["end"], row["call"], row["gene_ids"])
        for row in read_tsv_rows(outdir / "block_analysis" / "blocks.tsv")
    ]


def test_full_run_produces_blocks(tmp_path: Path) -> None:
    outdir = tmp_path / "out"

    reports = _orchestrator(tmp_path, outdir).run()

    assert [report.stage for report in reports] == [stage.value for stage in Stage]
    assert all(report.status == "completed" for report in reports)
    assert _blocks(outdir) == [("100", "300", "X", "gene1,gene2"), ("400", "500", "Y", "gene3")]

    families = read_tsv_rows(outdir / "clustering" / "families.tsv")
    assert sorted({row["family_id"] for row in families}) == ["family_000001", "family_000002", "family_000003"]
    calls = read_tsv_rows(outdir / "taxa_analysis" / "nearest_calls.tsv")
    assert [(row["gene_id"], row["closest_species"]) for row in calls] == [
        ("gene1", "spB"),
        ("gene2", "spB"),
        ("gene3", "spC"),
    ]
    annotated = (outdir / "block_analysis" / "annotated.gff3").read_text(encoding="utf-8").splitlines()
    assert annotated[1].endswith("nearest_species=spB;nearest_clade=X;nearest_support=99;block_id=block_000001")


def test_resume_from_alignment_reproduces_the_blocks(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    _orchestrator(tmp_path, outdir).run()
    first = (outdir / "block_analysis" / "blocks.tsv").read_bytes()
    translation_manifest = (outdir / "translation" / "artifacts.tsv").read_bytes()

    reports = _orchestrator(tmp_path, outdir, start_stage="alignment", force=True).run()

    assert reports[0].stage == "alignment"
    assert (outdir / "block_analysis" / "blocks.tsv").read_bytes() == first
    assert (outdir / "translation" / "artifacts.tsv").read_bytes() == translation_manifest


def test_rerunning_completed_stages_needs_force(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    _orchestrator(tmp_path, outdir, stop_stage="alignment").run()

    with pytest.raises(CladeMapUsageError, match="--force"):
        _orchestrator(tmp_path, outdir, start_stage="alignment").run()

    # a later window over the same directory is fine
    _orchestrator(tmp_path, outdir, start_stage="model_selection", stop_stage="model_selection").run()


def test_resume_without_upstream_artifacts_fails(tmp_path: Path) -> None:
    iqtree = FakeIqtree()

    with pytest.raises(MissingPrerequisiteError) as excinfo:
        _orchestrator(tmp_path, tmp_path / "empty", iqtree=iqtree, start_stage="alignment").run()

    assert excinfo.value.exit_code == 4
    assert "clustering" in str(excinfo.value)
    assert iqtree.tree_calls == 0


def test_edited_upstream_artifact_is_detected(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    _orchestrator(tmp_path, outdir, stop_stage="clustering").run()
    families_tsv = outdir / "clustering" / "families.tsv"
    families_tsv.write_text(families_tsv.read_text(encoding="utf-8") + "\n", encoding="utf-8")

    with pytest.raises(MissingPrerequisiteError, match="changed"):
        _orchestrator(tmp_path, outdir, start_stage="alignment").run()


def test_family_failure_is_recorded_and_the_run_continues(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    orchestrator = _orchestrator(tmp_path, outdir, iqtree=FakeIqtree(failing="family_000002"))

    reports = {report.stage: report for report in orchestrator.run()}

    assert reports["tree_inference"].produced == 2
    assert reports["tree_inference"].failed == 1
    [failure] = read_tsv_rows(outdir / "tree_inference" / "failures.tsv")
    assert failure["unit_id"] == "family_000002"
    assert failure["step"] == "tree_inference"
    assert failure["transient"] == "0"
    assert _blocks(outdir) == [("100", "200", "X", "gene1"), ("400", "500", "Y", "gene3")]


def test_strict_mode_aborts_the_stage(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    orchestrator = _orchestrator(tmp_path, outdir, iqtree=FakeIqtree(failing="family_000002"), strict=True)

    with pytest.raises(StageFailedError) as excinfo:
        orchestrator.run()

    assert excinfo.value.exit_code == 5
    assert orchestrator.reports[-1].stage == "tree_inference"
    assert orchestrator.reports[-1].status == "failed"
    assert not (outdir / "tree_inference" / "artifacts.tsv").exists()
    assert not (outdir / "taxa_analysis" / "artifacts.tsv").exists()


def test_three_species_families_need_a_lower_min_sequences(tmp_path: Path) -> None:
    outdir = tmp_path / "out"
    taxa = TAXA[:3]

    reports = _orchestrator(tmp_path, outdir, taxa=taxa, min_sequences=3, min_bootstrap=90).run()

    assert all(report.status == "completed" for report in reports)
    calls = read_tsv_rows(outdir / "taxa_analysis" / "nearest_calls.tsv")
    assert [(row["gene_id"], row["closest_species"], row["support"]) for row in calls] == [
        ("gene1", "spB", "95"),
        ("gene2", "spB", "95"),
        ("gene3", "spC", "95"),
    ]
    assert _blocks(outdir) == [("100", "300", "X", "gene1,gene2"), ("400", "500", "Y", "gene3")]
