"""The seven CladeMap stages.

Each stage function receives the pipeline context and the validated artifacts
of the stages it declares in `requires`; it never reads another stage's
outputs except through those artifacts.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Mapping, Sequence, TypeVar

from Bio.Phylo.NewickIO import NewickError
from rich.console import Console

from clademap.analysis.blocks import detect_blocks
from clademap.analysis.families import FamilyBounds, build_families, parse_hits
from clademap.analysis.gff import index_genes, read_annotated_genes, write_annotated_gff
from clademap.analysis.nearest import (
    NEAREST_CALL_COLUMNS,
    InferenceResult,
    NearestCall,
    infer_nearest_calls,
    nearest_call_rows,
    read_nearest_calls,
    read_tree,
)
from clademap.analysis.sequences import FastaRecord, read_fasta_records, translate_taxon, write_fasta_records
from clademap.config import RunConfig
from clademap.exceptions import CladeMapUsageError, FamilyProcessingError
from clademap.logging import get_logger
from clademap.paths import OutputLayout
from clademap.pipeline.artifacts import STAGE_UNIT, Artifact, ArtifactStore, UnitFailure, by_kind, single
from clademap.pipeline.family import FamilySteps, family_paths
from clademap.pipeline.pool import UnitOutcome, check_cancelled, run_units
from clademap.pipeline.stages import Stage
from clademap.registry import TaxonRegistry
from clademap.runners import ToolSuite
from clademap.utils.io import ensure_dir, read_tsv_rows, write_tsv

T = TypeVar("T")

SEQUENCE_MAP_COLUMNS = ("sequence_id", "tag", "gene_id", "length")
FAMILY_COLUMNS = ("family_id", "sequence_id", "tag", "species", "clade", "gene_id")
FAMILY_FILTER_COLUMNS = ("family_id", "n_sequences", "n_taxa", "n_clades", "has_reference", "status")
BLOCK_COLUMNS = ("block_id", "chromosome", "start", "end", "call", "n_genes", "gene_ids")


@dataclass(slots=True)
class PipelineContext:
    cfg: RunConfig
    registry: TaxonRegistry
    reference: str
    tools: ToolSuite
    layout: OutputLayout
    store: ArtifactStore
    cancel: threading.Event = field(default_factory=threading.Event)
    console: Console | None = None

    @property
    def family_steps(self) -> FamilySteps:
        return FamilySteps(self.tools, self.cfg, self.layout)


@dataclass(slots=True)
class StageResult:
    artifacts: list[Artifact]
    failures: list[UnitFailure] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)


StageInputs = Mapping[Stage, Sequence[Artifact]]
StageFunction = Callable[[PipelineContext, StageInputs], StageResult]


@dataclass(frozen=True, slots=True)
class StageSpec:
    stage: Stage
    requires: tuple[Stage, ...]
    run: StageFunction
    per_family: bool
    description: str


def _pooled(
    ctx: PipelineContext,
    stage: Stage,
    unit_ids: Sequence[str],
    worker: Callable[[str, threading.Event], T],
    *,
    strict: bool | None = None,
) -> tuple[list[UnitOutcome[T]], list[UnitFailure], int]:
    outcomes = run_units(
        unit_ids,
        worker,
        stage_name=stage.value,
        threads=ctx.cfg.threads,
        strict=ctx.cfg.strict if strict is None else strict,
        cancel=ctx.cancel,
        console=ctx.console,
    )
    failures = [
        UnitFailure(
            unit_id=outcome.unit_id,
            step=outcome.error.step,
            transient=outcome.error.transient,
            message=outcome.error.message,
        )
        for outcome in outcomes
        if outcome.error is not None
    ]
    cancelled = sum(1 for outcome in outcomes if outcome.cancelled)
    return [outcome for outcome in outcomes if outcome.ok], failures, cancelled


def _family_stage_result(
    succeeded: Sequence[UnitOutcome[list[Artifact]]],
    failures: list[UnitFailure],
    cancelled: int,
    *,
    excluded: int = 0,
) -> StageResult:
    artifacts = [artifact for outcome in succeeded for artifact in outcome.value or []]
    counts = {"excluded": excluded}
    if cancelled:
        counts["cancelled"] = cancelled
    return StageResult(artifacts=artifacts, failures=failures, counts=counts)


def run_translation(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    logger = get_logger("clademap.pipeline.translation")
    stage_dir = ctx.store.stage_dir(Stage.TRANSLATION)
    proteins_dir = ensure_dir(stage_dir / "proteins")

    def translate(tag: str, cancel: threading.Event):
        check_cancelled(cancel, tag)
        record = ctx.registry.record(tag)
        proteins, entries = translate_taxon(tag, record.source_path, table=ctx.cfg.translation_table)
        if not proteins:
            logger.warning("No usable sequences for tag %s in %s", tag, record.source_path)
        path = write_fasta_records(proteins_dir / f"{tag}.faa", proteins, force=True)
        return path, proteins, entries

    # translation failures are setup problems, so the stage always fails fast
    succeeded, _, _ = _pooled(ctx, Stage.TRANSLATION, list(ctx.registry.tags), translate, strict=True)

    artifacts: list[Artifact] = []
    all_proteins: list[FastaRecord] = []
    map_rows: list[list[str]] = []
    for outcome in succeeded:
        path, proteins, entries = outcome.value
        artifacts.append(Artifact(unit_id=outcome.unit_id, kind="proteins", path=path))
        all_proteins.extend(proteins)
        map_rows.extend([entry.sequence_id, entry.tag, entry.gene_id, str(entry.length)] for entry in entries)

    if not all_proteins:
        raise CladeMapUsageError("No protein sequences were produced from the manifest inputs.")

    artifacts.append(
        Artifact(
            unit_id=STAGE_UNIT,
            kind="all_proteins",
            path=write_fasta_records(stage_dir / "all_proteins.faa", all_proteins, force=True),
        )
    )
    artifacts.append(
        Artifact(
            unit_id=STAGE_UNIT,
            kind="sequence_map",
            path=write_tsv(stage_dir / "sequence_map.tsv", SEQUENCE_MAP_COLUMNS, map_rows, force=True),
        )
    )
    logger.info("Translated %d sequences from %d tags", len(all_proteins), len(succeeded))
    return StageResult(artifacts=artifacts, counts={"sequences": len(all_proteins)})


def run_clustering(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    logger = get_logger("clademap.pipeline.clustering")
    cfg = ctx.cfg
    upstream = inputs[Stage.TRANSLATION]
    all_proteins = single(upstream, "all_proteins", stage=Stage.TRANSLATION, consumer=Stage.CLUSTERING)
    sequence_map = single(upstream, "sequence_map", stage=Stage.TRANSLATION, consumer=Stage.CLUSTERING)

    stage_dir = ctx.store.stage_dir(Stage.CLUSTERING)
    db_prefix = stage_dir / "proteins"
    hits_path = stage_dir / "hits.tsv"

    ctx.tools.diamond.makedb(input_faa=all_proteins, db_prefix=db_prefix, threads=cfg.threads)
    ctx.tools.diamond.blastp(
        query_faa=all_proteins,
        db_prefix=db_prefix,
        output_tsv=hits_path,
        threads=cfg.threads,
        max_evalue=cfg.max_evalue,
        max_target_seqs=cfg.diamond.max_target_seqs,
        sensitivity=cfg.diamond.sensitivity,
        extra_args=cfg.diamond.passthrough(),
    )
    if not hits_path.is_file():
        raise CladeMapUsageError(f"Similarity search did not write its hit table: {hits_path}")

    entries = {row["sequence_id"]: row for row in read_tsv_rows(sequence_map)}
    result = build_families(
        sorted(entries),
        parse_hits(hits_path),
        ctx.registry,
        min_identity=cfg.min_identity,
        min_bitscore=cfg.min_bitscore,
        bounds=FamilyBounds(
            min_sequences=cfg.min_sequences,
            max_sequences=cfg.max_sequences,
            min_taxa=cfg.min_taxa,
            max_taxa=cfg.max_taxa,
            min_clades=cfg.min_clades,
            max_clades=cfg.max_clades,
            reference=ctx.reference if cfg.require_reference else None,
        ),
    )

    proteins = {record.header: record for record in read_fasta_records(all_proteins)}
    artifacts = [Artifact(unit_id=STAGE_UNIT, kind="hits", path=hits_path)]
    family_rows: list[list[str]] = []
    for family in result.families:
        for member in family.members:
            entry = entries[member]
            species = ctx.registry.species_of(entry["tag"])
            family_rows.append(
                [
                    family.family_id,
                    member,
                    entry["tag"],
                    species,
                    ctx.registry.clade_of_species(species),
                    entry["gene_id"],
                ]
            )
        sequences = write_fasta_records(
            family_paths(ctx.layout, family.family_id).sequences,
            [proteins[member] for member in family.members],
            force=True,
        )
        artifacts.append(Artifact(unit_id=family.family_id, kind="sequences", path=sequences))

    filter_rows = [
        [
            candidate.family_id,
            str(len(candidate.members)),
            str(candidate.n_taxa),
            str(candidate.n_clades),
            "1" if candidate.has_reference else "0",
            candidate.status,
        ]
        for candidate in result.candidates
    ]
    artifacts.append(
        Artifact(
            unit_id=STAGE_UNIT,
            kind="families",
            path=write_tsv(stage_dir / "families.tsv", FAMILY_COLUMNS, family_rows, force=True),
        )
    )
    artifacts.append(
        Artifact(
            unit_id=STAGE_UNIT,
            kind="family_filter",
            path=write_tsv(stage_dir / "family_filter.tsv", FAMILY_FILTER_COLUMNS, filter_rows, force=True),
        )
    )

    drops = result.drop_counts()
    logger.info(
        "%d candidate families, %d kept, %d singletons; dropped: %s",
        len(result.candidates),
        len(result.families),
        result.singletons,
        ", ".join(f"{reason}={count}" for reason, count in sorted(drops.items())) or "none",
    )
    counts = {
        "candidates": len(result.candidates),
        "families": len(result.families),
        "singletons": result.singletons,
        "excluded": sum(drops.values()),
    }
    counts.update({f"dropped_{reason}": count for reason, count in sorted(drops.items())})
    return StageResult(artifacts=artifacts, counts=counts)


def run_alignment(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    sequences = by_kind(inputs[Stage.CLUSTERING], "sequences")
    steps = ctx.family_steps

    def align(family_id: str, cancel: threading.Event) -> list[Artifact]:
        alignment, trimmed = steps.align(family_id, sequences[family_id], cancel)
        return [
            Artifact(unit_id=family_id, kind="alignment", path=alignment),
            Artifact(unit_id=family_id, kind="trimmed", path=trimmed),
        ]

    return _family_stage_result(*_pooled(ctx, Stage.ALIGNMENT, sorted(sequences), align))


def run_model_selection(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    trimmed = by_kind(inputs[Stage.ALIGNMENT], "trimmed")
    steps = ctx.family_steps

    def select(family_id: str, cancel: threading.Event) -> list[Artifact]:
        model = steps.select_model(family_id, trimmed[family_id], cancel)
        return [Artifact(unit_id=family_id, kind="model", path=model)]

    return _family_stage_result(*_pooled(ctx, Stage.MODEL_SELECTION, sorted(trimmed), select))


def run_tree_inference(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    trimmed = by_kind(inputs[Stage.ALIGNMENT], "trimmed")
    models = by_kind(inputs[Stage.MODEL_SELECTION], "model")
    family_ids = sorted(set(trimmed) & set(models))
    steps = ctx.family_steps

    def infer(family_id: str, cancel: threading.Event) -> list[Artifact]:
        tree = steps.infer_tree(family_id, trimmed[family_id], models[family_id], cancel)
        return [Artifact(unit_id=family_id, kind="tree", path=tree)]

    return _family_stage_result(
        *_pooled(ctx, Stage.TREE_INFERENCE, family_ids, infer),
        excluded=len(set(trimmed) - set(models)),
    )


def run_taxa_analysis(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    logger = get_logger("clademap.pipeline.taxa_analysis")
    families_tsv = single(inputs[Stage.CLUSTERING], "families", stage=Stage.CLUSTERING, consumer=Stage.TAXA_ANALYSIS)
    trees = by_kind(inputs[Stage.TREE_INFERENCE], "tree")
    gene_ids = {row["sequence_id"]: row["gene_id"] for row in read_tsv_rows(families_tsv)}

    def analyse(family_id: str, cancel: threading.Event) -> InferenceResult:
        check_cancelled(cancel, family_id)
        try:
            return infer_nearest_calls(
                read_tree(trees[family_id]),
                family_id=family_id,
                registry=ctx.registry,
                reference=ctx.reference,
                min_support=ctx.cfg.min_bootstrap,
                gene_ids=gene_ids,
            )
        except (NewickError, ValueError, KeyError) as exc:
            raise FamilyProcessingError(family_id, "taxa_analysis", f"unusable tree {trees[family_id]}: {exc}") from exc

    succeeded, failures, cancelled = _pooled(ctx, Stage.TAXA_ANALYSIS, sorted(trees), analyse)
    results = [outcome.value for outcome in succeeded if outcome.value is not None]
    calls = [call for result in results for call in result.calls]
    target_leaves = sum(result.target_leaves for result in results)
    low_confidence = sum(result.low_confidence for result in results)

    stage_dir = ctx.store.stage_dir(Stage.TAXA_ANALYSIS)
    calls_path = write_tsv(stage_dir / "nearest_calls.tsv", NEAREST_CALL_COLUMNS, nearest_call_rows(calls), force=True)

    by_clade = Counter(call.closest_clade for call in calls)
    by_species = Counter(call.closest_species for call in calls)
    summary_rows = [["clade", name, str(count)] for name, count in sorted(by_clade.items())]
    summary_rows.extend(["species", name, str(count)] for name, count in sorted(by_species.items()))
    call_summary = write_tsv(stage_dir / "call_summary.tsv", ("level", "name", "calls"), summary_rows, force=True)

    metrics = [
        ["families_analysed", str(len(results))],
        ["families_failed", str(len(failures))],
        ["target_leaves", str(target_leaves)],
        ["calls", str(len(calls))],
        ["low_confidence", str(low_confidence)],
        ["min_bootstrap", f"{ctx.cfg.min_bootstrap:g}"],
    ]
    summary = write_tsv(stage_dir / "summary.tsv", ("metric", "value"), metrics, force=True)

    logger.info(
        "%d calls over %d reference leaves (%d low confidence)",
        len(calls),
        target_leaves,
        low_confidence,
    )
    counts = {"calls": len(calls), "low_confidence": low_confidence, "excluded": low_confidence}
    if cancelled:
        counts["cancelled"] = cancelled
    return StageResult(
        artifacts=[
            Artifact(unit_id=STAGE_UNIT, kind="nearest_calls", path=calls_path),
            Artifact(unit_id=STAGE_UNIT, kind="call_summary", path=call_summary),
            Artifact(unit_id=STAGE_UNIT, kind="summary", path=summary),
        ],
        failures=failures,
        counts=counts,
    )


def _best_call(current: NearestCall | None, candidate: NearestCall) -> NearestCall:
    if current is None:
        return candidate
    if (-candidate.support, candidate.family_id, candidate.sequence_id) < (
        -current.support,
        current.family_id,
        current.sequence_id,
    ):
        return candidate
    return current


def run_block_analysis(ctx: PipelineContext, inputs: StageInputs) -> StageResult:
    logger = get_logger("clademap.pipeline.block_analysis")
    cfg = ctx.cfg
    if cfg.annotation is None:
        raise CladeMapUsageError("Block analysis needs the reference annotation. Provide --annotation.")

    calls_path = single(
        inputs[Stage.TAXA_ANALYSIS], "nearest_calls", stage=Stage.TAXA_ANALYSIS, consumer=Stage.BLOCK_ANALYSIS
    )
    genes = read_annotated_genes(
        cfg.annotation,
        feature_type=cfg.annotation_feature,
        id_attributes=cfg.annotation_id_attributes,
    )
    lookup = index_genes(genes)

    best: dict[str, NearestCall] = {}
    unplaced = 0
    for call in read_nearest_calls(calls_path):
        gene = lookup.get(call.gene_id)
        if gene is None:
            unplaced += 1
            continue
        best[gene.gene_id] = _best_call(best.get(gene.gene_id), call)

    if unplaced:
        logger.warning("%d call(s) name genes missing from %s", unplaced, cfg.annotation)

    def call_label(call: NearestCall) -> str:
        return call.closest_clade if cfg.call_level == "clade" else call.closest_species

    blocks = detect_blocks(
        genes,
        {gene_id: call_label(call) for gene_id, call in best.items()},
        max_gap_genes=cfg.max_gap_genes,
        min_block_genes=cfg.min_block_genes,
    )
    block_of = {gene_id: block.block_id for block in blocks for gene_id in block.gene_ids}

    stage_dir = ctx.store.stage_dir(Stage.BLOCK_ANALYSIS)
    block_rows = [
        [
            block.block_id,
            block.chromosome,
            str(block.start),
            str(block.end),
            block.call,
            str(len(block.gene_ids)),
            ",".join(block.gene_ids),
        ]
        for block in blocks
    ]
    blocks_path = write_tsv(stage_dir / "blocks.tsv", BLOCK_COLUMNS, block_rows, force=True)

    extra: dict[int, list[tuple[str, str]]] = {}
    for gene in genes:
        call = best.get(gene.gene_id)
        if call is None:
            continue
        attributes = [
            ("nearest_species", call.closest_species),
            ("nearest_clade", call.closest_clade),
            ("nearest_support", f"{call.support:g}"),
        ]
        if gene.gene_id in block_of:
            attributes.append(("block_id", block_of[gene.gene_id]))
        extra[gene.line_number] = attributes
    annotated = write_annotated_gff(cfg.annotation, stage_dir / "annotated.gff3", extra)

    logger.info("%d block(s) from %d placed gene call(s)", len(blocks), len(best))
    return StageResult(
        artifacts=[
            Artifact(unit_id=STAGE_UNIT, kind="blocks", path=blocks_path),
            Artifact(unit_id=STAGE_UNIT, kind="annotated_gff", path=annotated),
        ],
        counts={"blocks": len(blocks), "placed": len(best), "unplaced": unplaced, "excluded": unplaced},
    )


STAGE_SPECS: tuple[StageSpec, ...] = (
    StageSpec(Stage.TRANSLATION, (), run_translation, False, "Translate manifest sequences to proteins"),
    StageSpec(Stage.CLUSTERING, (Stage.TRANSLATION,), run_clustering, False, "All-against-all search and gene families"),
    StageSpec(Stage.ALIGNMENT, (Stage.CLUSTERING,), run_alignment, True, "Align and trim each family"),
    StageSpec(Stage.MODEL_SELECTION, (Stage.ALIGNMENT,), run_model_selection, True, "Select a substitution model per family"),
    StageSpec(
        Stage.TREE_INFERENCE,
        (Stage.ALIGNMENT, Stage.MODEL_SELECTION),
        run_tree_inference,
        True,
        "Infer bootstrap trees per family",
    ),
    StageSpec(
        Stage.TAXA_ANALYSIS,
        (Stage.CLUSTERING, Stage.TREE_INFERENCE),
        run_taxa_analysis,
        True,
        "Nearest supported clade per reference gene",
    ),
    StageSpec(Stage.BLOCK_ANALYSIS, (Stage.TAXA_ANALYSIS,), run_block_analysis, False, "Genome blocks and annotated GFF3"),
)
