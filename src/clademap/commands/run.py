from __future__ import annotations

import sys
from pathlib import Path

import typer
from rich.console import Console

from clademap.config import RunConfig, merge_command_config
from clademap.environment import resolve_tools
from clademap.exceptions import CladeMapError, CladeMapUsageError
from clademap.logging import configure_logging, get_logger
from clademap.paths import create_output_layout
from clademap.pipeline.artifacts import ArtifactStore
from clademap.pipeline.orchestrator import Orchestrator, print_plan, print_reports
from clademap.pipeline.stages import Stage, stage_window
from clademap.pipeline.steps import PipelineContext
from clademap.provenance import create_run_manifest, finalize_manifest, write_manifest
from clademap.registry import parse_manifest
from clademap.runners import ToolSuite
from clademap.utils.subprocess import CommandExecutionError

app = typer.Typer(help="Run the CladeMap stage pipeline.")
console = Console()


def run_pipeline(
    *,
    config_path: Path | None,
    manifest: Path | None,
    reference: str | None,
    annotation: Path | None,
    outdir: Path | None,
    start_stage: str | None,
    stop_stage: str | None,
    strict: bool | None,
    strict_manifest: bool | None,
    manifest_schema: str | None,
    tool_timeout: float | None,
    translation_table: int | None,
    min_identity: float | None,
    min_bitscore: float | None,
    max_evalue: float | None,
    min_sequences: int | None,
    max_sequences: int | None,
    min_taxa: int | None,
    max_taxa: int | None,
    min_clades: int | None,
    max_clades: int | None,
    require_reference: bool | None,
    min_bootstrap: float | None,
    call_level: str | None,
    max_gap_genes: int | None,
    min_block_genes: int | None,
    annotation_feature: str | None,
    diamond_sensitivity: str | None,
    diamond_args: str | None,
    mafft_args: str | None,
    trimal_mode: str | None,
    trimal_args: str | None,
    iqtree_model_set: str | None,
    iqtree_model_args: str | None,
    iqtree_args: str | None,
    bootstrap: int | None,
    threads: int | None,
    dry_run: bool | None,
    force: bool | None,
    log_file: Path | None,
    verbose: bool | None,
    quiet: bool | None,
) -> int:
    try:
        cfg = merge_command_config(
            config_path=config_path,
            section="run",
            model_cls=RunConfig,
            cli_overrides={
                "manifest": manifest,
                "reference": reference,
                "annotation": annotation,
                "outdir": outdir,
                "start_stage": start_stage,
                "stop_stage": stop_stage,
                "strict": strict,
                "strict_manifest": strict_manifest,
                "manifest_schema": manifest_schema,
                "tool_timeout": tool_timeout,
                "translation_table": translation_table,
                "min_identity": min_identity,
                "min_bitscore": min_bitscore,
                "max_evalue": max_evalue,
                "min_sequences": min_sequences,
                "max_sequences": max_sequences,
                "min_taxa": min_taxa,
                "max_taxa": max_taxa,
                "min_clades": min_clades,
                "max_clades": max_clades,
                "require_reference": require_reference,
                "min_bootstrap": min_bootstrap,
                "call_level": call_level,
                "max_gap_genes": max_gap_genes,
                "min_block_genes": min_block_genes,
                "annotation_feature": annotation_feature,
                "diamond": {"sensitivity": diamond_sensitivity, "extra_args": diamond_args},
                "mafft": {"extra_args": mafft_args},
                "trimal": {"mode": trimal_mode, "extra_args": trimal_args},
                "iqtree": {
                    "model_set": iqtree_model_set,
                    "model_extra_args": iqtree_model_args,
                    "extra_args": iqtree_args,
                    "bootstrap": bootstrap,
                },
                "threads": threads,
                "dry_run": dry_run,
                "force": force,
                "log_file": log_file,
                "verbose": verbose,
                "quiet": quiet,
            },
        )

        configure_logging(verbose=cfg.verbose, quiet=cfg.quiet, log_file=cfg.log_file)
        logger = get_logger("clademap.run")

        if cfg.manifest is None:
            raise CladeMapUsageError("Missing taxon manifest. Provide --manifest or set run.manifest in config.")
        if cfg.reference is None:
            raise CladeMapUsageError("Missing reference taxon. Provide --reference or set run.reference in config.")

        window = stage_window(cfg.start_stage, cfg.stop_stage)
        if Stage.BLOCK_ANALYSIS in window:
            if cfg.annotation is None:
                raise CladeMapUsageError(
                    "Block analysis needs the reference annotation. Provide --annotation or stop earlier."
                )
            if not cfg.annotation.is_file():
                raise CladeMapUsageError(f"Reference annotation does not exist: {cfg.annotation}")

        registry = parse_manifest(cfg.manifest, schema=cfg.manifest_schema, strict=cfg.strict_manifest)
        target = registry.require_reference(cfg.reference)

        tool_paths = resolve_tools()
        tools = ToolSuite.from_paths(tool_paths, timeout=cfg.tool_timeout)
        tool_versions = {
            "diamond": tools.diamond.version(),
            "mafft": tools.mafft.version(),
            "trimal": tools.trimal.version(),
            "iqtree": tools.iqtree.version(),
        }

        layout = create_output_layout(cfg.outdir)
        context = PipelineContext(
            cfg=cfg,
            registry=registry,
            reference=target,
            tools=tools,
            layout=layout,
            store=ArtifactStore(layout),
            console=None if cfg.quiet else console,
        )
        orchestrator = Orchestrator(context)

        run_manifest = create_run_manifest(
            command="run",
            argv=sys.argv,
            outdir=layout.root,
            dry_run=cfg.dry_run,
            threads=cfg.threads,
            config_path=config_path,
            input_paths=[cfg.manifest, cfg.annotation],
            reference=target,
            stage_window=[stage.value for stage in window],
            tool_paths=tool_paths.as_dict(),
            tool_versions=tool_versions,
            parameters=cfg.model_dump(mode="json"),
        )
        write_manifest(layout.root, run_manifest)

        if not cfg.quiet:
            print_plan(console, orchestrator)

        if cfg.dry_run:
            try:
                orchestrator.check_prerequisites()
            except CladeMapError as exc:
                finalize_manifest(run_manifest, status="failed", error=str(exc))
                write_manifest(layout.root, run_manifest)
                raise
            logger.info("Dry-run requested; no stage was run.")
            finalize_manifest(run_manifest, status="dry-run")
            write_manifest(layout.root, run_manifest)
            return 0

        try:
            reports = orchestrator.run()
        except Exception as exc:
            finalize_manifest(
                run_manifest,
                status="failed",
                stages=[report.as_dict() for report in orchestrator.reports],
                error=str(exc),
            )
            write_manifest(layout.root, run_manifest)
            raise

        finalize_manifest(run_manifest, status="completed", stages=[report.as_dict() for report in reports])
        write_manifest(layout.root, run_manifest)

        if not cfg.quiet:
            print_reports(console, reports)
        logger.info("CladeMap run completed: %s", layout.root)
        return 0

    except CladeMapError as exc:
        console.print(f"[red]{exc.label}:[/red] {exc}")
        return exc.exit_code
    except CommandExecutionError as exc:
        console.print(f"[red]External tool failed:[/red] {exc}")
        return 1
    except Exception as exc:  # pragma: no cover - defensive catch-all
        get_logger("clademap.run").exception("Unhandled run error")
        console.print(f"[red]Unexpected error:[/red] {exc}")
        return 1


@app.callback(invoke_without_command=True)
def run_callback(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="YAML config file with a `run:` section."),
    manifest: Path | None = typer.Option(
        None,
        "--manifest",
        help="Taxon manifest TSV: tag, species, ploidy, clade, path (or species, clade, path).",
    ),
    reference: str | None = typer.Option(None, "--reference", help="Reference species (the target genome)."),
    annotation: Path | None = typer.Option(None, "--annotation", help="GFF3 annotation of the reference genome."),
    outdir: Path | None = typer.Option(None, "--outdir", help="Output root directory."),
    start_stage: str | None = typer.Option(None, "--start-stage", help="First stage to run (resume point)."),
    stop_stage: str | None = typer.Option(None, "--stop-stage", help="Last stage to run."),
    strict: bool | None = typer.Option(None, "--strict/--no-strict", help="Abort a stage on the first family failure."),
    strict_manifest: bool | None = typer.Option(
        None,
        "--strict-manifest/--lenient-manifest",
        help="Reject species repeated with a different clade or ploidy.",
    ),
    manifest_schema: str | None = typer.Option(None, "--manifest-schema", help="auto, full or reduced."),
    tool_timeout: float | None = typer.Option(None, "--tool-timeout", min=0.0, help="Seconds before an external tool call is killed."),
    translation_table: int | None = typer.Option(None, "--translation-table", min=1, max=33, help="NCBI genetic code table."),
    min_identity: float | None = typer.Option(None, "--min-identity", min=0.0, max=100.0, help="Minimum percent identity for a family edge."),
    min_bitscore: float | None = typer.Option(None, "--min-bitscore", min=0.0, help="Minimum bitscore for a family edge."),
    max_evalue: float | None = typer.Option(None, "--max-evalue", min=0.0, help="Maximum e-value reported by the search."),
    min_sequences: int | None = typer.Option(None, "--min-sequences", min=1, help="Minimum sequences per family (default 4; use 3 to keep three-species families)."),
    max_sequences: int | None = typer.Option(None, "--max-sequences", min=1, help="Maximum sequences per family."),
    min_taxa: int | None = typer.Option(None, "--min-taxa", min=1, help="Minimum distinct species per family."),
    max_taxa: int | None = typer.Option(None, "--max-taxa", min=1, help="Maximum distinct species per family."),
    min_clades: int | None = typer.Option(None, "--min-clades", min=1, help="Minimum distinct clades per family."),
    max_clades: int | None = typer.Option(None, "--max-clades", min=1, help="Maximum distinct clades per family."),
    require_reference: bool | None = typer.Option(
        None,
        "--require-reference/--no-require-reference",
        help="Keep only families holding a reference sequence.",
    ),
    min_bootstrap: float | None = typer.Option(None, "--min-bootstrap", min=0.0, max=100.0, help="Minimum node support for a call."),
    call_level: str | None = typer.Option(None, "--call-level", help="Merge blocks on `clade` or `species` calls."),
    max_gap_genes: int | None = typer.Option(None, "--max-gap-genes", min=0, help="Uncalled genes allowed inside a block."),
    min_block_genes: int | None = typer.Option(None, "--min-block-genes", min=1, help="Smallest block reported."),
    annotation_feature: str | None = typer.Option(None, "--annotation-feature", help="GFF3 feature type holding genes."),
    diamond_sensitivity: str | None = typer.Option(None, "--diamond-sensitivity", help="DIAMOND sensitivity mode."),
    diamond_args: str | None = typer.Option(None, "--diamond-args", help="Extra DIAMOND blastp arguments."),
    mafft_args: str | None = typer.Option(None, "--mafft-args", help="MAFFT arguments (default --auto)."),
    trimal_mode: str | None = typer.Option(None, "--trimal-mode", help="trimAl mode, or `none` to skip trimming."),
    trimal_args: str | None = typer.Option(None, "--trimal-args", help="Extra trimAl arguments."),
    iqtree_model_set: str | None = typer.Option(None, "--iqtree-model-set", help="ModelFinder candidate set (-mset)."),
    iqtree_model_args: str | None = typer.Option(None, "--iqtree-model-args", help="Extra IQ-TREE arguments for model selection."),
    iqtree_args: str | None = typer.Option(None, "--iqtree-args", help="Extra IQ-TREE arguments for tree inference."),
    bootstrap: int | None = typer.Option(None, "--bootstrap", min=1000, help="Ultrafast bootstrap replicates."),
    threads: int | None = typer.Option(None, "--threads", min=1, help="Worker threads (capped at the CPU count)."),
    dry_run: bool | None = typer.Option(None, "--dry-run", help="Validate inputs and print the plan only."),
    force: bool | None = typer.Option(None, "--force", help="Re-run stages that already completed."),
    log_file: Path | None = typer.Option(None, "--log-file", help="Write JSON logs to this file."),
    verbose: bool | None = typer.Option(None, "--verbose", help="Enable verbose logging."),
    quiet: bool | None = typer.Option(None, "--quiet", help="Only show errors."),
) -> None:
    if ctx.invoked_subcommand is not None:
        return

    exit_code = run_pipeline(
        config_path=config,
        manifest=manifest,
        reference=reference,
        annotation=annotation,
        outdir=outdir,
        start_stage=start_stage,
        stop_stage=stop_stage,
        strict=strict,
        strict_manifest=strict_manifest,
        manifest_schema=manifest_schema,
        tool_timeout=tool_timeout,
        translation_table=translation_table,
        min_identity=min_identity,
        min_bitscore=min_bitscore,
        max_evalue=max_evalue,
        min_sequences=min_sequences,
        max_sequences=max_sequences,
        min_taxa=min_taxa,
        max_taxa=max_taxa,
        min_clades=min_clades,
        max_clades=max_clades,
        require_reference=require_reference,
        min_bootstrap=min_bootstrap,
        call_level=call_level,
        max_gap_genes=max_gap_genes,
        min_block_genes=min_block_genes,
        annotation_feature=annotation_feature,
        diamond_sensitivity=diamond_sensitivity,
        diamond_args=diamond_args,
        mafft_args=mafft_args,
        trimal_mode=trimal_mode,
        trimal_args=trimal_args,
        iqtree_model_set=iqtree_model_set,
        iqtree_model_args=iqtree_model_args,
        iqtree_args=iqtree_args,
        bootstrap=bootstrap,
        threads=threads,
        dry_run=dry_run,
        force=force,
        log_file=log_file,
        verbose=verbose,
        quiet=quiet,
    )
    raise typer.Exit(exit_code)
