from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any, Sequence

from rich import box
from rich.console import Console
from rich.table import Table

from clademap.exceptions import CladeMapUsageError
from clademap.logging import get_logger
from clademap.pipeline.artifacts import STAGE_UNIT, Artifact
from clademap.pipeline.stages import STAGE_ORDER, Stage, stage_window
from clademap.pipeline.steps import STAGE_SPECS, PipelineContext, StageResult, StageSpec

COUNT_KEYS_SHOWN = ("produced", "failed", "excluded")


@dataclass(slots=True)
class StageReport:
    stage: str
    status: str
    produced: int = 0
    failed: int = 0
    excluded: int = 0
    seconds: float = 0.0
    counts: dict[str, int] = field(default_factory=dict)

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


def _produced_units(result: StageResult) -> int:
    units = {artifact.unit_id for artifact in result.artifacts}
    per_unit = {unit for unit in units if unit != STAGE_UNIT}
    return len(per_unit) if per_unit else len(result.artifacts)


class Orchestrator:
    """Runs the configured stage window over the artifact store."""

    def __init__(self, context: PipelineContext, specs: Sequence[StageSpec] = STAGE_SPECS) -> None:
        self.context = context
        self.specs = {spec.stage: spec for spec in specs}
        self.reports: list[StageReport] = []
        self.logger = get_logger("clademap.pipeline")

    def plan(self) -> list[StageSpec]:
        cfg = self.context.cfg
        return [self.specs[stage] for stage in stage_window(cfg.start_stage, cfg.stop_stage)]

    def completed_stages(self) -> list[Stage]:
        return [stage for stage in STAGE_ORDER if self.context.store.is_complete(stage)]

    def check_prerequisites(self) -> dict[Stage, list[Artifact]]:
        """Validate the artifacts of every stage the window consumes but does not produce."""

        planned = self.plan()
        window = {spec.stage for spec in planned}
        loaded: dict[Stage, list[Artifact]] = {}
        for spec in planned:
            for required in spec.requires:
                if required in window or required in loaded:
                    continue
                loaded[required] = self.context.store.load(required, consumer=spec.stage)
        return loaded

    def check_overwrite(self) -> None:
        if self.context.cfg.force:
            return
        planned = {spec.stage for spec in self.plan()}
        done = [stage.value for stage in self.completed_stages() if stage in planned]
        if done:
            raise CladeMapUsageError(
                f"Stage(s) already completed in {self.context.layout.root}: {', '.join(done)}. "
                "Use --force to run them again, or pick a later --start-stage."
            )

    def run(self) -> list[StageReport]:
        planned = self.plan()
        external = self.check_prerequisites()
        self.check_overwrite()

        for stage in STAGE_ORDER[planned[0].stage.index :]:
            self.context.store.invalidate(stage)

        produced: dict[Stage, list[Artifact]] = {}
        for spec in planned:
            inputs = {
                required: produced[required] if required in produced else external[required]
                for required in spec.requires
            }
            self.logger.info("Stage %s: %s", spec.stage.value, spec.description)
            started = time.monotonic()
            try:
                result = spec.run(self.context, inputs)
            except Exception:
                self.reports.append(
                    StageReport(stage=spec.stage.value, status="failed", seconds=round(time.monotonic() - started, 3))
                )
                raise

            self.context.store.record(spec.stage, result.artifacts, result.failures)
            # re-read so downstream stages see exactly what was recorded
            produced[spec.stage] = self.context.store.load(spec.stage, consumer=spec.stage, verify=False)

            report = StageReport(
                stage=spec.stage.value,
                status="completed",
                produced=_produced_units(result),
                failed=len(result.failures),
                excluded=result.counts.get("excluded", 0),
                seconds=round(time.monotonic() - started, 3),
                counts={key: value for key, value in result.counts.items() if key not in COUNT_KEYS_SHOWN},
            )
            self.reports.append(report)
            self.logger.info(
                "Stage %s completed: %d produced, %d failed, %d excluded",
                report.stage,
                report.produced,
                report.failed,
                report.excluded,
            )
            if result.failures:
                for failure in result.failures:
                    self.logger.warning("%s [%s]: %s", failure.unit_id, failure.step, failure.message)

        return self.reports


def print_plan(console: Console, orchestrator: Orchestrator) -> None:
    completed = set(orchestrator.completed_stages())
    table = Table(title="[bold]Stage plan[/bold]", box=box.SIMPLE_HEAVY, expand=False)
    table.add_column("#", style="bold cyan", justify="right")
    table.add_column("Stage", style="white")
    table.add_column("Per family", justify="center")
    table.add_column("On disk", justify="center")
    table.add_column("Description", style="dim")
    for spec in orchestrator.plan():
        table.add_row(
            str(spec.stage.index + 1),
            spec.stage.value,
            "yes" if spec.per_family else "",
            "complete" if spec.stage in completed else "",
            spec.description,
        )
    console.print(table)


def print_reports(console: Console, reports: Sequence[StageReport]) -> None:
    table = Table(title="[bold]Stage reports[/bold]", box=box.SIMPLE_HEAVY, expand=False)
    table.add_column("Stage", style="bold cyan")
    table.add_column("Status")
    table.add_column("Produced", justify="right")
    table.add_column("Failed", justify="right")
    table.add_column("Excluded", justify="right")
    table.add_column("Seconds", justify="right")
    table.add_column("Details", style="dim")
    for report in reports:
        status = "[green]completed[/green]" if report.status == "completed" else f"[red]{report.status}[/red]"
        details = ", ".join(f"{key}={value}" for key, value in sorted(report.counts.items()))
        table.add_row(
            report.stage,
            status,
            str(report.produced),
            str(report.failed),
            str(report.excluded),
            f"{report.seconds:.1f}",
            details,
        )
    console.print(table)

