from __future__ import annotations

import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from contextlib import nullcontext
from dataclasses import dataclass
from typing import Callable, Generic, Sequence, TypeVar

from rich.console import Console
from rich.progress import BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from clademap.exceptions import FamilyProcessingError, StageCancelledError, StageFailedError
from clademap.logging import get_logger

T = TypeVar("T")

Worker = Callable[[str, threading.Event], T]


@dataclass(frozen=True, slots=True)
class UnitOutcome(Generic[T]):
    unit_id: str
    value: T | None = None
    error: FamilyProcessingError | None = None
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled


def effective_workers(threads: int) -> int:
    """Configured thread count, capped at the host CPU count."""

    return max(1, min(threads, os.cpu_count() or 1))


def check_cancelled(cancel: threading.Event, unit_id: str) -> None:
    if cancel.is_set():
        raise StageCancelledError(f"{unit_id}: stage cancelled")


def run_units(
    unit_ids: Sequence[str],
    worker: Worker[T],
    *,
    stage_name: str,
    threads: int,
    strict: bool = False,
    cancel: threading.Event | None = None,
    console: Console | None = None,
) -> list[UnitOutcome[T]]:
    """Run `worker` once per unit on a bounded pool and wait for all of them.

    Results are returned only after every unit has finished, failed or been
    cancelled, sorted by unit id. A `FamilyProcessingError` is recorded for its
    unit; in strict mode the first one also sets `cancel`, cancels queued units
    and is re-raised as `StageFailedError` once the pool has drained.
    """

    logger = get_logger(f"clademap.pipeline.{stage_name}")
    cancel_event = cancel if cancel is not None else threading.Event()
    outcomes: dict[str, UnitOutcome[T]] = {}
    first_failure: FamilyProcessingError | None = None
    workers = effective_workers(threads)

    if not unit_ids:
        return []

    logger.debug("Dispatching %d unit(s) to %d worker(s)", len(unit_ids), workers)

    progress_context = (
        Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            MofNCompleteColumn(),
            TimeElapsedColumn(),
            console=console,
            transient=True,
        )
        if console is not None
        else nullcontext()
    )

    with progress_context as progress:
        task = progress.add_task(stage_name.replace("_", " ").capitalize(), total=len(unit_ids)) if progress is not None else None
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"clademap-{stage_name}") as pool:
            futures: dict[Future[T], str] = {
                pool.submit(worker, unit_id, cancel_event): unit_id for unit_id in sorted(unit_ids)
            }
            try:
                for future in as_completed(futures):
                    unit_id = futures[future]
                    if future.cancelled():
                        outcomes[unit_id] = UnitOutcome(unit_id=unit_id, cancelled=True)
                    else:
                        try:
                            value = future.result()
                        except StageCancelledError:
                            outcomes[unit_id] = UnitOutcome(unit_id=unit_id, cancelled=True)
                        except FamilyProcessingError as exc:
                            outcomes[unit_id] = UnitOutcome(unit_id=unit_id, error=exc)
                            logger.warning("Unit failed: %s", exc)
                            if strict and first_failure is None:
                                first_failure = exc
                                cancel_event.set()
                                for pending in futures:
                                    pending.cancel()
                        else:
                            outcomes[unit_id] = UnitOutcome(unit_id=unit_id, value=value)
                    if progress is not None and task is not None:
                        progress.advance(task)
            except BaseException:
                cancel_event.set()
                for pending in futures:
                    pending.cancel()
                raise

    if first_failure is not None:
        raise StageFailedError(stage_name, first_failure)

    return [outcomes[unit_id] for unit_id in sorted(outcomes)]
