from __future__ import annotations

from enum import Enum


class Stage(str, Enum):
    """The seven pipeline stages, in execution order."""

    TRANSLATION = "translation"
    CLUSTERING = "clustering"
    ALIGNMENT = "alignment"
    MODEL_SELECTION = "model_selection"
    TREE_INFERENCE = "tree_inference"
    TAXA_ANALYSIS = "taxa_analysis"
    BLOCK_ANALYSIS = "block_analysis"

    @property
    def index(self) -> int:
        return STAGE_ORDER.index(self)

    @classmethod
    def parse(cls, value: "str | Stage") -> "Stage":
        if isinstance(value, Stage):
            return value
        normalized = value.strip().lower().replace("-", "_")
        for stage in cls:
            if stage.value == normalized:
                return stage
        choices = ", ".join(stage.value for stage in cls)
        raise ValueError(f"Unknown stage {value!r}; expected one of: {choices}")


STAGE_ORDER: tuple[Stage, ...] = tuple(Stage)


def stage_window(start: Stage, stop: Stage) -> list[Stage]:
    """Stages from `start` to `stop`, inclusive."""

    if start.index > stop.index:
        raise ValueError(f"start stage `{start.value}` comes after stop stage `{stop.value}`")
    return list(STAGE_ORDER[start.index : stop.index + 1])
