"""Stage orchestration for the CladeMap pipeline."""

from clademap.pipeline.stages import STAGE_ORDER, Stage

__all__ = ["STAGE_ORDER", "Stage"]
