"""Algorithms behind the CladeMap stages."""

from clademap.analysis.blocks import GenomeBlock, detect_blocks
from clademap.analysis.families import GeneFamily, build_families
from clademap.analysis.nearest import NearestCall, infer_nearest_calls
from clademap.analysis.sequences import FastaRecord

__all__ = [
    "FastaRecord",
    "GeneFamily",
    "GenomeBlock",
    "NearestCall",
    "build_families",
    "detect_blocks",
    "infer_nearest_calls",
]
