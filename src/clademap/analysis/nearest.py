"""Nearest-clade inference on bootstrap-annotated gene family trees.

For every leaf of the reference species the ancestors are visited from the
leaf towards the root. The first ancestor whose support reaches the threshold
and whose subtree holds at least one leaf of another species is the
comparison group; the call is the closest non-reference leaf of that group
(fewest edges, then shortest branch-length path, then species name, then
sequence id). A leaf without such an ancestor gets no call.

A root with three or more children is read as an unrooted tree, so the
splits defined by the other root children are candidate groups as well.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import StringIO
from pathlib import Path
from typing import Iterable, Iterator, Mapping

from Bio import Phylo
from Bio.Phylo.BaseTree import Clade, Tree

from clademap.analysis.ids import tag_of_sequence
from clademap.exceptions import CladeMapUsageError
from clademap.registry import TaxonRegistry
from clademap.utils.io import read_tsv_rows


@dataclass(frozen=True, slots=True)
class NearestCall:
    gene_id: str
    sequence_id: str
    family_id: str
    closest_species: str
    closest_clade: str
    closest_sequence_id: str
    support: float


@dataclass(frozen=True, slots=True)
class InferenceResult:
    family_id: str
    calls: tuple[NearestCall, ...]
    target_leaves: int
    low_confidence: int


def read_tree(path: Path) -> Tree:
    return Phylo.read(str(path), "newick")


def parse_tree(newick: str) -> Tree:
    return Phylo.read(StringIO(newick), "newick")


def node_support(clade: Clade) -> float | None:
    """Bootstrap support of an internal node, if it carries one.

    IQ-TREE writes plain UFBoot values (`95`) or SH-aLRT/UFBoot pairs
    (`80.1/95`); for pairs the last field is used.
    """

    if clade.is_terminal():
        return None
    if clade.confidence is not None:
        return float(clade.confidence)
    if clade.name:
        try:
            return float(clade.name.split("/")[-1])
        except ValueError:
            return None
    return None


def _parent_map(tree: Tree) -> dict[int, Clade]:
    parents: dict[int, Clade] = {}
    for clade in tree.find_clades(order="level"):
        for child in clade.clades:
            parents[id(child)] = clade
    return parents


def _lineage(clade: Clade, parents: Mapping[int, Clade]) -> list[Clade]:
    """The clade followed by its ancestors up to and including the root."""

    lineage = [clade]
    while id(lineage[-1]) in parents:
        lineage.append(parents[id(lineage[-1])])
    return lineage


def _supported_groups(
    target: Clade,
    parents: Mapping[int, Clade],
) -> Iterator[tuple[float | None, list[Clade]]]:
    """Leaf groups holding `target`, smallest first, with the support of the split defining each.

    A root with three or more children is how IQ-TREE writes an unrooted tree:
    every other root child then also defines a split, and the side away from
    that child holds the target.
    """

    lineage = _lineage(target, parents)
    if len(lineage) < 2:
        return
    for ancestor in lineage[1:-1]:
        yield node_support(ancestor), ancestor.get_terminals()

    root = lineage[-1]
    if len(root.clades) >= 3:
        own = lineage[-2]
        others = sorted(
            (child for child in root.clades if child is not own),
            key=lambda child: (-child.count_terminals(), min(leaf.name or "" for leaf in child.get_terminals())),
        )
        leaves = root.get_terminals()
        for other in others:
            excluded = {id(leaf) for leaf in other.get_terminals()}
            yield node_support(other), [leaf for leaf in leaves if id(leaf) not in excluded]
    yield node_support(root), root.get_terminals()


def _distance(
    leaf: Clade,
    other: Clade,
    parents: Mapping[int, Clade],
) -> tuple[int, float]:
    """Edge count and branch-length sum of the path between two leaves."""

    leaf_lineage = _lineage(leaf, parents)
    depth_by_node = {id(node): depth for depth, node in enumerate(leaf_lineage)}

    edges = 0
    length = 0.0
    node = other
    while id(node) not in depth_by_node:
        edges += 1
        length += node.branch_length or 0.0
        node = parents[id(node)]

    meeting_depth = depth_by_node[id(node)]
    for step in leaf_lineage[:meeting_depth]:
        edges += 1
        length += step.branch_length or 0.0
    return edges, length


def infer_nearest_calls(
    tree: Tree,
    *,
    family_id: str,
    registry: TaxonRegistry,
    reference: str,
    min_support: float,
    gene_ids: Mapping[str, str] | None = None,
) -> InferenceResult:
    """Assign each reference-species leaf its nearest supported relative."""

    parents = _parent_map(tree)
    species_by_leaf: dict[int, str] = {}
    for leaf in tree.get_terminals():
        if not leaf.name:
            raise ValueError(f"Tree for {family_id} has an unnamed leaf")
        species_by_leaf[id(leaf)] = registry.species_of(tag_of_sequence(leaf.name))

    targets = [leaf for leaf in tree.get_terminals() if species_by_leaf[id(leaf)] == reference]
    calls: list[NearestCall] = []
    low_confidence = 0

    for target in sorted(targets, key=lambda leaf: leaf.name):
        call: NearestCall | None = None
        for support, group in _supported_groups(target, parents):
            if support is None or support < min_support:
                continue

            relatives = [leaf for leaf in group if species_by_leaf[id(leaf)] != reference]
            if not relatives:
                continue

            def _rank(leaf: Clade) -> tuple[int, float, str, str]:
                edges, length = _distance(target, leaf, parents)
                return edges, length, species_by_leaf[id(leaf)], leaf.name

            closest = min(relatives, key=_rank)
            closest_species = species_by_leaf[id(closest)]
            call = NearestCall(
                gene_id=(gene_ids or {}).get(target.name, target.name),
                sequence_id=target.name,
                family_id=family_id,
                closest_species=closest_species,
                closest_clade=registry.clade_of_species(closest_species),
                closest_sequence_id=closest.name,
                support=support,
            )
            break

        if call is None:
            low_confidence += 1
        else:
            calls.append(call)

    return InferenceResult(
        family_id=family_id,
        calls=tuple(calls),
        target_leaves=len(targets),
        low_confidence=low_confidence,
    )


NEAREST_CALL_COLUMNS = (
    "gene_id",
    "sequence_id",
    "family_id",
    "closest_species",
    "closest_clade",
    "closest_sequence_id",
    "support",
)


def nearest_call_rows(calls: Iterable[NearestCall]) -> list[list[str]]:
    ordered = sorted(calls, key=lambda call: (call.gene_id, call.family_id, call.sequence_id))
    return [
        [
            call.gene_id,
            call.sequence_id,
            call.family_id,
            call.closest_species,
            call.closest_clade,
            call.closest_sequence_id,
            f"{call.support:g}",
        ]
        for call in ordered
    ]


def read_nearest_calls(path: Path) -> list[NearestCall]:
    calls: list[NearestCall] = []
    for row in read_tsv_rows(path):
        try:
            support = float(row["support"])
        except (KeyError, TypeError, ValueError) as exc:
            raise CladeMapUsageError(f"Malformed nearest-call row in {path}: {row}") from exc
        calls.append(
            NearestCall(
                gene_id=row["gene_id"],
                sequence_id=row["sequence_id"],
                family_id=row["family_id"],
                closest_species=row["closest_species"],
                closest_clade=row["closest_clade"],
                closest_sequence_id=row["closest_sequence_id"],
                support=support,
            )
        )
    return calls
