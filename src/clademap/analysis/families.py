from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Sequence

from clademap.analysis.graph import connected_components
from clademap.analysis.ids import assign_prefixed_ids, tag_of_sequence
from clademap.exceptions import CladeMapUsageError
from clademap.registry import TaxonRegistry

KEPT = "kept"


@dataclass(frozen=True, slots=True)
class SimilarityHit:
    query: str
    subject: str
    identity: float
    length: int
    evalue: float
    bitscore: float


@dataclass(frozen=True, slots=True)
class FamilyBounds:
    min_sequences: int = 4
    max_sequences: int | None = None
    min_taxa: int = 3
    max_taxa: int | None = None
    min_clades: int = 1
    max_clades: int | None = None
    reference: str | None = None


@dataclass(frozen=True, slots=True)
class FamilyCandidate:
    family_id: str
    members: tuple[str, ...]
    n_taxa: int
    n_clades: int
    has_reference: bool
    status: str

    @property
    def kept(self) -> bool:
        return self.status == KEPT


@dataclass(frozen=True, slots=True)
class GeneFamily:
    family_id: str
    members: tuple[str, ...]
    n_taxa: int
    n_clades: int


@dataclass(frozen=True, slots=True)
class FamilyBuildResult:
    candidates: tuple[FamilyCandidate, ...]
    singletons: int

    @property
    def families(self) -> list[GeneFamily]:
        return [
            GeneFamily(
                family_id=candidate.family_id,
                members=candidate.members,
                n_taxa=candidate.n_taxa,
                n_clades=candidate.n_clades,
            )
            for candidate in self.candidates
            if candidate.kept
        ]

    def drop_counts(self) -> dict[str, int]:
        return dict(Counter(candidate.status for candidate in self.candidates if not candidate.kept))


def parse_hits(path: Path) -> list[SimilarityHit]:
    """Parse tabular search output (qseqid sseqid pident length evalue bitscore)."""

    hits: list[SimilarityHit] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, raw_line in enumerate(handle, start=1):
            line = raw_line.strip()
            if not line or line.startswith("#"):
                continue
            fields = line.split("\t")
            if len(fields) < 6:
                raise CladeMapUsageError(
                    f"Malformed hit at line {line_number} of {path}: expected 6 columns, got {len(fields)}"
                )
            try:
                hits.append(
                    SimilarityHit(
                        query=fields[0],
                        subject=fields[1],
                        identity=float(fields[2]),
                        length=int(fields[3]),
                        evalue=float(fields[4]),
                        bitscore=float(fields[5]),
                    )
                )
            except ValueError as exc:
                raise CladeMapUsageError(f"Malformed hit at line {line_number} of {path}: {line!r}") from exc
    return hits


def similarity_edges(
    hits: Iterable[SimilarityHit],
    *,
    min_identity: float,
    min_bitscore: float,
) -> list[tuple[str, str]]:
    """Undirected, de-duplicated edges for hits passing both thresholds."""

    edges: set[tuple[str, str]] = set()
    for hit in hits:
        if hit.query == hit.subject:
            continue
        if hit.identity < min_identity or hit.bitscore < min_bitscore:
            continue
        edges.add((hit.query, hit.subject) if hit.query <= hit.subject else (hit.subject, hit.query))
    return sorted(edges)


def _drop_reason(n_sequences: int, n_taxa: int, n_clades: int, has_reference: bool, bounds: FamilyBounds) -> str:
    if bounds.reference is not None and not has_reference:
        return "no_reference"
    if n_sequences < bounds.min_sequences:
        return "too_few_sequences"
    if bounds.max_sequences is not None and n_sequences > bounds.max_sequences:
        return "too_many_sequences"
    if n_taxa < bounds.min_taxa:
        return "too_few_taxa"
    if bounds.max_taxa is not None and n_taxa > bounds.max_taxa:
        return "too_many_taxa"
    if n_clades < bounds.min_clades:
        return "too_few_clades"
    if bounds.max_clades is not None and n_clades > bounds.max_clades:
        return "too_many_clades"
    return KEPT


def build_families(
    sequence_ids: Sequence[str],
    hits: Iterable[SimilarityHit],
    registry: TaxonRegistry,
    *,
    min_identity: float,
    min_bitscore: float,
    bounds: FamilyBounds,
) -> FamilyBuildResult:
    """Cluster sequences into gene families and apply the taxa/clade bounds.

    Membership depends only on the thresholded similarity graph: components are
    computed over sorted nodes and members are listed in sorted order, and ids
    are assigned by smallest member, so hit order never matters.
    """

    edges = similarity_edges(hits, min_identity=min_identity, min_bitscore=min_bitscore)
    components = connected_components(sequence_ids, edges)

    multi_member = [tuple(component) for component in components if len(component) > 1]
    singletons = len(components) - len(multi_member)
    family_ids = assign_prefixed_ids(multi_member, prefix="family")

    candidates: list[FamilyCandidate] = []
    for members in multi_member:
        species = {registry.species_of(tag_of_sequence(member)) for member in members}
        clades = {registry.clade_of_species(name) for name in species}
        has_reference = bounds.reference in species if bounds.reference is not None else False
        candidates.append(
            FamilyCandidate(
                family_id=family_ids[members],
                members=members,
                n_taxa=len(species),
                n_clades=len(clades),
                has_reference=has_reference,
                status=_drop_reason(len(members), len(species), len(clades), has_reference, bounds),
            )
        )

    candidates.sort(key=lambda candidate: candidate.family_id)
    return FamilyBuildResult(candidates=tuple(candidates), singletons=singletons)
