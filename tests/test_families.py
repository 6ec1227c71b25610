from __future__ import annotations

import random
from pathlib import Path

import pytest

from clademap.analysis.families import FamilyBounds, SimilarityHit, build_families, parse_hits, similarity_edges
from clademap.exceptions import CladeMapUsageError
from clademap.registry import TaxonRegistry, parse_manifest


def _registry(tmp_path: Path) -> TaxonRegistry:
    rows = []
    for tag, species, clade in (("A", "spA", "X"), ("B", "spB", "X"), ("C", "spC", "Y"), ("D", "spD", "Y")):
        (tmp_path / f"{tag}.faa").write_text(">g\nMKV\n", encoding="utf-8")
        rows.append(f"{tag}\t{species}\t1\t{clade}\t{tag}.faa")
    manifest = tmp_path / "manifest.tsv"
    manifest.write_text("\n".join(rows) + "\n", encoding="utf-8")
    return parse_manifest(manifest)


def _hit(query: str, subject: str, identity: float = 80.0, bitscore: float = 200.0) -> SimilarityHit:
    return SimilarityHit(query=query, subject=subject, identity=identity, length=100, evalue=1e-30, bitscore=bitscore)


SEQUENCE_IDS = [f"{tag}__{index:06d}" for tag in "ABCD" for index in (1, 2, 3)]

HITS = [
    _hit("A__000001", "B__000001"),
    _hit("B__000001", "C__000001"),
    _hit("C__000001", "D__000001"),
    _hit("D__000001", "A__000001"),
    _hit("A__000002", "B__000002"),
    _hit("B__000002", "A__000002"),
    _hit("A__000002", "C__000002", identity=20.0),
    _hit("C__000003", "D__000003"),
    _hit("C__000003", "C__000003"),
]


def test_similarity_edges_apply_thresholds_and_deduplicate() -> None:
    edges = similarity_edges(HITS, min_identity=30.0, min_bitscore=50.0)

    assert ("A__000002", "B__000002") in edges
    assert ("A__000002", "C__000002") not in edges
    assert ("C__000003", "C__000003") not in edges
    assert len(edges) == len(set(edges))
    assert similarity_edges([_hit("A__000001", "B__000001", bitscore=10.0)], min_identity=0.0, min_bitscore=50.0) == []


def test_family_membership_is_invariant_to_hit_order(tmp_path: Path) -> None:
    registry = _registry(tmp_path)
    bounds = FamilyBounds(min_sequences=2, min_taxa=2)

    baseline = build_families(SEQUENCE_IDS, HITS, registry, min_identity=30.0, min_bitscore=50.0, bounds=bounds)
    rng = random.Random(7)
    for _ in range(5):
        shuffled = HITS[:]
        rng.shuffle(shuffled)
        ids = SEQUENCE_IDS[:]
        rng.shuffle(ids)
        again = build_families(ids, shuffled, registry, min_identity=30.0, min_bitscore=50.0, bounds=bounds)
        assert again == baseline


def test_families_are_numbered_by_smallest_member(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    result = build_families(
        SEQUENCE_IDS,
        HITS,
        registry,
        min_identity=30.0,
        min_bitscore=50.0,
        bounds=FamilyBounds(min_sequences=2, min_taxa=2),
    )

    members = {candidate.family_id: candidate.members for candidate in result.candidates}
    assert members == {
        "family_000001": ("A__000001", "B__000001", "C__000001", "D__000001"),
        "family_000002": ("A__000002", "B__000002"),
        "family_000003": ("C__000003", "D__000003"),
    }
    # A__000003, B__000003, C__000002 and D__000002 have no passing edge
    assert result.singletons == 4


def test_bounds_drop_families_with_reasons(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    result = build_families(
        SEQUENCE_IDS,
        HITS,
        registry,
        min_identity=30.0,
        min_bitscore=50.0,
        bounds=FamilyBounds(min_sequences=2, min_taxa=2, min_clades=2, reference="spA"),
    )

    status = {candidate.family_id: candidate.status for candidate in result.candidates}
    assert status == {
        "family_000001": "kept",
        "family_000002": "too_few_clades",
        "family_000003": "no_reference",
    }
    assert [family.family_id for family in result.families] == ["family_000001"]
    assert result.families[0].n_taxa == 4
    assert result.families[0].n_clades == 2
    assert result.drop_counts() == {"too_few_clades": 1, "no_reference": 1}


def test_upper_bounds(tmp_path: Path) -> None:
    registry = _registry(tmp_path)

    result = build_families(
        SEQUENCE_IDS,
        HITS,
        registry,
        min_identity=30.0,
        min_bitscore=50.0,
        bounds=FamilyBounds(min_sequences=2, max_sequences=3, min_taxa=1, max_taxa=3),
    )

    status = {candidate.family_id: candidate.status for candidate in result.candidates}
    assert status["family_000001"] == "too_many_sequences"
    assert status["family_000002"] == "kept"


def test_parse_hits(tmp_path: Path) -> None:
    path = tmp_path / "hits.tsv"
    path.write_text("A__000001\tB__000001\t87.5\t120\t1e-40\t250.1\n\n", encoding="utf-8")

    hits = parse_hits(path)

    assert hits == [SimilarityHit("A__000001", "B__000001", 87.5, 120, 1e-40, 250.1)]


def test_parse_hits_rejects_short_rows(tmp_path: Path) -> None:
    path = tmp_path / "hits.tsv"
    path.write_text("A__000001\tB__000001\t87.5\n", encoding="utf-8")

    with pytest.raises(CladeMapUsageError, match="line 1"):
        parse_hits(path)
