from __future__ import annotations

from pathlib import Path

import pytest

from clademap.analysis.nearest import (
    NEAREST_CALL_COLUMNS,
    infer_nearest_calls,
    nearest_call_rows,
    node_support,
    parse_tree,
    read_nearest_calls,
)
from clademap.registry import TaxonRegistry, parse_manifest
from clademap.utils.io import write_tsv

SCENARIO_TREE = "((A__000001:0.1,B__000001:0.1)95:0.05,C__000001:0.2);"


@pytest.fixture()
def registry(tmp_path: Path) -> TaxonRegistry:
    rows = []
    for tag, species, clade in (
        ("A", "spA", "X"),
        ("B", "spB", "X"),
        ("C", "spC", "Y"),
        ("D", "spD", "Y"),
    ):
        (tmp_path / f"{tag}.faa").write_text(">g\nMKV\n", encoding="utf-8")
        rows.append(f"{tag}\t{species}\t1\t{clade}\t{tag}.faa")
    manifest = tmp_path / "manifest.tsv"
    manifest.write_text("\n".join(rows) + "\n", encoding="utf-8")
    return parse_manifest(manifest)


def _infer(newick: str, registry: TaxonRegistry, min_support: float, **kwargs):
    return infer_nearest_calls(
        parse_tree(newick),
        family_id="family_000001",
        registry=registry,
        reference="spA",
        min_support=min_support,
        **kwargs,
    )


def test_supported_sibling_is_the_call(registry: TaxonRegistry) -> None:
    result = _infer(SCENARIO_TREE, registry, 90, gene_ids={"A__000001": "geneA"})

    assert result.target_leaves == 1
    assert result.low_confidence == 0
    [call] = result.calls
    assert call.gene_id == "geneA"
    assert call.sequence_id == "A__000001"
    assert call.closest_species == "spB"
    assert call.closest_clade == "X"
    assert call.closest_sequence_id == "B__000001"
    assert call.support == 95


def test_threshold_above_every_node_gives_no_call(registry: TaxonRegistry) -> None:
    result = _infer(SCENARIO_TREE, registry, 97)

    assert result.calls == ()
    assert result.target_leaves == 1
    assert result.low_confidence == 1


def test_lowering_threshold_keeps_the_sibling_call(registry: TaxonRegistry) -> None:
    tree = "(((A__000001:0.1,B__000001:0.1)95:0.05,C__000001:0.2)99:0.1,D__000001:0.3);"

    for threshold in (0, 50, 90, 95):
        [call] = _infer(tree, registry, threshold).calls
        assert (call.closest_species, call.support) == ("spB", 95)

    # stricter thresholds move the comparison group towards the root, never closer
    for threshold in (96, 99):
        [call] = _infer(tree, registry, threshold).calls
        assert call.support == 99
        assert call.closest_species == "spB"

    assert _infer(tree, registry, 99.5).calls == ()


def test_reference_only_groups_are_climbed(registry: TaxonRegistry) -> None:
    tree = "(((A__000001:0.1,A__000002:0.1)100:0.1,C__000001:0.2)98:0.1,B__000001:0.3);"

    result = _infer(tree, registry, 95)

    assert [call.sequence_id for call in result.calls] == ["A__000001", "A__000002"]
    assert {call.closest_species for call in result.calls} == {"spC"}
    assert {call.support for call in result.calls} == {98}


def test_equal_distance_ties_break_on_species_name(registry: TaxonRegistry) -> None:
    tree = "((A__000001:0.1,(D__000001:0.1,B__000001:0.1)99:0.1)99:0.1,C__000001:0.1);"

    [call] = _infer(tree, registry, 95).calls

    assert call.closest_species == "spB"


def test_fewer_edges_then_branch_length_decide(registry: TaxonRegistry) -> None:
    by_edges = "((A__000001:0.1,(D__000001:0.9,(C__000001:0.01,B__000001:0.01)99:0.01)99:0.1)99:0.1,A__000002:0.1);"
    by_length = "((A__000001:0.1,(B__000001:0.5,C__000001:0.1)99:0.1)99:0.1,D__000001:0.1);"

    assert _infer(by_edges, registry, 95).calls[0].closest_species == "spD"
    assert _infer(by_length, registry, 95).calls[0].closest_species == "spC"


def test_sh_alrt_ufboot_labels_use_the_last_field(registry: TaxonRegistry) -> None:
    tree = "((A__000001:0.1,B__000001:0.1)80.1/96:0.05,C__000001:0.2);"

    internal = [clade for clade in parse_tree(tree).find_clades() if not clade.is_terminal()]
    assert 96 in [node_support(clade) for clade in internal]

    [call] = _infer(tree, registry, 95).calls
    assert call.support == 96


def test_unrooted_tree_uses_the_split_of_the_other_root_children(registry: TaxonRegistry) -> None:
    # IQ-TREE writes its trees with a three-way root and the first taxon as a root child
    tree = "(A__000001:0.1,B__000001:0.1,(C__000001:0.1,D__000001:0.1)99:0.1);"

    [call] = _infer(tree, registry, 90).calls
    assert (call.closest_species, call.closest_sequence_id, call.support) == ("spB", "B__000001", 99)

    result = _infer(tree, registry, 99.5)
    assert result.calls == ()
    assert result.low_confidence == 1


def test_unrooted_tree_calls_every_reference_leaf(registry: TaxonRegistry) -> None:
    tree = "(A__000001:0.1,(B__000001:0.1,C__000001:0.2)80:0.1,(D__000001:0.1,A__000002:0.1)99:0.1);"

    result = _infer(tree, registry, 95)

    assert result.low_confidence == 0
    calls = {call.sequence_id: (call.closest_species, call.support) for call in result.calls}
    assert calls == {"A__000001": ("spB", 99), "A__000002": ("spD", 99)}


def test_unknown_tag_raises(registry: TaxonRegistry) -> None:
    with pytest.raises(KeyError):
        _infer("((A__000001:0.1,Z__000001:0.1)99:0.1,C__000001:0.2);", registry, 90)


def test_nearest_calls_tsv_roundtrip(tmp_path: Path, registry: TaxonRegistry) -> None:
    calls = _infer(SCENARIO_TREE, registry, 90).calls
    path = write_tsv(tmp_path / "calls.tsv", NEAREST_CALL_COLUMNS, nearest_call_rows(calls))

    assert read_nearest_calls(path) == list(calls)
