from __future__ import annotations

from typing import Callable, Iterable, TypeVar

T = TypeVar("T")

SEQUENCE_ID_SEPARATOR = "__"


def assign_prefixed_ids(
    items: Iterable[T],
    *,
    prefix: str,
    width: int = 6,
    key: Callable[[T], tuple | str] | None = None,
) -> dict[T, str]:
    """Assign deterministic IDs such as family_000001."""

    sorted_items = sorted(items, key=key)
    assignments: dict[T, str] = {}
    for idx, item in enumerate(sorted_items, start=1):
        assignments[item] = f"{prefix}_{idx:0{width}d}"
    return assignments


def make_sequence_id(tag: str, index: int, width: int = 6) -> str:
    return f"{tag}{SEQUENCE_ID_SEPARATOR}{index:0{width}d}"


def tag_of_sequence(sequence_id: str) -> str:
    """Recover the taxon tag encoded in a sequence id."""

    tag, separator, suffix = sequence_id.rpartition(SEQUENCE_ID_SEPARATOR)
    if not separator or not tag or not suffix.isdigit():
        raise ValueError(f"Not a CladeMap sequence id: {sequence_id!r}")
    return tag
