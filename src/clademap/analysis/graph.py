from __future__ import annotations

from typing import Iterable


class DisjointSet:
    """Union-find over sequence ids; the smallest id of a set is its root."""

    def __init__(self, items: Iterable[str]) -> None:
        self.parent: dict[str, str] = {item: item for item in items}

    def __contains__(self, item: str) -> bool:
        return item in self.parent

    def find(self, item: str) -> str:
        root = item
        while self.parent[root] != root:
            root = self.parent[root]
        while self.parent[item] != root:
            self.parent[item], item = root, self.parent[item]
        return root

    def union(self, left: str, right: str) -> None:
        left_root, right_root = self.find(left), self.find(right)
        if left_root == right_root:
            return
        if right_root < left_root:
            left_root, right_root = right_root, left_root
        self.parent[right_root] = left_root

    def groups(self) -> list[list[str]]:
        members: dict[str, list[str]] = {}
        for item in self.parent:
            members.setdefault(self.find(item), []).append(item)
        return sorted((sorted(group) for group in members.values()), key=lambda group: group[0])


def connected_components(nodes: Iterable[str], edges: Iterable[tuple[str, str]]) -> list[list[str]]:
    """Components of the undirected graph, members sorted, ordered by smallest member.

    Edges naming an unknown node or looping on one node are ignored, so the
    result depends only on the node set and the edge set, never on edge order.
    """

    forest = DisjointSet(nodes)
    for left, right in edges:
        if left == right or left not in forest or right not in forest:
            continue
        forest.union(left, right)
    return forest.groups()
