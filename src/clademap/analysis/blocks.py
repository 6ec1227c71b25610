from __future__ import annotations

from dataclasses import dataclass, field
from typing import Mapping, Sequence

from clademap.analysis.gff import AnnotatedGene


@dataclass(frozen=True, slots=True)
class GenomeBlock:
    block_id: str
    chromosome: str
    start: int
    end: int
    call: str
    gene_ids: tuple[str, ...]


@dataclass(slots=True)
class _OpenBlock:
    chromosome: str
    call: str
    members: list[AnnotatedGene] = field(default_factory=list)
    gap: int = 0


def _gene_order(gene: AnnotatedGene) -> tuple[str, int, int, str]:
    return gene.chromosome, gene.start, gene.end, gene.gene_id


def detect_blocks(
    genes: Sequence[AnnotatedGene],
    call_of: Mapping[str, str],
    *,
    max_gap_genes: int = 1,
    min_block_genes: int = 1,
) -> list[GenomeBlock]:
    """Merge consecutive genes sharing a call into blocks.

    `genes` is the full set of annotated genes; those absent from `call_of`
    count as intervening genes. A block closes when the call or chromosome
    changes, or when more than `max_gap_genes` uncalled genes separate two
    called ones.
    """

    closed: list[_OpenBlock] = []
    current: _OpenBlock | None = None

    for gene in sorted(genes, key=_gene_order):
        if current is not None and gene.chromosome != current.chromosome:
            closed.append(current)
            current = None

        call = call_of.get(gene.gene_id)
        if call is None:
            if current is not None:
                current.gap += 1
                if current.gap > max_gap_genes:
                    closed.append(current)
                    current = None
            continue

        if current is not None and current.call == call:
            current.members.append(gene)
            current.gap = 0
            continue

        if current is not None:
            closed.append(current)
        current = _OpenBlock(chromosome=gene.chromosome, call=call, members=[gene])

    if current is not None:
        closed.append(current)

    blocks: list[GenomeBlock] = []
    for pending in closed:
        if len(pending.members) < min_block_genes:
            continue
        blocks.append(
            GenomeBlock(
                block_id=f"block_{len(blocks) + 1:06d}",
                chromosome=pending.chromosome,
                start=min(member.start for member in pending.members),
                end=max(member.end for member in pending.members),
                call=pending.call,
                gene_ids=tuple(member.gene_id for member in pending.members),
            )
        )
    return blocks
