from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Mapping, Sequence
from urllib.parse import quote, unquote

from clademap.exceptions import CladeMapUsageError
from clademap.utils.io import ensure_dir


@dataclass(frozen=True, slots=True)
class AnnotatedGene:
    gene_id: str
    chromosome: str
    start: int
    end: int
    strand: str
    line_number: int
    aliases: tuple[str, ...]


def parse_attributes(text: str) -> list[tuple[str, str]]:
    pairs: list[tuple[str, str]] = []
    for chunk in text.strip().split(";"):
        if "=" not in chunk:
            continue
        key, value = chunk.split("=", 1)
        pairs.append((key.strip(), unquote(value.strip())))
    return pairs


def read_annotated_genes(
    path: Path,
    *,
    feature_type: str = "gene",
    id_attributes: Sequence[str] = ("ID", "Name", "locus_tag"),
) -> list[AnnotatedGene]:
    """Collect the coordinates of every feature of `feature_type` in a GFF3 file."""

    if not path.is_file():
        raise CladeMapUsageError(f"Reference annotation does not exist: {path}")

    genes: list[AnnotatedGene] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, raw_line in enumerate(handle, start=1):
            if raw_line.startswith("##FASTA"):
                break
            if raw_line.startswith("#") or not raw_line.strip():
                continue
            parts = raw_line.rstrip("\r\n").split("\t")
            if len(parts) < 9 or parts[2] != feature_type:
                continue

            try:
                start, end = int(parts[3]), int(parts[4])
            except ValueError as exc:
                raise CladeMapUsageError(
                    f"Invalid coordinates at line {line_number} of {path}: {parts[3]!r}-{parts[4]!r}"
                ) from exc

            attributes = dict(parse_attributes(parts[8]))
            aliases = tuple(attributes[key] for key in id_attributes if attributes.get(key))
            if not aliases:
                continue

            genes.append(
                AnnotatedGene(
                    gene_id=aliases[0],
                    chromosome=parts[0],
                    start=min(start, end),
                    end=max(start, end),
                    strand=parts[6],
                    line_number=line_number,
                    aliases=aliases,
                )
            )

    return genes


def index_genes(genes: Iterable[AnnotatedGene]) -> dict[str, AnnotatedGene]:
    """Lookup by any alias; the first gene claiming an alias keeps it."""

    lookup: dict[str, AnnotatedGene] = {}
    for gene in genes:
        for alias in gene.aliases:
            lookup.setdefault(alias, gene)
    return lookup


def _encode(value: str) -> str:
    return quote(value, safe=" ._-:|/()+")


def write_annotated_gff(
    source: Path,
    destination: Path,
    extra_attributes: Mapping[int, Sequence[tuple[str, str]]],
) -> Path:
    """Copy `source`, appending attributes to the feature lines named by line number."""

    ensure_dir(destination.parent)
    with source.open("r", encoding="utf-8") as reader, destination.open("w", encoding="utf-8") as writer:
        in_fasta = False
        for line_number, raw_line in enumerate(reader, start=1):
            if raw_line.startswith("##FASTA"):
                in_fasta = True
            additions = None if in_fasta else extra_attributes.get(line_number)
            if not additions:
                writer.write(raw_line)
                continue

            line = raw_line.rstrip("\r\n")
            suffix = ";".join(f"{key}={_encode(value)}" for key, value in additions)
            if line.endswith(";") or line.endswith("\t"):
                writer.write(f"{line}{suffix}\n")
            else:
                writer.write(f"{line};{suffix}\n")

    return destination
