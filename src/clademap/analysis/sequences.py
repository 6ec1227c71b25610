from __future__ import annotations

import gzip
import warnings
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from Bio import BiopythonWarning
from Bio.Seq import Seq

from clademap.analysis.ids import make_sequence_id
from clademap.exceptions import CladeMapUsageError
from clademap.utils.io import ensure_dir

NUCLEOTIDE_ALPHABET = frozenset("ACGTUN-")


@dataclass(frozen=True, slots=True)
class FastaRecord:
    """Simple FASTA record."""

    header: str
    sequence: str


@dataclass(frozen=True, slots=True)
class SequenceEntry:
    """One protein of the pooled proteome and where it came from."""

    sequence_id: str
    tag: str
    gene_id: str
    length: int


def _open_text(path: Path):
    if path.suffix == ".gz":
        return gzip.open(path, "rt", encoding="utf-8")
    return path.open("r", encoding="utf-8")


def read_fasta_records(path: Path) -> list[FastaRecord]:
    """Read FASTA records, preserving order."""

    records: list[FastaRecord] = []
    header: str | None = None
    seq_chunks: list[str] = []

    with _open_text(path) as handle:
        for raw_line in handle:
            line = raw_line.strip()
            if not line:
                continue
            if line.startswith(">"):
                if header is not None:
                    records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))
                header = line[1:].split()[0] if line[1:].strip() else ""
                seq_chunks = []
            else:
                seq_chunks.append(line)

    if header is not None:
        records.append(FastaRecord(header=header, sequence="".join(seq_chunks).upper()))

    return records


def write_fasta_records(
    path: Path,
    records: Iterable[FastaRecord],
    line_width: int = 80,
    *,
    force: bool = False,
) -> Path:
    """Write FASTA records using deterministic line wrapping."""

    ensure_dir(path.parent)
    if path.exists() and not force:
        raise CladeMapUsageError(f"Refusing to overwrite existing file without --force: {path}")
    with path.open("w", encoding="utf-8") as handle:
        for record in records:
            handle.write(f">{record.header}\n")
            sequence = record.sequence
            for start in range(0, len(sequence), line_width):
                handle.write(f"{sequence[start:start + line_width]}\n")

    return path


def is_nucleotide(sequence: str) -> bool:
    return bool(sequence) and set(sequence) <= NUCLEOTIDE_ALPHABET


def to_protein(sequence: str, *, table: int = 1) -> str:
    """Translate a coding sequence, or clean up a protein sequence.

    A terminal stop is dropped and internal stops become `X` so that the
    downstream search and alignment tools accept the sequence.
    """

    if is_nucleotide(sequence):
        coding = sequence.replace("-", "").replace("U", "T")
        coding = coding[: len(coding) - len(coding) % 3]
        with warnings.catch_warnings():
            warnings.simplefilter("ignore", BiopythonWarning)
            protein = str(Seq(coding).translate(table=table))
    else:
        protein = sequence.replace("-", "")

    protein = protein.rstrip("*")
    return protein.replace("*", "X")


def translate_taxon(
    tag: str,
    source_path: Path,
    *,
    table: int = 1,
) -> tuple[list[FastaRecord], list[SequenceEntry]]:
    """Translate one taxon's sequence file into tagged protein records."""

    proteins: list[FastaRecord] = []
    entries: list[SequenceEntry] = []
    seen_gene_ids: set[str] = set()

    for record in read_fasta_records(source_path):
        if record.header == "":
            raise CladeMapUsageError(f"FASTA record without identifier in {source_path}")
        if record.header in seen_gene_ids:
            raise CladeMapUsageError(f"Duplicated sequence identifier {record.header!r} in {source_path}")
        seen_gene_ids.add(record.header)

        protein = to_protein(record.sequence, table=table)
        if not protein:
            continue

        sequence_id = make_sequence_id(tag, len(proteins) + 1)
        proteins.append(FastaRecord(header=sequence_id, sequence=protein))
        entries.append(
            SequenceEntry(sequence_id=sequence_id, tag=tag, gene_id=record.header, length=len(protein))
        )

    return proteins, entries
