"""Taxon manifest parsing and the read-only taxonomy registry.

The manifest is a tab-separated file with one row per source sequence file,
either in the full schema (tag, species, ploidy, clade, path) or in the reduced
schema (species, clade, path) where the species name doubles as the tag, so a
reduced manifest holds one row per species.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Literal, Mapping

from clademap.exceptions import (
    DuplicateTagError,
    MissingFileError,
    SchemaError,
    TagFormatError,
    UnknownReferenceTaxonError,
)
from clademap.logging import get_logger

FULL_COLUMNS = ("tag", "species", "ploidy", "clade", "path")
REDUCED_COLUMNS = ("species", "clade", "path")
MAX_TAG_LENGTH = 8

_TAG_PATTERN = re.compile(r"^[A-Za-z0-9]+$")
_SPECIES_TAG_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")

SchemaName = Literal["auto", "full", "reduced"]


@dataclass(frozen=True, slots=True)
class TaxonRecord:
    tag: str
    species: str
    ploidy: str
    clade: str
    source_path: Path


@dataclass(frozen=True, slots=True)
class TaxonRegistry:
    records: tuple[TaxonRecord, ...]
    by_tag: Mapping[str, TaxonRecord]
    species_clade: Mapping[str, str]
    species_ploidy: Mapping[str, str]
    clade_index: Mapping[str, tuple[str, ...]]
    schema: str = field(default="full")

    @property
    def tags(self) -> tuple[str, ...]:
        return tuple(record.tag for record in self.records)

    @property
    def species(self) -> tuple[str, ...]:
        return tuple(sorted(self.species_clade))

    @property
    def clades(self) -> tuple[str, ...]:
        return tuple(sorted(self.clade_index))

    def record(self, tag: str) -> TaxonRecord:
        return self.by_tag[tag]

    def species_of(self, tag: str) -> str:
        return self.by_tag[tag].species

    def clade_of_species(self, species: str) -> str:
        return self.species_clade[species]

    def clade_of(self, tag: str) -> str:
        return self.species_clade[self.by_tag[tag].species]

    def require_reference(self, name: str) -> str:
        if not name or any(char.isspace() for char in name):
            raise UnknownReferenceTaxonError(
                f"Reference taxon must be a species name without whitespace: {name!r}"
            )
        if name not in self.species_clade:
            known = ", ".join(self.species)
            raise UnknownReferenceTaxonError(
                f"Reference taxon {name!r} is not a species of the manifest (known: {known})"
            )
        return name

    def summary(self) -> dict[str, int]:
        return {
            "tags": len(self.records),
            "species": len(self.species_clade),
            "clades": len(self.clade_index),
        }


@dataclass(frozen=True, slots=True)
class _Row:
    line_number: int
    cells: tuple[str, ...]


def _read_rows(path: Path) -> list[_Row]:
    rows: list[_Row] = []
    with path.open("r", encoding="utf-8") as handle:
        for line_number, raw_line in enumerate(handle, start=1):
            line = raw_line.rstrip("\r\n")
            if not line.strip() or line.lstrip().startswith("#"):
                continue
            cells = tuple(cell.strip() for cell in line.split("\t"))
            rows.append(_Row(line_number=line_number, cells=cells))

    if rows and rows[0].cells and rows[0].cells[0].lower() in {"tag", "species"}:
        rows = rows[1:]
    return rows


def _resolve_schema(path: Path, rows: list[_Row], schema: SchemaName) -> tuple[str, ...]:
    if schema == "full":
        return FULL_COLUMNS
    if schema == "reduced":
        return REDUCED_COLUMNS

    first_width = len(rows[0].cells)
    if first_width == len(FULL_COLUMNS):
        return FULL_COLUMNS
    if first_width == len(REDUCED_COLUMNS):
        return REDUCED_COLUMNS
    raise SchemaError(
        f"Cannot infer manifest schema from line {rows[0].line_number} of {path}: "
        f"found {first_width} columns, expected 5 (tag, species, ploidy, clade, path) "
        "or 3 (species, clade, path)"
    )


def _check_tag_format(path: Path, row: _Row, columns: tuple[str, ...]) -> None:
    if not row.cells or row.cells[0] == "":
        return
    tag = row.cells[0]
    if columns == FULL_COLUMNS:
        if len(tag) > MAX_TAG_LENGTH or not _TAG_PATTERN.match(tag):
            raise TagFormatError(
                f"Invalid tag {tag!r} at line {row.line_number} of {path}: tags must be "
                f"1-{MAX_TAG_LENGTH} alphanumeric characters"
            )
    elif not _SPECIES_TAG_PATTERN.match(tag):
        raise TagFormatError(
            f"Invalid species name {tag!r} at line {row.line_number} of {path}: only letters, "
            "digits, '.', '_' and '-' are allowed"
        )


def _resolve_source_path(base_dir: Path, value: str) -> Path:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    return path


def parse_manifest(
    path: Path,
    *,
    schema: SchemaName = "auto",
    strict: bool = False,
) -> TaxonRegistry:
    """Parse the taxon manifest and build the read-only registry."""

    logger = get_logger("clademap.registry")

    if not path.is_file():
        raise MissingFileError(f"Manifest file does not exist: {path}")

    rows = _read_rows(path)
    if not rows:
        raise SchemaError(f"Manifest has no data rows: {path}")

    if schema != "reduced":
        # full-width rows are tag-checked before the schema is settled
        for row in rows:
            if len(row.cells) == len(FULL_COLUMNS):
                _check_tag_format(path, row, FULL_COLUMNS)

    columns = _resolve_schema(path, rows, schema)

    for row in rows:
        _check_tag_format(path, row, columns)

    for row in rows:
        if len(row.cells) != len(columns):
            raise SchemaError(
                f"Line {row.line_number} of {path} has {len(row.cells)} columns, "
                f"expected {len(columns)} ({', '.join(columns)})"
            )
        empty = [name for name, value in zip(columns, row.cells) if value == ""]
        if empty:
            raise SchemaError(
                f"Line {row.line_number} of {path} has empty value(s) for: {', '.join(empty)}"
            )

    records: list[TaxonRecord] = []
    seen_tags: dict[str, int] = {}
    for row in rows:
        values = dict(zip(columns, row.cells))
        tag = values.get("tag", values["species"])
        if tag in seen_tags:
            message = f"Tag {tag!r} at line {row.line_number} of {path} already used at line {seen_tags[tag]}"
            if columns == REDUCED_COLUMNS:
                message += (
                    "; the reduced schema allows one row per species, use the 5-column schema "
                    "to give a species several sequence files"
                )
            raise DuplicateTagError(message)
        seen_tags[tag] = row.line_number
        records.append(
            TaxonRecord(
                tag=tag,
                species=values["species"],
                ploidy=values.get("ploidy", "1"),
                clade=values["clade"],
                source_path=_resolve_source_path(path.parent, values["path"]),
            )
        )

    for record in records:
        if not record.source_path.is_file():
            raise MissingFileError(
                f"Sequence file for tag {record.tag!r} does not exist: {record.source_path}"
            )

    species_clade: dict[str, str] = {}
    species_ploidy: dict[str, str] = {}
    for record in records:
        if record.species not in species_clade:
            species_clade[record.species] = record.clade
            species_ploidy[record.species] = record.ploidy
            continue
        if (species_clade[record.species], species_ploidy[record.species]) != (record.clade, record.ploidy):
            message = (
                f"Species {record.species!r} (tag {record.tag!r}) conflicts with its first row: "
                f"clade/ploidy {record.clade}/{record.ploidy} vs "
                f"{species_clade[record.species]}/{species_ploidy[record.species]}"
            )
            if strict:
                raise SchemaError(message)
            logger.warning("%s; keeping the first assignment.", message)

    clade_members: dict[str, set[str]] = {}
    for species, clade in species_clade.items():
        clade_members.setdefault(clade, set()).add(species)

    registry = TaxonRegistry(
        records=tuple(records),
        by_tag=MappingProxyType({record.tag: record for record in records}),
        species_clade=MappingProxyType(species_clade),
        species_ploidy=MappingProxyType(species_ploidy),
        clade_index=MappingProxyType(
            {clade: tuple(sorted(members)) for clade, members in sorted(clade_members.items())}
        ),
        schema="full" if columns == FULL_COLUMNS else "reduced",
    )

    counts = registry.summary()
    logger.info(
        "Manifest %s: %d tags, %d species, %d clades",
        path,
        counts["tags"],
        counts["species"],
        counts["clades"],
    )
    return registry
