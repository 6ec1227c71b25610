from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Mapping, TypeVar

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    NonNegativeInt,
    PositiveFloat,
    PositiveInt,
    ValidationError,
    field_validator,
    model_validator,
)

from clademap.exceptions import CladeMapUsageError
from clademap.pipeline.stages import Stage
from clademap.utils.subprocess import split_args

DEFAULT_TRANSIENT_PATTERNS = [
    r"resource temporarily unavailable",
    r"cannot allocate memory",
    r"std::bad_alloc",
    r"out of memory",
    r"too many open files",
]


class ToolOptions(BaseModel):
    """Options for one external tool.

    `extra_args` is passed through to the executable verbatim after shell-style
    splitting; CladeMap never interprets its content.
    """

    model_config = ConfigDict(extra="forbid")

    extra_args: str = ""

    def passthrough(self) -> list[str]:
        return split_args(self.extra_args)


class DiamondOptions(ToolOptions):
    sensitivity: Literal["fast", "mid-sensitive", "sensitive", "more-sensitive", "very-sensitive", "ultra-sensitive"] | None = "more-sensitive"
    max_target_seqs: PositiveInt = 500


class MafftOptions(ToolOptions):
    extra_args: str = "--auto"


class TrimalOptions(ToolOptions):
    mode: Literal["automated1", "gappyout", "strict", "strictplus", "nogaps", "noallgaps", "none"] = "automated1"


class IqtreeOptions(ToolOptions):
    model_set: str | None = None
    model_extra_args: str = ""
    bootstrap: int = Field(default=1000, ge=1000)

    def model_passthrough(self) -> list[str]:
        return split_args(self.model_extra_args)


class CommonConfig(BaseModel):
    """Shared command options across CladeMap subcommands."""

    model_config = ConfigDict(extra="forbid")

    outdir: Path = Field(default_factory=Path.cwd)
    threads: PositiveInt = 1
    dry_run: bool = False
    force: bool = False
    log_file: Path | None = None
    verbose: bool = False
    quiet: bool = False

    @model_validator(mode="after")
    def _validate_verbosity(self) -> "CommonConfig":
        if self.verbose and self.quiet:
            raise ValueError("`verbose` and `quiet` cannot both be true.")
        return self


class RunConfig(CommonConfig):
    manifest: Path | None = None
    reference: str | None = None
    annotation: Path | None = None

    start_stage: Stage = Stage.TRANSLATION
    stop_stage: Stage = Stage.BLOCK_ANALYSIS
    strict: bool = False
    tool_timeout: PositiveFloat | None = None
    transient_patterns: list[str] = Field(default_factory=lambda: list(DEFAULT_TRANSIENT_PATTERNS))

    manifest_schema: Literal["auto", "full", "reduced"] = "auto"
    strict_manifest: bool = False

    translation_table: int = Field(default=1, ge=1, le=33)

    min_identity: float = Field(default=30.0, ge=0.0, le=100.0)
    min_bitscore: float = Field(default=50.0, ge=0.0)
    max_evalue: float = Field(default=1e-5, ge=0.0)

    min_sequences: PositiveInt = 4
    max_sequences: PositiveInt | None = None
    min_taxa: PositiveInt = 3
    max_taxa: PositiveInt | None = None
    min_clades: PositiveInt = 1
    max_clades: PositiveInt | None = None
    require_reference: bool = True

    min_bootstrap: float = Field(default=95.0, ge=0.0, le=100.0)

    call_level: Literal["clade", "species"] = "clade"
    max_gap_genes: NonNegativeInt = 1
    min_block_genes: PositiveInt = 1
    annotation_feature: str = "gene"
    annotation_id_attributes: list[str] = Field(default_factory=lambda: ["ID", "Name", "locus_tag"])

    diamond: DiamondOptions = Field(default_factory=DiamondOptions)
    mafft: MafftOptions = Field(default_factory=MafftOptions)
    trimal: TrimalOptions = Field(default_factory=TrimalOptions)
    iqtree: IqtreeOptions = Field(default_factory=IqtreeOptions)

    @field_validator("start_stage", "stop_stage", mode="before")
    @classmethod
    def _parse_stage(cls, value: Any) -> Any:
        if isinstance(value, str):
            return Stage.parse(value)
        return value

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RunConfig":
        for low, high in (
            ("min_sequences", "max_sequences"),
            ("min_taxa", "max_taxa"),
            ("min_clades", "max_clades"),
        ):
            upper = getattr(self, high)
            if upper is not None and upper < getattr(self, low):
                raise ValueError(f"`{high}` must be >= `{low}`.")
        if self.start_stage.index > self.stop_stage.index:
            raise ValueError("`start_stage` must not come after `stop_stage`.")
        return self


class CladeMapConfig(BaseModel):
    """Top-level YAML config model."""

    model_config = ConfigDict(extra="forbid")

    run: RunConfig | None = None


def load_config(config_path: Path | None) -> CladeMapConfig:
    """Load and validate a YAML config file."""

    if config_path is None:
        return CladeMapConfig()

    if not config_path.exists():
        raise CladeMapUsageError(f"Config file does not exist: {config_path}")

    if not config_path.is_file():
        raise CladeMapUsageError(f"Config path is not a file: {config_path}")

    payload_raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    if payload_raw is None:
        payload_raw = {}

    if not isinstance(payload_raw, dict):
        raise CladeMapUsageError("Config YAML must be a key/value mapping at the top level.")

    try:
        return CladeMapConfig.model_validate(payload_raw)
    except ValidationError as exc:
        raise CladeMapUsageError(f"Invalid config file: {config_path}\n{exc}") from exc


T = TypeVar("T", bound=CommonConfig)


def merge_command_config(
    *,
    config_path: Path | None,
    section: str,
    model_cls: type[T],
    cli_overrides: Mapping[str, Any],
) -> T:
    """Merge YAML config values with explicit CLI overrides and validate."""

    root = load_config(config_path)
    section_model = getattr(root, section)

    merged: dict[str, Any] = {}
    if section_model is not None:
        merged.update(section_model.model_dump(exclude_none=True))

    for key, value in cli_overrides.items():
        if value is None:
            continue
        if isinstance(value, Mapping):
            # nested tool options: only the flags given on the command line replace YAML values
            nested = {name: item for name, item in value.items() if item is not None}
            if nested:
                merged[key] = {**merged.get(key, {}), **nested}
            continue
        merged[key] = value

    try:
        return model_cls.model_validate(merged)
    except ValidationError as exc:
        raise CladeMapUsageError(f"Invalid merged config for `{section}`:\n{exc}") from exc
