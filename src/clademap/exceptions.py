from __future__ import annotations


class CladeMapError(Exception):
    """Base class for CladeMap exceptions."""

    exit_code: int = 1

    @property
    def label(self) -> str:
        return type(self).__name__


class CladeMapUsageError(CladeMapError):
    """Raised when command arguments or inputs are invalid."""

    exit_code = 2


class ManifestError(CladeMapUsageError):
    """Base class for taxon manifest problems."""


class SchemaError(ManifestError):
    """A manifest row does not match the expected column layout."""


class DuplicateTagError(ManifestError):
    """A taxon tag appears on more than one manifest row."""


class TagFormatError(ManifestError):
    """A taxon tag is too long or contains forbidden characters."""


class MissingFileError(ManifestError):
    """A manifest row points at a sequence file that does not exist."""


class UnknownReferenceTaxonError(ManifestError):
    """The reference taxon is not a species of the manifest."""


class ExecutableNotFoundError(CladeMapError):
    """A required external executable could not be resolved."""

    exit_code = 3

    def __init__(self, tool: str, env_var: str, candidates: tuple[str, ...]) -> None:
        self.tool = tool
        self.env_var = env_var
        self.candidates = candidates
        names = ", ".join(candidates)
        super().__init__(
            f"Required external tool `{tool}` not found. Looked for {names} in ${env_var} "
            f"and on PATH. Install it or point {env_var} at the directory holding it."
        )


class MissingPrerequisiteError(CladeMapError):
    """A stage input artifact is absent or does not match its manifest."""

    exit_code = 4

    def __init__(self, stage: str, path: object, reason: str = "missing") -> None:
        self.stage = stage
        self.path = path
        self.reason = reason
        super().__init__(
            f"Stage `{stage}` cannot start: prerequisite {reason}: {path}. "
            "Run the producing stage first or pick an earlier --start-stage."
        )


class FamilyProcessingError(CladeMapError):
    """One unit of per-family work failed."""

    def __init__(self, family_id: str, step: str, message: str, *, transient: bool = False) -> None:
        self.family_id = family_id
        self.step = step
        self.transient = transient
        self.message = message
        kind = "transient" if transient else "fatal"
        super().__init__(f"{family_id} [{step}, {kind}]: {message}")


class StageCancelledError(CladeMapError):
    """Raised inside a worker when the stage has been cancelled."""


class StageFailedError(CladeMapError):
    """A stage aborted because a unit failed in strict mode."""

    exit_code = 5

    def __init__(self, stage: str, cause: CladeMapError) -> None:
        self.stage = stage
        self.cause = cause
        super().__init__(f"Stage `{stage}` aborted in strict mode: {cause}")
