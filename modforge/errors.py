"""Error taxonomy for modforge build stages."""

from __future__ import annotations


class BuildError(RuntimeError):
    """Base class for failures raised by a pipeline stage.

    ``stage`` names the pipeline step that failed and ``identifier`` carries the
    concrete file path, module name or alias that triggered the failure.
    """

    stage = "build"

    def __init__(
        self,
        message: str,
        *,
        identifier: str | None = None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.identifier = identifier
        if stage is not None:
            self.stage = stage

    def describe(self) -> str:
        """Return a one-line summary including stage and identifier."""
        if self.identifier:
            return f"[{self.stage}] {self.message} ({self.identifier})"
        return f"[{self.stage}] {self.message}"


class ConfigError(BuildError):
    """Raised when the build configuration is missing or malformed."""

    stage = "configure"


class VersionError(ConfigError):
    """Raised for malformed version expressions and version regressions."""


class ClassificationError(BuildError):
    """Raised when the project tree cannot be enumerated at all."""

    stage = "classify"


class ExtractionError(BuildError):
    """Raised when a single source file cannot be parsed."""

    stage = "extract"


class DuplicateExportError(BuildError):
    """Raised when an alias collides with a function or another alias."""

    stage = "validate_exports"


class AssemblyError(BuildError):
    """Raised when the merged module cannot be produced."""

    stage = "assemble"


class DependencyError(BuildError):
    """Raised when an unresolved module reference is not suppressed."""

    stage = "resolve_dependencies"


class ManifestError(BuildError):
    """Raised when the manifest cannot be synthesized, written or re-read."""

    stage = "manifest"


class StagingError(BuildError):
    """Raised when staged output cannot be copied or archived."""

    stage = "stage"


__all__ = [
    "AssemblyError",
    "BuildError",
    "ClassificationError",
    "ConfigError",
    "DependencyError",
    "DuplicateExportError",
    "ExtractionError",
    "ManifestError",
    "StagingError",
    "VersionError",
]
