"""Core data models shared across modforge components."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from .logging import get_logger, log_diagnostic

_REPORT_LOGGER = get_logger("report")


class FileRole(str, Enum):
    """Role a project file plays in the build."""

    ROOT_METADATA = "RootMetadata"
    SCRIPT = "Script"
    CLASS_SCRIPT = "ClassScript"
    ARRAY_INCLUDE = "ArrayInclude"
    ASSET = "Asset"


@dataclass(frozen=True)
class ClassifiedFile:
    """A project file together with the role assigned by the classifier."""

    relative_path: str
    role: FileRole
    path: Path

    def read_text(self) -> str:
        """Return the file content decoded as UTF-8, tolerating a byte order mark."""
        return self.path.read_text(encoding="utf-8-sig")

    def read_bytes(self) -> bytes:
        return self.path.read_bytes()


@dataclass(frozen=True)
class Diagnostic:
    """Non-fatal finding surfaced in the build report."""

    stage: str
    severity: str
    message: str
    identifier: Optional[str] = None


@dataclass
class BuildReport:
    """Collects diagnostics across pipeline stages and mirrors them to the log."""

    diagnostics: List[Diagnostic] = field(default_factory=list)

    def add(
        self,
        stage: str,
        severity: str,
        message: str,
        identifier: str | None = None,
    ) -> Diagnostic:
        diagnostic = Diagnostic(stage=stage, severity=severity, message=message, identifier=identifier)
        self.diagnostics.append(diagnostic)
        log_diagnostic(_REPORT_LOGGER, stage, severity, message, identifier)
        return diagnostic

    def extend(self, diagnostics: Iterable[Diagnostic]) -> None:
        for diagnostic in diagnostics:
            self.add(diagnostic.stage, diagnostic.severity, diagnostic.message, diagnostic.identifier)

    def warnings(self) -> List[Diagnostic]:
        return [item for item in self.diagnostics if item.severity == "warning"]


@dataclass(frozen=True)
class FunctionSymbol:
    """A top-level function declaration and the aliases it declares."""

    name: str
    aliases: Tuple[str, ...]
    path: str


class SymbolTable(Mapping[str, Tuple[str, ...]]):
    """Read-only mapping of function name to declared aliases.

    Lookups are case-insensitive because PowerShell command names are. The table
    also remembers every nested helper function name so dependency analysis can
    treat them as local.
    """

    def __init__(
        self,
        symbols: Iterable[FunctionSymbol] = (),
        *,
        local_names: Iterable[str] = (),
        diagnostics: Iterable[Diagnostic] = (),
    ) -> None:
        self._symbols: Dict[str, FunctionSymbol] = {}
        for symbol in symbols:
            self._symbols[symbol.name.lower()] = symbol
        aliases = {alias.lower() for symbol in self._symbols.values() for alias in symbol.aliases}
        self._local = frozenset(name.lower() for name in local_names) | frozenset(self._symbols) | aliases
        self.diagnostics: Tuple[Diagnostic, ...] = tuple(diagnostics)

    def __getitem__(self, name: str) -> Tuple[str, ...]:
        return self._symbols[name.lower()].aliases

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._symbols

    def __iter__(self) -> Iterator[str]:
        return (symbol.name for symbol in self._symbols.values())

    def __len__(self) -> int:
        return len(self._symbols)

    def symbol(self, name: str) -> FunctionSymbol:
        return self._symbols[name.lower()]

    def symbols(self) -> List[FunctionSymbol]:
        return list(self._symbols.values())

    def is_local(self, name: str) -> bool:
        """Return True when ``name`` is a function or alias declared in the project sources."""
        return name.lower() in self._local

    def alias_owners(self) -> Dict[str, List[str]]:
        """Map every declared alias to the functions declaring it, in declaration order."""
        owners: Dict[str, List[str]] = {}
        for symbol in self._symbols.values():
            for alias in symbol.aliases:
                owners.setdefault(alias, []).append(symbol.name)
        return owners


class CommandKind(str, Enum):
    CMDLET = "Cmdlet"
    FUNCTION = "Function"
    APPLICATION = "Application"
    ALIAS = "Alias"
    UNKNOWN = "Unknown"


@dataclass(frozen=True)
class CommandReference:
    """An invoked command name and where it resolves to."""

    name: str
    module: str = ""
    kind: CommandKind = CommandKind.UNKNOWN
    is_alias: bool = False
    definition: Optional[str] = None


class VerdictKind(str, Enum):
    SATISFIED_REQUIRED = "SatisfiedRequired"
    SATISFIED_TRANSITIVE_REQUIRED = "SatisfiedTransitiveRequired"
    APPROVED_MISSING = "ApprovedMissing"
    UNRESOLVED_MISSING = "UnresolvedMissing"


@dataclass(frozen=True)
class DependencyVerdict:
    """Classification of one referenced module against the configured module sets."""

    module: str
    kind: VerdictKind
    commands: Tuple[str, ...]


@dataclass
class DependencyReport:
    """Output of dependency resolution, also rendered as a build diagnostic."""

    references: List[CommandReference] = field(default_factory=list)
    verdicts: List[DependencyVerdict] = field(default_factory=list)
    unresolved: List[CommandReference] = field(default_factory=list)
    applications: List[str] = field(default_factory=list)
    transitive_modules: List[str] = field(default_factory=list)
    hints: Dict[str, str] = field(default_factory=dict)
    inlined: Dict[str, str] = field(default_factory=dict)

    def verdict_for(self, module: str) -> DependencyVerdict | None:
        for verdict in self.verdicts:
            if verdict.module.lower() == module.lower():
                return verdict
        return None

    def summary_lines(self) -> List[str]:
        """Return a plain-text rendering of verdicts for CLI and logs."""
        lines: List[str] = []
        for verdict in self.verdicts:
            lines.append(f"{verdict.kind.value}: {verdict.module} ({', '.join(verdict.commands)})")
        for reference in self.unresolved:
            hint = self.hints.get(reference.name)
            suffix = f" (possibly from module {hint})" if hint else ""
            lines.append(f"Unresolved command: {reference.name}{suffix}")
        for name in self.applications:
            lines.append(f"Application: {name}")
        for name in self.inlined:
            lines.append(f"Inlined: {name}")
        return lines


@dataclass(frozen=True)
class RequiredModule:
    """A required-module entry after sentinel resolution."""

    name: str
    module_version: Optional[str] = None
    required_version: Optional[str] = None
    maximum_version: Optional[str] = None
    guid: Optional[str] = None

    def is_bare(self) -> bool:
        return not any((self.module_version, self.required_version, self.maximum_version, self.guid))


@dataclass(frozen=True)
class ExportLists:
    """The single export surface shared by the export trailer and the manifest."""

    functions: Tuple[str, ...] = ()
    aliases: Tuple[str, ...] = ()
    cmdlets: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ManifestRecord:
    """Structured module metadata written to the ``.psd1`` file."""

    module_name: str
    version: str
    guid: str
    exports: ExportLists
    root_module: str
    author: Optional[str] = None
    company_name: Optional[str] = None
    copyright: Optional[str] = None
    description: Optional[str] = None
    powershell_version: Optional[str] = None
    compatible_ps_editions: Tuple[str, ...] = ()
    required_modules: Tuple[RequiredModule, ...] = ()
    tags: Tuple[str, ...] = ()
    license_uri: Optional[str] = None
    project_uri: Optional[str] = None
    icon_uri: Optional[str] = None
    release_notes: Optional[str] = None
    prerelease: Optional[str] = None
    require_license_acceptance: Optional[bool] = None
    external_module_dependencies: Tuple[str, ...] = ()
    extra: Tuple[Tuple[str, object], ...] = ()


@dataclass(frozen=True)
class AssembledArtifact:
    """Merged (or linked) module text plus the library loader snippet."""

    script: str
    loader: Optional[str]
    exports: ExportLists
    library_file: Optional[str] = None
    linked_files: Tuple[str, ...] = ()
