"""Module manifest synthesis, serialization and round-trip validation."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .analyzers.commands import CommandLookup, InstalledModule
from .config import SENTINELS, BuildConfig, RequiredModuleSpec
from .errors import DuplicateExportError, ManifestError
from .logging import get_logger
from .models import BuildReport, ExportLists, ManifestRecord, RequiredModule, SymbolTable
from .powershell.data import PowerShellSyntaxError, dumps, get_key, loads
from .rendering import render

_LOGGER = get_logger("manifest")

# Top-level manifest keys in New-ModuleManifest order, with the comment it writes above each.
MANIFEST_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("RootModule", "Script module or binary module file associated with this manifest."),
    ("ModuleVersion", "Version number of this module."),
    ("CompatiblePSEditions", "Supported PSEditions"),
    ("GUID", "ID used to uniquely identify this module"),
    ("Author", "Author of this module"),
    ("CompanyName", "Company or vendor of this module"),
    ("Copyright", "Copyright statement for this module"),
    ("Description", "Description of the functionality provided by this module"),
    ("PowerShellVersion", "Minimum version of the PowerShell engine required by this module"),
    ("PowerShellHostName", "Name of the PowerShell host required by this module"),
    ("PowerShellHostVersion", "Minimum version of the PowerShell host required by this module"),
    ("DotNetFrameworkVersion", "Minimum version of Microsoft .NET Framework required by this module"),
    ("ClrVersion", "Minimum version of the common language runtime (CLR) required by this module"),
    ("ProcessorArchitecture", "Processor architecture (None, X86, Amd64) required by this module"),
    ("RequiredModules", "Modules that must be imported into the global environment prior to importing this module"),
    ("RequiredAssemblies", "Assemblies that must be loaded prior to importing this module"),
    ("ScriptsToProcess", "Script files (.ps1) that are run in the caller's environment prior to importing this module."),
    ("TypesToProcess", "Type files (.ps1xml) to be loaded when importing this module"),
    ("FormatsToProcess", "Format files (.ps1xml) to be loaded when importing this module"),
    ("NestedModules", "Modules to import as nested modules of the module specified in RootModule/ModuleToProcess"),
    ("FunctionsToExport", "Functions to export from this module, for best performance, do not use wildcards and do not delete the entry, use an empty array if there are no functions to export."),
    ("CmdletsToExport", "Cmdlets to export from this module, for best performance, do not use wildcards and do not delete the entry, use an empty array if there are no cmdlets to export."),
    ("VariablesToExport", "Variables to export from this module"),
    ("AliasesToExport", "Aliases to export from this module, for best performance, do not use wildcards and do not delete the entry, use an empty array if there are no aliases to export."),
    ("DscResourcesToExport", "DSC resources to export from this module"),
    ("ModuleList", "List of all modules packaged with this module"),
    ("FileList", "List of all files packaged with this module"),
    ("PrivateData", "Private data to pass to the module specified in RootModule/ModuleToProcess. This may also contain a PSData hashtable with additional module metadata used by PowerShell."),
    ("HelpInfoURI", "HelpInfo URI of this module"),
    ("DefaultCommandPrefix", "Default prefix for commands exported from this module. Override the default prefix using Import-Module -Prefix."),
)

PSDATA_FIELDS = (
    "Tags",
    "LicenseUri",
    "ProjectUri",
    "IconUri",
    "ReleaseNotes",
    "Prerelease",
    "RequireLicenseAcceptance",
    "ExternalModuleDependencies",
)

# Keys owned by the build; user-supplied values for them are ignored.
_MANAGED_FIELDS = frozenset(
    key.lower()
    for key in (
        "RootModule",
        "ModuleVersion",
        "GUID",
        "FunctionsToExport",
        "AliasesToExport",
        "CmdletsToExport",
        "RequiredModules",
        "PrivateData",
    )
)
_ALLOWED_FIELDS = {key.lower(): key for key, _ in MANIFEST_FIELDS}
_PSDATA_LOOKUP = {key.lower(): key for key in PSDATA_FIELDS}


def validate_exports(symbols: SymbolTable) -> None:
    """Reject aliases that shadow a function or are declared by two functions."""
    owners: Dict[str, Tuple[str, List[str]]] = {}
    for symbol in symbols.symbols():
        for alias in symbol.aliases:
            if alias in symbols:
                raise DuplicateExportError(
                    f"Alias {alias} declared by {symbol.name} is also a function name",
                    identifier=alias,
                )
            _, functions = owners.setdefault(alias.lower(), (alias, []))
            if symbol.name not in functions:
                functions.append(symbol.name)
    for display, functions in owners.values():
        if len(functions) > 1:
            raise DuplicateExportError(
                f"Alias {display} is declared by more than one function: {', '.join(functions)}",
                identifier=display,
            )


def validate_export_lists(exports: ExportLists) -> None:
    """Reject an export surface where an alias repeats or shadows an exported command."""
    commands = {name.lower() for name in (*exports.functions, *exports.cmdlets)}
    seen: set[str] = set()
    for alias in exports.aliases:
        key = alias.lower()
        if key in commands:
            raise DuplicateExportError(f"Exported alias {alias} is also an exported command name", identifier=alias)
        if key in seen:
            raise DuplicateExportError(f"Alias {alias} is exported more than once", identifier=alias)
        seen.add(key)


def _names(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [str(item) for item in value]
    return [str(value)]


class ManifestSynthesizer:
    """Builds the manifest record and writes it in the configured style."""

    def __init__(
        self,
        config: BuildConfig,
        lookup: CommandLookup | None = None,
        *,
        report: BuildReport | None = None,
    ) -> None:
        self.config = config
        self.lookup = lookup
        self.report = report if report is not None else BuildReport()

    @property
    def manifest_name(self) -> str:
        return f"{self.config.module.name}.psd1"

    @property
    def root_module(self) -> str:
        return f"{self.config.module.name}.psm1"

    def export_lists(self, symbols: SymbolTable) -> ExportLists:
        """Return the export surface used by both the trailer and the manifest."""
        module = self.config.module
        folder = self.config.information.functions_to_export_folder
        exported = [
            symbol
            for symbol in symbols.symbols()
            if not folder or symbol.path.startswith(f"{folder}/")
        ]
        if module.functions_to_export is not None:
            functions = list(module.functions_to_export)
            for name in functions:
                if name not in symbols:
                    self.report.add("manifest", "warning", f"Exported function {name} is not declared", name)
        else:
            functions = [symbol.name for symbol in exported]

        if module.aliases_to_export is not None:
            aliases = list(module.aliases_to_export)
        else:
            wanted = {name.lower() for name in functions}
            aliases = []
            for symbol in symbols.symbols():
                if symbol.name.lower() in wanted:
                    aliases.extend(symbol.aliases)
        exports = ExportLists(
            functions=tuple(functions),
            aliases=tuple(aliases),
            cmdlets=tuple(module.cmdlets_to_export),
        )
        validate_export_lists(exports)
        return exports

    def resolve_required_modules(self, *, drop: Iterable[str] = ()) -> Tuple[RequiredModule, ...]:
        """Resolve sentinel versions and GUIDs against installed modules.

        Raises ManifestError when a sentinel cannot be resolved.
        """
        dropped = {name.lower() for name in drop}
        resolved: List[RequiredModule] = []
        for spec in self.config.required_modules:
            if spec.name.lower() in dropped:
                self.report.add("manifest", "info", f"Required module {spec.name} is inlined and dropped", spec.name)
                continue
            resolved.append(self._resolve(spec))
        return tuple(resolved)

    def _resolve(self, spec: RequiredModuleSpec) -> RequiredModule:
        info: Optional[InstalledModule] = None
        if spec.has_sentinel():
            info = self._installed(spec.name)

        def _value(value: Optional[str], attribute: str) -> Optional[str]:
            if value is None or value.lower() not in SENTINELS:
                return value
            found = getattr(info, attribute, None)
            if not found:
                raise ManifestError(
                    f"Could not resolve {value!r} {attribute} for required module {spec.name}",
                    identifier=spec.name,
                )
            return str(found)

        required_version = _value(spec.required_version, "version")
        module_version = None if required_version else _value(spec.module_version, "version")
        return RequiredModule(
            name=spec.name,
            module_version=module_version,
            required_version=required_version,
            maximum_version=spec.maximum_version,
            guid=_value(spec.guid, "guid"),
        )

    def _installed(self, name: str) -> InstalledModule:
        if self.lookup is None:
            raise ManifestError(f"No module lookup available to resolve required module {name}", identifier=name)
        try:
            info = self.lookup.module_info(name)
        except Exception as exc:  # lookups are best-effort, sentinels are not
            raise ManifestError(f"Module lookup failed: {exc}", identifier=name) from exc
        if info is None:
            raise ManifestError(f"Required module {name} is not installed", identifier=name)
        return info

    def module_guid(self, existing: Mapping[str, Any] | None = None) -> str:
        """Configured GUID, else the one in the previous manifest, else one derived from the name."""
        if self.config.module.guid:
            return self.config.module.guid
        if existing:
            previous = get_key(existing, "GUID")
            if previous:
                return str(previous)
        return str(uuid.uuid5(uuid.NAMESPACE_URL, f"modforge:{self.config.module.name.lower()}"))

    def build_record(
        self,
        *,
        version: str,
        exports: ExportLists,
        required_modules: Sequence[RequiredModule] = (),
        guid: str | None = None,
    ) -> ManifestRecord:
        module = self.config.module
        return ManifestRecord(
            module_name=module.name,
            version=version,
            guid=guid or self.module_guid(),
            exports=exports,
            root_module=self.root_module,
            author=module.author,
            company_name=module.company_name,
            copyright=module.copyright,
            description=module.description,
            powershell_version=module.powershell_version,
            compatible_ps_editions=module.compatible_ps_editions,
            required_modules=tuple(required_modules),
            tags=module.tags,
            license_uri=module.license_uri,
            project_uri=module.project_uri,
            icon_uri=module.icon_uri,
            release_notes=module.release_notes,
            prerelease=module.prerelease,
            require_license_acceptance=module.require_license_acceptance,
            external_module_dependencies=module.external_module_dependencies,
            extra=self.config.manifest_extra,
        )

    def render(self, record: ManifestRecord) -> str:
        """Serialize ``record`` in the configured manifest style."""
        top, psdata = self._fields(record)
        if self.config.build.manifest_style == "native":
            return self._render_native(record, top, psdata)
        if psdata:
            top["PrivateData"] = {"PSData": dict(sorted(psdata.items()))}
        return dumps(dict(sorted(top.items()))) + "\n"

    def write(self, record: ManifestRecord, directory: Path) -> Tuple[Path, str]:
        """Write the manifest into ``directory`` and verify it parses back to ``record``."""
        text = self.render(record)
        path = directory / self.manifest_name
        try:
            path.write_text(text, encoding="utf-8-sig")
        except OSError as exc:
            raise ManifestError(f"Could not write manifest: {exc}", identifier=str(path)) from exc
        self.verify(path, record)
        _LOGGER.info("Wrote manifest %s (version %s)", path.name, record.version)
        return path, text

    def verify(self, path: Path, record: ManifestRecord) -> Dict[str, Any]:
        """Re-read a written manifest and compare it with the record it came from."""
        try:
            data = loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, PowerShellSyntaxError) as exc:
            raise ManifestError(f"Manifest does not parse back: {exc}", identifier=str(path)) from exc
        if not isinstance(data, dict):
            raise ManifestError("Manifest does not contain a hashtable", identifier=str(path))

        checks = (
            ("ModuleVersion", str(get_key(data, "ModuleVersion", "")), record.version),
            ("RootModule", str(get_key(data, "RootModule", "")), record.root_module),
            ("FunctionsToExport", _names(get_key(data, "FunctionsToExport")), list(record.exports.functions)),
            ("AliasesToExport", _names(get_key(data, "AliasesToExport")), list(record.exports.aliases)),
        )
        for key, found, expected in checks:
            if found != expected:
                raise ManifestError(
                    f"Manifest field {key} reads back as {found!r}, expected {expected!r}",
                    identifier=str(path),
                )
        return data

    def _fields(self, record: ManifestRecord) -> Tuple[Dict[str, Any], Dict[str, Any]]:
        top: Dict[str, Any] = {
            "RootModule": record.root_module,
            "ModuleVersion": record.version,
            "GUID": record.guid,
            "FunctionsToExport": list(record.exports.functions),
            "AliasesToExport": list(record.exports.aliases),
            "CmdletsToExport": list(record.exports.cmdlets),
        }
        optional = {
            "Author": record.author,
            "CompanyName": record.company_name,
            "Copyright": record.copyright,
            "Description": record.description,
            "PowerShellVersion": record.powershell_version,
            "CompatiblePSEditions": list(record.compatible_ps_editions) or None,
        }
        top.update({key: value for key, value in optional.items() if value is not None})
        if record.required_modules:
            top["RequiredModules"] = [_required_entry(item) for item in record.required_modules]

        psdata: Dict[str, Any] = {
            key: value
            for key, value in (
                ("Tags", list(record.tags) or None),
                ("LicenseUri", record.license_uri),
                ("ProjectUri", record.project_uri),
                ("IconUri", record.icon_uri),
                ("ReleaseNotes", record.release_notes),
                ("Prerelease", record.prerelease),
                ("RequireLicenseAcceptance", record.require_license_acceptance),
                ("ExternalModuleDependencies", list(record.external_module_dependencies) or None),
            )
            if value is not None
        }

        for key, value in record.extra:
            lowered = str(key).lower()
            if lowered in _PSDATA_LOOKUP:
                psdata[_PSDATA_LOOKUP[lowered]] = value
            elif lowered in _MANAGED_FIELDS:
                self.report.add("manifest", "warning", f"Manifest field {key} is managed by the build and ignored", str(key))
            elif lowered in _ALLOWED_FIELDS:
                top[_ALLOWED_FIELDS[lowered]] = value
            else:
                self.report.add("manifest", "warning", f"Unknown manifest field {key} dropped", str(key))
        return top, psdata

    def _render_native(self, record: ManifestRecord, top: Dict[str, Any], psdata: Dict[str, Any]) -> str:
        if record.prerelease:
            raise ManifestError(
                "The native manifest style does not support a prerelease tag",
                identifier=record.module_name,
            )
        if record.external_module_dependencies or "ExternalModuleDependencies" in psdata:
            raise ManifestError(
                "The native manifest style does not support external module dependencies",
                identifier=record.module_name,
            )
        entries = [
            {"key": key, "comment": comment, "value": top[key]}
            for key, comment in MANIFEST_FIELDS
            if key in top and key != "PrivateData"
        ]
        return render(
            "manifest_native.psd1.j2",
            module_name=record.module_name,
            author=record.author,
            entries=entries,
            psdata=psdata,
        )


def _required_entry(module: RequiredModule) -> Any:
    if module.is_bare():
        return module.name
    entry: Dict[str, Any] = {"ModuleName": module.name}
    if module.required_version:
        entry["RequiredVersion"] = module.required_version
    elif module.module_version:
        entry["ModuleVersion"] = module.module_version
    if module.maximum_version:
        entry["MaximumVersion"] = module.maximum_version
    if module.guid:
        entry["Guid"] = module.guid
    return entry


__all__ = [
    "MANIFEST_FIELDS",
    "ManifestSynthesizer",
    "PSDATA_FIELDS",
    "validate_export_lists",
    "validate_exports",
]
