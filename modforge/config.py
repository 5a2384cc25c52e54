"""Configuration loading for modforge (.modforge.yml)."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import yaml

from .errors import ConfigError
from .versioning import parse_version_expression

CONFIG_FILENAME = ".modforge.yml"

SORT_POLICIES = ("none", "ascending", "descending")
MANIFEST_STYLES = ("native", "normalized")
DUPLICATE_POLICIES = ("warn", "error")
SENTINELS = ("latest", "auto")

_DEFAULT_SCRIPT_DIRS = ("Private", "Public", "Enums")
_DEFAULT_CLASS_DIRS = ("Classes",)
_DEFAULT_ASSET_DIRS = ("Images", "Resources", "Templates", "Bin", "Lib", "Data")
_DEFAULT_ROOT_INCLUDES = ("*.psm1", "*.psd1", "License*")


@dataclass(frozen=True)
class RequiredModuleSpec:
    """A required module as declared by the user; versions may be sentinels."""

    name: str
    module_version: Optional[str] = None
    required_version: Optional[str] = None
    maximum_version: Optional[str] = None
    guid: Optional[str] = None

    def has_sentinel(self) -> bool:
        values = (self.module_version, self.required_version, self.guid)
        return any(value is not None and value.lower() in SENTINELS for value in values)


@dataclass(frozen=True)
class ModuleInfo:
    """Identity and descriptive metadata for the module being built."""

    name: str
    version: str = "1.0.X"
    guid: Optional[str] = None
    author: Optional[str] = None
    company_name: Optional[str] = None
    copyright: Optional[str] = None
    description: Optional[str] = None
    powershell_version: Optional[str] = "5.1"
    compatible_ps_editions: Tuple[str, ...] = ("Desktop", "Core")
    tags: Tuple[str, ...] = ()
    license_uri: Optional[str] = None
    project_uri: Optional[str] = None
    icon_uri: Optional[str] = None
    release_notes: Optional[str] = None
    prerelease: Optional[str] = None
    require_license_acceptance: Optional[bool] = None
    external_module_dependencies: Tuple[str, ...] = ()
    functions_to_export: Optional[Tuple[str, ...]] = None
    aliases_to_export: Optional[Tuple[str, ...]] = None
    cmdlets_to_export: Tuple[str, ...] = ()


@dataclass(frozen=True)
class InformationConfig:
    """Directory-role mapping and exclusions used by the classifier."""

    script_dirs: Tuple[str, ...] = _DEFAULT_SCRIPT_DIRS
    class_dirs: Tuple[str, ...] = _DEFAULT_CLASS_DIRS
    array_include_dirs: Tuple[str, ...] = ()
    asset_dirs: Tuple[str, ...] = _DEFAULT_ASSET_DIRS
    root_includes: Tuple[str, ...] = _DEFAULT_ROOT_INCLUDES
    exclude: Tuple[str, ...] = ()
    functions_to_export_folder: Optional[str] = "Public"
    libraries_core: str = "Lib/Core"
    libraries_default: str = "Lib/Default"
    libraries_standard: str = "Lib/Standard"


@dataclass(frozen=True)
class ModuleSkip:
    """Suppression rules for unresolved dependencies."""

    ignore_module_name: Tuple[str, ...] = ()
    ignore_function_name: Tuple[str, ...] = ()
    force: bool = False

    def ignores_module(self, name: str) -> bool:
        return name.lower() in {item.lower() for item in self.ignore_module_name}

    def ignores_function(self, name: str) -> bool:
        return name.lower() in {item.lower() for item in self.ignore_function_name}


@dataclass(frozen=True)
class ArtefactConfig:
    """Optional zip artefact produced after a successful build."""

    enabled: bool = False
    path: Optional[Path] = None
    include_version: bool = True


@dataclass(frozen=True)
class BuildOptions:
    """Switches controlling assembly, manifest style and output placement."""

    merge: bool = True
    merge_missing: bool = False
    sort: str = "none"
    do_not_fix_relative_paths: bool = False
    rewrite_exempt: Tuple[str, ...] = ()
    manifest_style: str = "normalized"
    duplicate_functions: str = "warn"
    handle_assemblies_with_same_name: bool = True
    library_separate_file: bool = False
    destinations: Tuple[Path, ...] = ()
    versioned_destination: bool = False
    command_catalog: Optional[Path] = None
    use_host_lookup: bool = False


@dataclass(frozen=True)
class BuildConfig:
    """Immutable build configuration handed to every pipeline stage."""

    root: Path
    module: ModuleInfo
    information: InformationConfig = field(default_factory=InformationConfig)
    build: BuildOptions = field(default_factory=BuildOptions)
    module_skip: ModuleSkip = field(default_factory=ModuleSkip)
    artefact: ArtefactConfig = field(default_factory=ArtefactConfig)
    required_modules: Tuple[RequiredModuleSpec, ...] = ()
    approved_modules: Tuple[str, ...] = ()
    command_modules: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    catalog: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))
    manifest_extra: Tuple[Tuple[str, Any], ...] = ()


def load_config(config_path: Path, *, root: Path | None = None) -> BuildConfig:
    """Load configuration from disk.

    ``config_path`` may be the project directory or the YAML file itself.
    """
    config_file = _resolve_config_path(Path(config_path))
    if not config_file.exists():
        raise ConfigError(f"Configuration file not found: {config_file}", identifier=str(config_file))
    data = _read_config(config_file)
    return build_config(data, root=root or config_file.parent)


def build_config(data: Mapping[str, Any], *, root: Path | str | None) -> BuildConfig:
    """Normalize a raw configuration mapping into a ``BuildConfig``."""
    if not isinstance(data, Mapping):
        raise ConfigError(f"{CONFIG_FILENAME} must contain a mapping at the root")
    if root is None or not str(root).strip():
        raise ConfigError("Project path is required")
    project_root = Path(root).expanduser().resolve()
    if _as_str(data.get("project_path")):
        project_root = (project_root / str(data["project_path"])).resolve()

    module = _module_info(_as_dict(data.get("module")))
    information = _information(_as_dict(data.get("information")))
    build = _build_options(_as_dict(data.get("build")), project_root)
    skip_data = _as_dict(data.get("module_skip"))
    module_skip = ModuleSkip(
        ignore_module_name=tuple(_as_str_list(skip_data.get("ignore_module_name"))),
        ignore_function_name=tuple(_as_str_list(skip_data.get("ignore_function_name"))),
        force=bool(_as_bool(skip_data.get("force"))),
    )
    artefact_data = _as_dict(data.get("artefact"))
    artefact_path = _as_str(artefact_data.get("path"))
    artefact = ArtefactConfig(
        enabled=bool(_as_bool(artefact_data.get("enabled"))),
        path=(project_root / artefact_path) if artefact_path else None,
        include_version=_as_bool(artefact_data.get("include_version")) is not False,
    )

    required = tuple(_required_module(entry) for entry in _as_list(data.get("required_modules")))
    approved = tuple(_as_str_list(data.get("approved_modules")))

    command_modules = {
        str(module_name): tuple(_as_str_list(commands))
        for module_name, commands in _as_dict(data.get("command_modules")).items()
    }
    manifest_extra = tuple(_as_dict(_as_dict(data.get("manifest")).get("extra")).items())

    return BuildConfig(
        root=project_root,
        module=module,
        information=information,
        build=build,
        module_skip=module_skip,
        artefact=artefact,
        required_modules=required,
        approved_modules=approved,
        command_modules=MappingProxyType(command_modules),
        catalog=MappingProxyType(_as_dict(data.get("catalog"))),
        manifest_extra=manifest_extra,
    )


def _module_info(data: Dict[str, Any]) -> ModuleInfo:
    name = _as_str(data.get("name"))
    if not name or not name.strip():
        raise ConfigError("module.name is required")
    version = _as_str(data.get("version")) or "1.0.X"
    parse_version_expression(version)

    functions = data.get("functions_to_export")
    aliases = data.get("aliases_to_export")
    editions = data.get("compatible_ps_editions")
    return ModuleInfo(
        name=name.strip(),
        version=version,
        guid=_as_str(data.get("guid")),
        author=_as_str(data.get("author")),
        company_name=_as_str(data.get("company_name")),
        copyright=_as_str(data.get("copyright")),
        description=_as_str(data.get("description")),
        powershell_version=_as_str(data.get("powershell_version")) or "5.1",
        compatible_ps_editions=tuple(_as_str_list(editions)) if editions is not None else ("Desktop", "Core"),
        tags=tuple(_as_str_list(data.get("tags"))),
        license_uri=_as_str(data.get("license_uri")),
        project_uri=_as_str(data.get("project_uri")),
        icon_uri=_as_str(data.get("icon_uri")),
        release_notes=_as_str(data.get("release_notes")),
        prerelease=_as_str(data.get("prerelease")),
        require_license_acceptance=_as_bool(data.get("require_license_acceptance")),
        external_module_dependencies=tuple(_as_str_list(data.get("external_module_dependencies"))),
        functions_to_export=tuple(_as_str_list(functions)) if functions is not None else None,
        aliases_to_export=tuple(_as_str_list(aliases)) if aliases is not None else None,
        cmdlets_to_export=tuple(_as_str_list(data.get("cmdlets_to_export"))),
    )


def _information(data: Dict[str, Any]) -> InformationConfig:
    defaults = InformationConfig()

    def _dirs(key: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
        if key not in data or data.get(key) is None:
            return default
        return tuple(_normalize_dir(item) for item in _as_str_list(data.get(key)))

    export_folder = data.get("functions_to_export_folder", defaults.functions_to_export_folder)
    legacy = _include_to_array(data.get("include_to_array"))
    asset_dirs = _dirs("asset_dirs", defaults.asset_dirs)
    if legacy.get("asset_dirs"):
        asset_dirs = tuple(_normalize_dir(item) for item in legacy["asset_dirs"])
    root_includes = (
        tuple(_as_str_list(data["root_includes"])) if data.get("root_includes") is not None else defaults.root_includes
    )
    if legacy.get("root_includes"):
        root_includes = tuple(legacy["root_includes"])
    return InformationConfig(
        script_dirs=_dirs("script_dirs", defaults.script_dirs),
        class_dirs=_dirs("class_dirs", defaults.class_dirs),
        array_include_dirs=tuple(_normalize_dir(item) for item in legacy.get("array_include_dirs", [])),
        asset_dirs=asset_dirs,
        root_includes=root_includes,
        exclude=tuple(_as_str_list(data.get("exclude"))) + tuple(legacy.get("exclude", [])),
        functions_to_export_folder=_normalize_dir(str(export_folder)) if export_folder else None,
        libraries_core=_normalize_dir(_as_str(data.get("libraries_core")) or defaults.libraries_core),
        libraries_default=_normalize_dir(_as_str(data.get("libraries_default")) or defaults.libraries_default),
        libraries_standard=_normalize_dir(_as_str(data.get("libraries_standard")) or defaults.libraries_standard),
    )


_INCLUDE_TO_ARRAY_KEYS = {
    "includeroot": "root_includes",
    "includeps1": "array_include_dirs",
    "includeall": "asset_dirs",
    "excludefrompackage": "exclude",
}


def _include_to_array(value: Any) -> Dict[str, List[str]]:
    """Group the legacy ``{Key: [values]}`` and ``[{key, values}]`` shapes by target field.

    ``IncludeRoot``, ``IncludeAll`` and ``ExcludeFromPackage`` address the root patterns,
    asset directories and exclusions; ``IncludePS1``, any other key and bare values
    are array-include directories.
    """
    grouped: Dict[str, List[str]] = {}
    if value is None:
        return grouped

    def _add(key: Any, values: Any) -> None:
        target = _INCLUDE_TO_ARRAY_KEYS.get(str(key or "").strip().lower(), "array_include_dirs")
        grouped.setdefault(target, []).extend(_as_str_list(values))

    if isinstance(value, Mapping):
        for key, entry in value.items():
            _add(key, entry)
        return grouped
    for entry in _as_list(value):
        if isinstance(entry, Mapping):
            _add(entry.get("key", entry.get("Key")), entry.get("values", entry.get("Values")))
        else:
            _add(None, entry)
    return grouped


def _build_options(data: Dict[str, Any], root: Path) -> BuildOptions:
    defaults = BuildOptions()
    sort = (_as_str(data.get("sort")) or defaults.sort).lower()
    if sort not in SORT_POLICIES:
        raise ConfigError(f"Unknown sort policy: {sort}", identifier="build.sort")
    style = (_as_str(data.get("manifest_style")) or defaults.manifest_style).lower()
    if style not in MANIFEST_STYLES:
        raise ConfigError(f"Unknown manifest style: {style}", identifier="build.manifest_style")
    duplicates = (_as_str(data.get("duplicate_functions")) or defaults.duplicate_functions).lower()
    if duplicates not in DUPLICATE_POLICIES:
        raise ConfigError(
            f"Unknown duplicate function policy: {duplicates}",
            identifier="build.duplicate_functions",
        )
    catalog = _as_str(data.get("command_catalog"))

    def _flag(key: str, default: bool) -> bool:
        value = _as_bool(data.get(key))
        return default if value is None else value

    return BuildOptions(
        merge=_flag("merge", defaults.merge),
        merge_missing=_flag("merge_missing", defaults.merge_missing),
        sort=sort,
        do_not_fix_relative_paths=_flag("do_not_fix_relative_paths", defaults.do_not_fix_relative_paths),
        rewrite_exempt=tuple(_normalize_dir(item) for item in _as_str_list(data.get("rewrite_exempt"))),
        manifest_style=style,
        duplicate_functions=duplicates,
        handle_assemblies_with_same_name=_flag(
            "handle_assemblies_with_same_name", defaults.handle_assemblies_with_same_name
        ),
        library_separate_file=_flag("library_separate_file", defaults.library_separate_file),
        destinations=tuple((root / item).resolve() for item in _as_str_list(data.get("destinations"))),
        versioned_destination=_flag("versioned_destination", defaults.versioned_destination),
        command_catalog=(root / catalog).resolve() if catalog else None,
        use_host_lookup=_flag("use_host_lookup", defaults.use_host_lookup),
    )


_REQUIRED_MODULE_KEYS = {
    "name": "name",
    "modulename": "name",
    "version": "module_version",
    "module_version": "module_version",
    "moduleversion": "module_version",
    "minimum_version": "module_version",
    "minimumversion": "module_version",
    "required_version": "required_version",
    "requiredversion": "required_version",
    "maximum_version": "maximum_version",
    "maximumversion": "maximum_version",
    "guid": "guid",
}


def _required_module(entry: Any) -> RequiredModuleSpec:
    """Accept a bare module name or a mapping using modern or legacy key names."""
    if isinstance(entry, str):
        if not entry.strip():
            raise ConfigError("Required module name is empty")
        return RequiredModuleSpec(name=entry.strip())
    if not isinstance(entry, Mapping):
        raise ConfigError(f"Unsupported required module entry: {entry!r}")
    values: Dict[str, Optional[str]] = {}
    for key, value in entry.items():
        target = _REQUIRED_MODULE_KEYS.get(str(key).lower())
        if target is None:
            raise ConfigError(f"Unknown required module field: {key}", identifier=str(entry))
        values[target] = _as_str(value)
    name = values.pop("name", None)
    if not name:
        raise ConfigError("Required module entry has no name", identifier=str(entry))
    return RequiredModuleSpec(name=name, **values)


def _normalize_dir(value: str) -> str:
    return value.replace("\\", "/").strip("/")


def _resolve_config_path(config_path: Path) -> Path:
    config_path = config_path.expanduser()
    if config_path.is_dir():
        return (config_path / CONFIG_FILENAME).resolve()
    return config_path.resolve()


def _read_config(path: Path) -> Dict[str, Any]:
    text = path.read_text(encoding="utf-8")
    if not text.strip():
        return {}
    try:
        loaded = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Failed to parse {path.name}: {exc}", identifier=str(path)) from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"{path.name} must contain a mapping at the root", identifier=str(path))
    return loaded


def _as_dict(value: Any) -> Dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _as_str(value: Any) -> Optional[str]:
    return str(value) if isinstance(value, (str, int, float, bool)) else None


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"true", "yes", "1"}:
            return True
        if lowered in {"false", "no", "0"}:
            return False
    return None


def _as_str_list(value: Any) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, Sequence):
        return [str(item) for item in value if isinstance(item, (str, int, float, bool))]
    return []


__all__ = [
    "ArtefactConfig",
    "BuildConfig",
    "BuildOptions",
    "CONFIG_FILENAME",
    "ConfigError",
    "InformationConfig",
    "ModuleInfo",
    "ModuleSkip",
    "RequiredModuleSpec",
    "build_config",
    "load_config",
]
