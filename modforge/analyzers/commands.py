"""Command and module lookup used to attribute commands to modules."""

from __future__ import annotations

import json
import os
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import yaml

from ..errors import ConfigError
from ..logging import get_logger
from ..models import CommandKind

_LOGGER = get_logger("analyzers.commands")

# Commands every supported host ships with; never reported as dependencies.
BUILTIN_COMMAND_NAMES = frozenset(
    name.lower()
    for name in (
        "Add-Content", "Add-Type", "Clear-Variable", "ConvertFrom-Json", "ConvertTo-Json",
        "Copy-Item", "Export-ModuleMember", "ForEach-Object", "Format-List", "Format-Table",
        "Get-Alias", "Get-ChildItem", "Get-Command", "Get-Content", "Get-Date", "Get-Item",
        "Get-ItemProperty", "Get-Location", "Get-Member", "Get-Variable", "Import-Module",
        "Join-Path", "Measure-Object", "Move-Item", "New-Alias", "New-Item", "New-Object",
        "Out-File", "Out-Null", "Out-String", "Pop-Location", "Push-Location", "Remove-Item",
        "Remove-Variable", "Resolve-Path", "Select-Object", "Set-Alias", "Set-Content",
        "Set-Item", "Set-ItemProperty", "Set-Location", "Set-Variable", "Sort-Object",
        "Split-Path", "Start-Process", "Start-Sleep", "Test-Path", "Where-Object",
        "Write-Debug", "Write-Error", "Write-Host", "Write-Information", "Write-Output",
        "Write-Progress", "Write-Verbose", "Write-Warning",
    )
)

BUILTIN_MODULE_PREFIX = "microsoft.powershell."
BUILTIN_MODULES = frozenset(("cimcmdlets", "microsoft.wsman.management"))

BUILTIN_CATALOG = Path(__file__).resolve().parent.parent / "catalogs" / "builtin.yml"


def is_builtin_module(module: str) -> bool:
    key = module.lower()
    return key.startswith(BUILTIN_MODULE_PREFIX) or key in BUILTIN_MODULES


@dataclass(frozen=True)
class CommandInfo:
    """What the host knows about one command name."""

    name: str
    module: str = ""
    kind: CommandKind = CommandKind.UNKNOWN
    target: Optional[str] = None
    script_block: Optional[str] = None


@dataclass(frozen=True)
class InstalledModule:
    """An installed module as reported by the host."""

    name: str
    version: Optional[str] = None
    guid: Optional[str] = None
    required_modules: Tuple[str, ...] = ()


class CommandLookup(ABC):
    """Resolves command names and module metadata."""

    @abstractmethod
    def resolve(self, name: str) -> Optional[CommandInfo]:
        """Return command information, or None when the name is unknown."""

    @abstractmethod
    def module_info(self, name: str) -> Optional[InstalledModule]:
        """Return the newest installed version of ``name``, or None."""

    def module_dependencies(self, name: str) -> Tuple[str, ...]:
        info = self.module_info(name)
        return info.required_modules if info else ()


def _kind(value: Any) -> CommandKind:
    text = str(value or "").strip().lower()
    for kind in CommandKind:
        if kind.value.lower() == text:
            return kind
    if text in ("filter", "externalscript", "script"):
        return CommandKind.FUNCTION
    return CommandKind.UNKNOWN


class StaticCommandLookup(CommandLookup):
    """Lookup backed by a precomputed catalogue, for offline builds and tests."""

    def __init__(
        self,
        commands: Iterable[CommandInfo] = (),
        modules: Iterable[InstalledModule] = (),
    ) -> None:
        self._commands = {info.name.lower(): info for info in commands}
        self._modules = {info.name.lower(): info for info in modules}

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "StaticCommandLookup":
        """Build from a catalogue mapping.

        ``cmdlets`` maps a module to its cmdlet names, ``aliases`` maps an alias to its
        target and ``commands`` carries full entries (module, kind, target, definition).
        Later sections override earlier ones for the same name.
        """
        commands: List[CommandInfo] = []
        for module, names in _section(data, "cmdlets").items():
            if isinstance(names, str):
                names = [names]
            if not isinstance(names, (list, tuple)):
                raise ConfigError(f"Invalid cmdlet list for module {module}", identifier=str(module))
            commands.extend(
                CommandInfo(name=str(name), module=str(module), kind=CommandKind.CMDLET) for name in names
            )
        for alias, target in _section(data, "aliases").items():
            commands.append(CommandInfo(name=str(alias), kind=CommandKind.ALIAS, target=str(target)))
        for name, entry in _section(data, "commands").items():
            if isinstance(entry, str):
                commands.append(CommandInfo(name=str(name), module=entry, kind=CommandKind.FUNCTION))
                continue
            if not isinstance(entry, Mapping):
                raise ConfigError(f"Invalid catalogue entry for command {name}", identifier=str(name))
            commands.append(
                CommandInfo(
                    name=str(name),
                    module=str(entry.get("module") or ""),
                    kind=_kind(entry.get("kind") or "Function"),
                    target=entry.get("target"),
                    script_block=entry.get("definition"),
                )
            )
        modules: List[InstalledModule] = []
        for name, entry in _section(data, "modules").items():
            entry = entry if isinstance(entry, Mapping) else {}
            required = entry.get("required_modules") or ()
            modules.append(
                InstalledModule(
                    name=str(name),
                    version=str(entry["version"]) if entry.get("version") is not None else None,
                    guid=entry.get("guid"),
                    required_modules=tuple(str(item) for item in required),
                )
            )
        return cls(commands, modules)

    @classmethod
    def from_file(cls, path: Path) -> "StaticCommandLookup":
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except (OSError, yaml.YAMLError) as exc:
            raise ConfigError(f"Could not read command catalogue: {exc}", identifier=str(path)) from exc
        if not isinstance(data, Mapping):
            raise ConfigError("Command catalogue must contain a mapping", identifier=str(path))
        return cls.from_mapping(data)

    def resolve(self, name: str) -> Optional[CommandInfo]:
        return self._commands.get(name.lower())

    def module_info(self, name: str) -> Optional[InstalledModule]:
        return self._modules.get(name.lower())


_RESOLVE_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$c = Get-Command -Name '{name}' -ErrorAction SilentlyContinue | Select-Object -First 1
if ($null -eq $c) {{ 'null'; return }}
$body = $null
if ($c.CommandType -eq 'Function' -or $c.CommandType -eq 'Filter') {{ $body = $c.ScriptBlock.ToString() }}
$target = $null
if ($c.CommandType -eq 'Alias') {{ $target = $c.ResolvedCommandName }}
[ordered]@{{
    Name = $c.Name
    Source = [string]$c.Source
    CommandType = [string]$c.CommandType
    Target = $target
    ScriptBlock = $body
}} | ConvertTo-Json -Compress
"""

_MODULE_SCRIPT = r"""
$ErrorActionPreference = 'Stop'
$m = Get-Module -ListAvailable -Name '{name}' | Sort-Object -Property Version -Descending | Select-Object -First 1
if ($null -eq $m) {{ 'null'; return }}
[ordered]@{{
    Name = $m.Name
    Version = [string]$m.Version
    Guid = [string]$m.Guid
    RequiredModules = @($m.RequiredModules | ForEach-Object {{ $_.Name }})
}} | ConvertTo-Json -Compress
"""


class PowerShellCommandLookup(CommandLookup):
    """Queries a PowerShell host through ``pwsh -Command``; results are cached per name."""

    def __init__(
        self,
        executable: str | None = None,
        runner: Callable[[Sequence[str]], str] | None = None,
    ) -> None:
        self.executable = executable or os.environ.get("MODFORGE_PWSH", "pwsh")
        self._runner = runner or self._default_runner
        self._commands: Dict[str, Optional[CommandInfo]] = {}
        self._modules: Dict[str, Optional[InstalledModule]] = {}

    def resolve(self, name: str) -> Optional[CommandInfo]:
        key = name.lower()
        if key not in self._commands:
            payload = self._query(_RESOLVE_SCRIPT.format(name=_escape(name)))
            info = None
            if isinstance(payload, dict):
                info = CommandInfo(
                    name=str(payload.get("Name") or name),
                    module=str(payload.get("Source") or ""),
                    kind=_kind(payload.get("CommandType")),
                    target=payload.get("Target"),
                    script_block=payload.get("ScriptBlock"),
                )
            self._commands[key] = info
        return self._commands[key]

    def module_info(self, name: str) -> Optional[InstalledModule]:
        key = name.lower()
        if key not in self._modules:
            payload = self._query(_MODULE_SCRIPT.format(name=_escape(name)))
            info = None
            if isinstance(payload, dict):
                required = payload.get("RequiredModules") or []
                if isinstance(required, str):
                    required = [required]
                info = InstalledModule(
                    name=str(payload.get("Name") or name),
                    version=payload.get("Version"),
                    guid=payload.get("Guid"),
                    required_modules=tuple(str(item) for item in required),
                )
            self._modules[key] = info
        return self._modules[key]

    def _query(self, script: str) -> Any:
        args = [self.executable, "-NoProfile", "-NonInteractive", "-Command", script]
        try:
            output = self._runner(args)
        except (OSError, subprocess.CalledProcessError) as exc:
            _LOGGER.warning("PowerShell lookup failed: %s", exc)
            return None
        try:
            return json.loads(output.strip() or "null")
        except json.JSONDecodeError:
            _LOGGER.warning("PowerShell lookup returned invalid JSON: %s", output[:200])
            return None

    @staticmethod
    def _default_runner(args: Sequence[str]) -> str:
        completed = subprocess.run(
            list(args),
            check=True,
            text=True,
            capture_output=True,
        )
        return completed.stdout


def _section(data: Mapping[str, Any], key: str) -> Dict[str, Any]:
    value = data.get(key) or {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Catalogue section '{key}' must be a mapping", identifier=key)
    return dict(value)


@lru_cache(maxsize=1)
def builtin_lookup() -> StaticCommandLookup:
    """Return the bundled catalogue of core PowerShell commands and default aliases."""
    return StaticCommandLookup.from_file(BUILTIN_CATALOG)


def _escape(name: str) -> str:
    return name.replace("'", "''")


class ChainedCommandLookup(CommandLookup):
    """Tries each lookup in order and returns the first answer."""

    def __init__(self, lookups: Sequence[CommandLookup]) -> None:
        self.lookups = tuple(lookups)

    def resolve(self, name: str) -> Optional[CommandInfo]:
        for lookup in self.lookups:
            info = lookup.resolve(name)
            if info is not None:
                return info
        return None

    def module_info(self, name: str) -> Optional[InstalledModule]:
        for lookup in self.lookups:
            info = lookup.module_info(name)
            if info is not None:
                return info
        return None


__all__ = [
    "BUILTIN_CATALOG",
    "BUILTIN_COMMAND_NAMES",
    "ChainedCommandLookup",
    "CommandInfo",
    "CommandLookup",
    "InstalledModule",
    "PowerShellCommandLookup",
    "StaticCommandLookup",
    "builtin_lookup",
    "is_builtin_module",
]
