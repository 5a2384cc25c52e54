"""Tests for modforge.analyzers.dependencies."""

from __future__ import annotations

import textwrap
from typing import Optional

import pytest

from modforge.analyzers.commands import CommandInfo, InstalledModule, StaticCommandLookup, builtin_lookup
from modforge.analyzers.dependencies import DependencyResolver, evaluate_dependency_policy, infer_module
from modforge.config import ModuleSkip
from modforge.errors import DependencyError
from modforge.models import BuildReport, FunctionSymbol, SymbolTable, VerdictKind


def _symbols(*names: str, aliases: tuple[str, ...] = ()) -> SymbolTable:
    return SymbolTable(FunctionSymbol(name=name, aliases=aliases, path=f"Public/{name}.ps1") for name in names)


def _script(text: str) -> str:
    return textwrap.dedent(text).lstrip("\n")


GET_FOO = _script(
    """
    function Get-Foo {
        param($Name)
        Get-ChildItem | ForEach-Object { Get-Foo }
        Publish-MyThing -Name $Name
    }
    """
)


def test_required_module_is_satisfied_and_locals_and_builtins_are_excluded() -> None:
    lookup = StaticCommandLookup.from_mapping({"commands": {"Publish-MyThing": "Gallery.Tools"}})
    report = DependencyResolver(lookup).resolve(GET_FOO, _symbols("Get-Foo"), ["Gallery.Tools"], [])

    assert [reference.name for reference in report.references] == ["Publish-MyThing"]
    (verdict,) = report.verdicts
    assert verdict.module == "Gallery.Tools"
    assert verdict.kind is VerdictKind.SATISFIED_REQUIRED
    assert verdict.commands == ("Publish-MyThing",)
    assert report.unresolved == []


def test_transitive_requirements_are_followed_without_looping() -> None:
    lookup = StaticCommandLookup.from_mapping(
        {
            "commands": {"Invoke-Deep": "Deep"},
            "modules": {
                "Top": {"required_modules": ["Middle"]},
                "Middle": {"required_modules": ["Top", "Deep"]},
                "Deep": {"version": "3.1"},
            },
        }
    )
    resolver = DependencyResolver(lookup)
    assert resolver.transitive_closure(["Top"]) == ["Top", "Middle", "Deep"]

    report = resolver.resolve("Invoke-Deep\n", _symbols(), ["Top"], [])
    assert report.transitive_modules == ["Middle", "Deep"]
    assert report.verdict_for("deep").kind is VerdictKind.SATISFIED_TRANSITIVE_REQUIRED


def test_aliases_resolve_to_their_target_module() -> None:
    lookup = StaticCommandLookup.from_mapping(
        {
            "commands": {
                "gt": {"kind": "Alias", "target": "Get-Thing"},
                "Get-Thing": {"module": "Tools"},
            }
        }
    )
    report = DependencyResolver(lookup).resolve("gt -Verbose\n", _symbols(), [], ["Tools"])
    (reference,) = report.references
    assert reference.is_alias
    assert reference.module == "Tools"
    assert report.verdict_for("Tools").kind is VerdictKind.APPROVED_MISSING


def test_qualified_names_use_their_module() -> None:
    report = DependencyResolver(StaticCommandLookup()).resolve("Other.Mod\\Invoke-It\n", _symbols(), [], [])
    assert report.verdict_for("Other.Mod").kind is VerdictKind.UNRESOLVED_MISSING
    assert report.unresolved == []


def test_local_functions_and_aliases_are_skipped() -> None:
    report = DependencyResolver(StaticCommandLookup()).resolve(
        "gf\nGet-Foo\n", _symbols("Get-Foo", aliases=("gf",)), [], []
    )
    assert report.references == []


def test_approved_functions_are_inlined_and_scanned() -> None:
    lookup = StaticCommandLookup.from_mapping(
        {
            "commands": {
                "Invoke-Helper": {"module": "Helpers", "definition": "param($x)\nGet-Deep $x\n"},
                "Get-Deep": {"module": "Deep"},
            }
        }
    )
    report = DependencyResolver(lookup).resolve(
        "Invoke-Helper -x 1\n", _symbols(), [], ["Helpers"], inline_approved=True
    )
    assert report.inlined == {"Invoke-Helper": "function Invoke-Helper {\nparam($x)\nGet-Deep $x\n}"}
    assert report.verdict_for("Helpers").kind is VerdictKind.APPROVED_MISSING
    assert report.verdict_for("Deep").kind is VerdictKind.UNRESOLVED_MISSING
    assert "Inlined: Invoke-Helper" in report.summary_lines()


def test_missing_definition_is_reported_instead_of_inlined() -> None:
    build_report = BuildReport()
    lookup = StaticCommandLookup.from_mapping({"commands": {"Invoke-Helper": "Helpers"}})
    report = DependencyResolver(lookup, report=build_report).resolve(
        "Invoke-Helper\n", _symbols(), [], ["Helpers"], inline_approved=True
    )
    assert report.inlined == {}
    assert [item.identifier for item in build_report.warnings()] == ["Invoke-Helper"]


def test_unresolved_commands_carry_hints() -> None:
    resolver = DependencyResolver(StaticCommandLookup(), command_modules={"Custom": ["Invoke-Custom"]})
    report = resolver.resolve("Get-ADUser -Identity x\nInvoke-Custom\n", _symbols(), [], [])
    assert [reference.name for reference in report.unresolved] == ["Get-ADUser", "Invoke-Custom"]
    assert report.hints == {"Get-ADUser": "ActiveDirectory", "Invoke-Custom": "Custom"}
    assert report.summary_lines() == [
        "Unresolved command: Get-ADUser (possibly from module ActiveDirectory)",
        "Unresolved command: Invoke-Custom (possibly from module Custom)",
    ]


def test_applications_and_paths() -> None:
    lookup = StaticCommandLookup.from_mapping({"commands": {"git": {"kind": "Application"}}})
    report = DependencyResolver(lookup).resolve("git status\n& './tool.ps1'\n", _symbols(), [], [])
    assert report.applications == ["git"]
    assert report.references == []


def test_segments_are_parsed_independently() -> None:
    build_report = BuildReport()
    resolver = DependencyResolver(StaticCommandLookup(), report=build_report)
    commands = resolver.invoked_commands(["Get-First\n", "function Broken {\n", "Get-Second\n"])
    assert [command.name for command in commands] == ["Get-First", "Get-Second"]
    assert len(build_report.warnings()) == 1


def test_lookup_failures_are_warnings() -> None:
    class FailingLookup(StaticCommandLookup):
        def resolve(self, name: str) -> Optional[CommandInfo]:
            raise RuntimeError("host unavailable")

        def module_info(self, name: str) -> Optional[InstalledModule]:
            raise RuntimeError("host unavailable")

    build_report = BuildReport()
    report = DependencyResolver(FailingLookup(), report=build_report).resolve(
        "Invoke-Remote\n", _symbols(), ["Needed"], []
    )
    assert [reference.name for reference in report.unresolved] == ["Invoke-Remote"]
    assert {item.identifier for item in build_report.warnings()} == {"Invoke-Remote", "Needed"}


def test_infer_module_from_noun() -> None:
    assert infer_module("Get-DnsServerZone", {}) == "DnsServer"
    assert infer_module("Get-Thing", {}) is None


def _unresolved_report():
    lookup = StaticCommandLookup.from_mapping({"commands": {"Invoke-Stray": "Stray"}})
    return DependencyResolver(lookup).resolve("Invoke-Stray\nGet-Nowhere\n", _symbols(), [], [])


def test_policy_fails_on_unresolved_references() -> None:
    report = BuildReport()
    with pytest.raises(DependencyError) as excinfo:
        evaluate_dependency_policy(_unresolved_report(), ModuleSkip(), report)
    assert excinfo.value.identifier == "Stray"
    assert excinfo.value.message.endswith("and 1 more")
    assert [item.severity for item in report.diagnostics] == ["error", "error"]


def test_policy_suppression_by_module_and_function() -> None:
    report = BuildReport()
    skip = ModuleSkip(ignore_module_name=("stray",), ignore_function_name=("get-nowhere",))
    evaluate_dependency_policy(_unresolved_report(), skip, report)
    assert [item.severity for item in report.diagnostics] == ["info"]


def test_policy_force_downgrades_to_warnings() -> None:
    report = BuildReport()
    evaluate_dependency_policy(_unresolved_report(), ModuleSkip(force=True), report)
    assert len(report.warnings()) == 2
    assert all("force" in item.message for item in report.warnings())


def test_policy_warns_about_applications() -> None:
    lookup = StaticCommandLookup.from_mapping({"commands": {"git": {"kind": "Application"}}})
    dependencies = DependencyResolver(lookup).resolve("git status\n", _symbols(), [], [])
    report = BuildReport()
    evaluate_dependency_policy(dependencies, ModuleSkip(), report)
    assert [item.identifier for item in report.warnings()] == ["git"]


def test_core_cmdlets_and_default_aliases_are_never_dependencies() -> None:
    script = _script(
        """
        function Get-Busy {
            $items = Get-Process | ? { $_.CPU -gt 10 } | select Name | sort Name
            gci -Path $env:TEMP | % { $_.FullName }
            $data = Invoke-RestMethod -Uri 'https://example.invalid'
            Get-Random -Maximum 5
            Get-CimInstance -ClassName Win32_OperatingSystem
        }
        """
    )
    report = BuildReport()
    resolver = DependencyResolver(builtin_lookup(), report=report)

    dependencies = resolver.resolve(script, _symbols("Get-Busy"), required=[], approved=[])

    assert dependencies.unresolved == []
    assert dependencies.references == []
    assert dependencies.verdicts == []
    evaluate_dependency_policy(dependencies, ModuleSkip(), report)
    assert report.warnings() == []
