"""Tests for modforge.manifest."""

from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, Dict

import pytest

from modforge.analyzers.commands import StaticCommandLookup
from modforge.config import BuildConfig, build_config
from modforge.errors import DuplicateExportError, ManifestError
from modforge.manifest import ManifestSynthesizer, validate_export_lists, validate_exports
from modforge.models import BuildReport, ExportLists, FunctionSymbol, RequiredModule, SymbolTable
from modforge.powershell.data import loads

EXPORTS = ExportLists(functions=("Get-Foo",), aliases=("gf",))


def _config(tmp_path: Path, **overrides: Any) -> BuildConfig:
    data: Dict[str, Any] = {
        "module": {
            "name": "Sample",
            "guid": "0f7c2ee5-0d1f-4b57-9a4e-2b0b7a1c9d11",
            "author": "Build Team",
            "description": "Sample module",
        }
    }
    for key, value in overrides.items():
        if key == "module":
            data["module"].update(value)
        else:
            data[key] = value
    return build_config(data, root=tmp_path)


def _symbols() -> SymbolTable:
    return SymbolTable(
        [
            FunctionSymbol(name="Format-Item", aliases=("fi",), path="Private/Format-Item.ps1"),
            FunctionSymbol(name="Get-Foo", aliases=("gf",), path="Public/Get-Foo.ps1"),
        ]
    )


def test_export_lists_follow_the_export_folder(tmp_path: Path) -> None:
    exports = ManifestSynthesizer(_config(tmp_path)).export_lists(_symbols())
    assert exports == ExportLists(functions=("Get-Foo",), aliases=("gf",), cmdlets=())


def test_export_lists_without_folder_export_everything(tmp_path: Path) -> None:
    config = _config(tmp_path, information={"functions_to_export_folder": None})
    exports = ManifestSynthesizer(config).export_lists(_symbols())
    assert exports.functions == ("Format-Item", "Get-Foo")
    assert exports.aliases == ("fi", "gf")


def test_export_overrides_warn_about_undeclared_functions(tmp_path: Path) -> None:
    report = BuildReport()
    config = _config(
        tmp_path,
        module={"functions_to_export": ["Get-Foo", "Get-Missing"], "aliases_to_export": [], "cmdlets_to_export": ["Get-Bin"]},
    )
    exports = ManifestSynthesizer(config, report=report).export_lists(_symbols())
    assert exports == ExportLists(functions=("Get-Foo", "Get-Missing"), aliases=(), cmdlets=("Get-Bin",))
    assert [item.identifier for item in report.warnings()] == ["Get-Missing"]


def test_validate_exports_rejects_collisions() -> None:
    validate_exports(_symbols())

    shadowing = SymbolTable(
        [
            FunctionSymbol(name="Get-Foo", aliases=(), path="Public/Get-Foo.ps1"),
            FunctionSymbol(name="Get-Bar", aliases=("get-foo",), path="Public/Get-Bar.ps1"),
        ]
    )
    with pytest.raises(DuplicateExportError) as excinfo:
        validate_exports(shadowing)
    assert excinfo.value.identifier == "get-foo"
    assert excinfo.value.stage == "validate_exports"

    shared = SymbolTable(
        [
            FunctionSymbol(name="Get-A", aliases=("same",), path="Public/A.ps1"),
            FunctionSymbol(name="Get-B", aliases=("SAME",), path="Public/B.ps1"),
        ]
    )
    with pytest.raises(DuplicateExportError) as excinfo:
        validate_exports(shared)
    assert excinfo.value.identifier == "same"


def test_sentinels_are_resolved_from_installed_modules(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        required_modules=[
            "Bare",
            {"name": "Tools", "version": "latest", "guid": "auto"},
            {"name": "Pinned", "required_version": "Latest", "version": "1.0"},
            {"name": "Inlined"},
        ],
    )
    lookup = StaticCommandLookup.from_mapping(
        {
            "modules": {
                "Tools": {"version": "2.4.1", "guid": "11111111-2222-3333-4444-555555555555"},
                "Pinned": {"version": "3.0.0"},
            }
        }
    )
    report = BuildReport()
    resolved = ManifestSynthesizer(config, lookup, report=report).resolve_required_modules(drop=["inlined"])
    assert resolved == (
        RequiredModule(name="Bare"),
        RequiredModule(name="Tools", module_version="2.4.1", guid="11111111-2222-3333-4444-555555555555"),
        RequiredModule(name="Pinned", required_version="3.0.0"),
    )
    assert [item.identifier for item in report.diagnostics] == ["Inlined"]


@pytest.mark.parametrize("with_lookup", [False, True])
def test_unresolvable_sentinels_raise(tmp_path: Path, with_lookup: bool) -> None:
    config = _config(tmp_path, required_modules=[{"name": "Tools", "version": "latest"}])
    lookup = StaticCommandLookup() if with_lookup else None
    with pytest.raises(ManifestError) as excinfo:
        ManifestSynthesizer(config, lookup).resolve_required_modules()
    assert excinfo.value.identifier == "Tools"


def test_module_guid_resolution_order(tmp_path: Path) -> None:
    assert ManifestSynthesizer(_config(tmp_path)).module_guid() == "0f7c2ee5-0d1f-4b57-9a4e-2b0b7a1c9d11"
    unset = ManifestSynthesizer(_config(tmp_path, module={"guid": None}))
    assert unset.module_guid({"Guid": "previous"}) == "previous"
    expected = str(uuid.uuid5(uuid.NAMESPACE_URL, "modforge:sample"))
    assert unset.module_guid() == expected
    assert unset.module_guid({}) == expected


def test_normalized_manifest_is_sorted_and_round_trips(tmp_path: Path) -> None:
    config = _config(tmp_path, module={"tags": ["build"], "prerelease": "beta"})
    synthesizer = ManifestSynthesizer(config)
    record = synthesizer.build_record(
        version="1.2.0",
        exports=EXPORTS,
        required_modules=[RequiredModule(name="Gallery.Tools"), RequiredModule(name="Pinned", maximum_version="2.0")],
    )
    text = synthesizer.render(record)
    data = loads(text)

    assert list(data) == sorted(data)
    assert data["RootModule"] == "Sample.psm1"
    assert data["ModuleVersion"] == "1.2.0"
    assert data["FunctionsToExport"] == ["Get-Foo"]
    assert data["CmdletsToExport"] == []
    assert data["RequiredModules"] == ["Gallery.Tools", {"ModuleName": "Pinned", "MaximumVersion": "2.0"}]
    assert data["PrivateData"] == {"PSData": {"Prerelease": "beta", "Tags": ["build"]}}
    assert text.endswith("}\n")


def test_native_manifest_layout(tmp_path: Path) -> None:
    config = _config(tmp_path, build={"manifest_style": "native"}, module={"tags": ["build"]})
    synthesizer = ManifestSynthesizer(config)
    text = synthesizer.render(synthesizer.build_record(version="1.0.0", exports=EXPORTS))

    assert text.startswith("#\n# Module manifest for module 'Sample'\n#\n# Generated by: Build Team\n")
    assert "# Version number of this module.\nModuleVersion = '1.0.0'\n" in text
    assert text.index("RootModule =") < text.index("ModuleVersion =") < text.index("FunctionsToExport =")
    data = loads(text)
    assert data["AliasesToExport"] == ["gf"]
    assert data["PrivateData"]["PSData"] == {"Tags": ["build"]}


@pytest.mark.parametrize(
    "module",
    [{"prerelease": "beta"}, {"external_module_dependencies": ["Outside"]}],
)
def test_native_style_refuses_unsupported_fields(tmp_path: Path, module: Dict[str, Any]) -> None:
    config = _config(tmp_path, build={"manifest_style": "native"}, module=module)
    synthesizer = ManifestSynthesizer(config)
    with pytest.raises(ManifestError):
        synthesizer.render(synthesizer.build_record(version="1.0.0", exports=EXPORTS))


def test_extra_fields_are_filtered(tmp_path: Path) -> None:
    report = BuildReport()
    config = _config(
        tmp_path,
        manifest={"extra": {"HelpInfoURI": "https://example.invalid", "ModuleVersion": "9.9", "ProjectUri": "https://p", "Bogus": 1}},
    )
    synthesizer = ManifestSynthesizer(config, report=report)
    data = loads(synthesizer.render(synthesizer.build_record(version="1.0.0", exports=EXPORTS)))

    assert data["HelpInfoURI"] == "https://example.invalid"
    assert data["ModuleVersion"] == "1.0.0"
    assert data["PrivateData"]["PSData"] == {"ProjectUri": "https://p"}
    assert "Bogus" not in data
    assert [item.identifier for item in report.warnings()] == ["ModuleVersion", "Bogus"]


def test_write_adds_bom_and_verifies(tmp_path: Path) -> None:
    synthesizer = ManifestSynthesizer(_config(tmp_path))
    record = synthesizer.build_record(version="1.0.0", exports=EXPORTS)
    path, text = synthesizer.write(record, tmp_path)

    assert path == tmp_path / "Sample.psd1"
    assert path.read_bytes().startswith(b"\xef\xbb\xbf")
    assert path.read_text(encoding="utf-8-sig") == text

    path.write_text(text.replace("'Get-Foo'", "'Get-Other'"), encoding="utf-8")
    with pytest.raises(ManifestError):
        synthesizer.verify(path, record)
    path.write_text("@{ broken", encoding="utf-8")
    with pytest.raises(ManifestError):
        synthesizer.verify(path, record)


def test_write_round_trips_typographic_apostrophes(tmp_path: Path) -> None:
    config = _config(
        tmp_path,
        module={
            "description": "Don’t panic",
            "tags": ["it’s", "‘quoted’", "plain'"],
            "release_notes": "Fixes ‚odd‛ quoting",
        },
    )
    synthesizer = ManifestSynthesizer(config)
    record = synthesizer.build_record(version="1.0.0", exports=EXPORTS)
    path, text = synthesizer.write(record, tmp_path)

    assert "'Don’’t panic'" in text
    data = loads(path.read_text(encoding="utf-8-sig"))
    assert data["Description"] == "Don’t panic"
    assert data["PrivateData"]["PSData"]["Tags"] == ["it’s", "‘quoted’", "plain'"]
    assert data["PrivateData"]["PSData"]["ReleaseNotes"] == "Fixes ‚odd‛ quoting"


@pytest.mark.parametrize(
    "module, identifier",
    [
        ({"aliases_to_export": ["Get-Foo"]}, "Get-Foo"),
        ({"aliases_to_export": ["get-bin"], "cmdlets_to_export": ["Get-Bin"]}, "get-bin"),
        ({"aliases_to_export": ["gf", "GF"]}, "GF"),
    ],
    ids=["shadows-function", "shadows-cmdlet", "repeated"],
)
def test_configured_alias_exports_are_checked_for_collisions(
    tmp_path: Path, module: Dict[str, Any], identifier: str
) -> None:
    synthesizer = ManifestSynthesizer(_config(tmp_path, module=module))
    with pytest.raises(DuplicateExportError) as excinfo:
        synthesizer.export_lists(_symbols())
    assert excinfo.value.identifier == identifier
    assert excinfo.value.stage == "validate_exports"


def test_validate_export_lists_accepts_distinct_names() -> None:
    validate_export_lists(ExportLists(functions=("Get-Foo",), aliases=("gf", "fi"), cmdlets=("Get-Bin",)))
