"""Tests for modforge.analyzers.symbols."""

from __future__ import annotations

import textwrap
from pathlib import Path
from typing import List, Mapping

import pytest

from modforge.analyzers.symbols import SymbolExtractor, extract_file_symbols
from modforge.errors import DuplicateExportError
from modforge.models import BuildReport, ClassifiedFile, FileRole


def _files(tmp_path: Path, sources: Mapping[str, str], role: FileRole = FileRole.SCRIPT) -> List[ClassifiedFile]:
    files = []
    for relative, text in sources.items():
        path = tmp_path / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(textwrap.dedent(text).lstrip("\n"), encoding="utf-8")
        files.append(ClassifiedFile(relative_path=relative, role=role, path=path))
    return files


def test_alias_attribute_and_registrations_are_merged() -> None:
    symbols, _ = extract_file_symbols(
        textwrap.dedent(
            """
            function Get-Foo {
                [Alias('gf')]
                param()
                Set-Alias -Name gfo -Value Get-Foo
                New-Alias gfx Get-Foo -Scope Global -Description 'not an alias'
                Set-Alias -Name gf -Value Get-Foo
            }
            """
        ),
        "Public/Get-Foo.ps1",
    )
    (symbol,) = symbols
    assert symbol.name == "Get-Foo"
    assert symbol.aliases == ("gf", "gfo", "gfx")
    assert symbol.path == "Public/Get-Foo.ps1"


def test_nested_functions_are_local_names_not_exports(tmp_path: Path) -> None:
    files = _files(
        tmp_path,
        {
            "Public/Get-Outer.ps1": """
                function Get-Outer {
                    function Get-Inner { 'x' }
                    Get-Inner
                }
            """,
        },
    )
    table = SymbolExtractor().extract(files)
    assert list(table) == ["Get-Outer"]
    assert "Get-Inner" not in table
    assert table.is_local("get-inner")


def test_only_script_role_files_are_read(tmp_path: Path) -> None:
    classes = _files(tmp_path, {"Classes/Widget.ps1": "function Get-Hidden { }\n"}, FileRole.CLASS_SCRIPT)
    scripts = _files(tmp_path, {"Public/Get-Shown.ps1": "function Get-Shown { }\n"})
    table = SymbolExtractor().extract([*classes, *scripts])
    assert list(table) == ["Get-Shown"]


def test_unparseable_file_is_skipped_with_warning(tmp_path: Path) -> None:
    report = BuildReport()
    files = _files(
        tmp_path,
        {
            "Public/Broken.ps1": "function Broken {\n",
            "Public/Get-Fine.ps1": "function Get-Fine { }\n",
        },
    )
    table = SymbolExtractor(report=report).extract(files)
    assert list(table) == ["Get-Fine"]
    (warning,) = report.warnings()
    assert warning.stage == "extract"
    assert warning.identifier == "Public/Broken.ps1"
    assert table.diagnostics == (warning,)


def test_duplicate_function_last_definition_wins(tmp_path: Path) -> None:
    report = BuildReport()
    files = _files(
        tmp_path,
        {
            "Private/First.ps1": "function Get-Foo { [Alias('one')] param() }\nfunction Get-Bar { }\n",
            "Public/Second.ps1": "function get-foo { [Alias('two')] param() }\n",
        },
    )
    table = SymbolExtractor(report=report).extract(files)
    assert list(table) == ["Get-Bar", "get-foo"]
    assert table["Get-Foo"] == ("two",)
    assert table.symbol("GET-FOO").path == "Public/Second.ps1"
    assert [item.identifier for item in report.warnings()] == ["get-foo"]


def test_duplicate_function_error_policy(tmp_path: Path) -> None:
    files = _files(
        tmp_path,
        {
            "Private/First.ps1": "function Get-Foo { }\n",
            "Public/Second.ps1": "function Get-Foo { }\n",
        },
    )
    with pytest.raises(DuplicateExportError) as excinfo:
        SymbolExtractor(duplicate_policy="error").extract(files)
    assert excinfo.value.stage == "extract"
    assert excinfo.value.identifier == "Get-Foo"


def test_alias_owners_and_local_aliases(tmp_path: Path) -> None:
    files = _files(
        tmp_path,
        {
            "Public/A.ps1": "function Get-A { [Alias('shared')] param() }\n",
            "Public/B.ps1": "function Get-B { [Alias('shared', 'b')] param() }\n",
        },
    )
    table = SymbolExtractor().extract(files)
    assert table.alias_owners() == {"shared": ["Get-A", "Get-B"], "b": ["Get-B"]}
    assert table.is_local("B")
