"""Tests for modforge.powershell.data."""

from __future__ import annotations

import textwrap

import pytest

from modforge.powershell.data import dumps, get_key, loads, quote
from modforge.powershell.tokenizer import PowerShellSyntaxError


def test_loads_reads_a_module_manifest() -> None:
    text = textwrap.dedent(
        """
        # Module manifest for module 'Sample'
        @{
            RootModule = 'Sample.psm1'
            ModuleVersion = '1.2.3'
            FunctionsToExport = @('Get-Foo', 'Set-Foo')
            AliasesToExport = @()
            RequiredModules = @(
                'Gallery.Tools'
                @{ ModuleName = 'Other'; ModuleVersion = '2.0' }
            )
            PrivateData = @{
                PSData = @{
                    Tags = 'build', "tools"
                    RequireLicenseAcceptance = $false
                }
            }
        }
        """
    )
    data = loads(text)
    assert data["RootModule"] == "Sample.psm1"
    assert data["FunctionsToExport"] == ["Get-Foo", "Set-Foo"]
    assert data["AliasesToExport"] == []
    assert data["RequiredModules"] == ["Gallery.Tools", {"ModuleName": "Other", "ModuleVersion": "2.0"}]
    assert data["PrivateData"]["PSData"] == {"Tags": ["build", "tools"], "RequireLicenseAcceptance": False}


def test_loads_scalars() -> None:
    data = loads("@{ A = 1; B = -5; C = 0x1F; D = 1.5; E = $null; F = $TRUE; 'Odd-Key' = 'x' }")
    assert data == {"A": 1, "B": -5, "C": 31, "D": 1.5, "E": None, "F": True, "Odd-Key": "x"}


def test_loads_unescapes_expandable_strings_only() -> None:
    data = loads("@{ A = \"tab`there\"; B = 'it''s `n'; C = \"say \"\"hi\"\"\" }")
    assert data["A"] == "tab\there"
    assert data["B"] == "it's `n"
    assert data["C"] == 'say "hi"'


@pytest.mark.parametrize(
    "text",
    [
        "@{ Path = $env:PATH }",
        '@{ Now = "$(Get-Date)" }',
        "@{ Key 'x' }",
        "@{} extra",
        "@{ Key = Get-Thing }",
        "@( 'a', 'b'",
    ],
)
def test_loads_rejects_code(text: str) -> None:
    with pytest.raises(PowerShellSyntaxError):
        loads(text)


def test_dumps_round_trips_nested_values() -> None:
    value = {
        "Name": "it's",
        "Numbers": [1, 2],
        "Empty": [],
        "Flag": True,
        "Nothing": None,
        "Some-Key": {"Inner": "x"},
        "Modules": ["A", {"ModuleName": "B", "ModuleVersion": "1.0"}],
    }
    assert loads(dumps(value)) == value


def test_dumps_layout() -> None:
    text = dumps({"Tags": ["a", "b"], "PSData": {"Prerelease": "beta"}})
    assert text == "\n".join(
        [
            "@{",
            "    Tags = @('a', 'b')",
            "    PSData = @{",
            "        Prerelease = 'beta'",
            "    }",
            "}",
        ]
    )
    assert dumps({}) == "@{}"
    assert dumps([]) == "@()"


def test_quote_doubles_single_quotes() -> None:
    assert quote("O'Brien") == "'O''Brien'"
    assert quote("Don’t ‘x’") == "'Don’’t ‘‘x’’'"


def test_typographic_quotes_round_trip() -> None:
    value = {"Description": "Don’t ‚panic‛", "Plain": "it's"}
    assert loads(dumps(value)) == value


def test_get_key_is_case_insensitive() -> None:
    data = {"ModuleVersion": "1.0.0"}
    assert get_key(data, "moduleversion") == "1.0.0"
    assert get_key(data, "Missing", "default") == "default"
