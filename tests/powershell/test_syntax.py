"""Tests for modforge.powershell.syntax."""

from __future__ import annotations

import textwrap

import pytest

from modforge.powershell.syntax import SyntaxTree, build_groups
from modforge.powershell.tokenizer import PowerShellSyntaxError, tokenize


def _parse(text: str) -> SyntaxTree:
    return SyntaxTree.parse(textwrap.dedent(text).lstrip("\n"))


def _command_names(text: str) -> list[str]:
    return [command.name for command in _parse(text).commands()]


def test_commands_are_found_inside_nested_blocks() -> None:
    names = _command_names(
        """
        function Invoke-Thing {
            param($Items)
            foreach ($item in $Items) {
                if (Test-Ready $item) {
                    $Items | Where-Object { Select-Part $_ } | Out-Thing
                }
            }
        }
        """
    )
    assert names == ["Test-Ready", "Where-Object", "Select-Part", "Out-Thing"]


def test_keywords_and_arguments_are_not_commands() -> None:
    names = _command_names(
        """
        try {
            Write-Log -Message Get-Fake
            return $value
        } catch {
            throw
        } finally {
            Close-Thing
        }
        """
    )
    assert names == ["Write-Log", "Close-Thing"]


def test_assignment_and_hashtable_values_are_command_positions() -> None:
    names = _command_names(
        """
        $result = Get-Result
        $options = @{ Path = Get-Location; Name = 'plain' }
        """
    )
    assert names == ["Get-Result", "Get-Location"]


def test_call_operator_and_subexpressions_in_strings() -> None:
    names = _command_names(
        """
        & 'Invoke-Quoted' -Force
        Write-Host "Now: $(Get-Now)"
        """
    )
    assert names == ["Invoke-Quoted", "Write-Host", "Get-Now"]


def test_method_arguments_are_expressions() -> None:
    names = _command_names("$text.Replace('a', 'b')\n[IO.Path]::Combine($root, 'x')\n")
    assert names == []


def test_module_qualified_command() -> None:
    (command,) = _parse("Gallery.Tools\\Publish-MyThing -Name x\n").commands()
    assert command.qualifier == "Gallery.Tools"
    assert command.command_name == "Publish-MyThing"


def test_class_method_bodies_are_walked() -> None:
    names = _command_names(
        """
        class Widget {
            [string] $Name
            [void] Save() {
                Save-Widget -Widget $this
            }
        }
        """
    )
    assert names == ["Save-Widget"]


def test_top_level_functions_and_nested_helpers() -> None:
    tree = _parse(
        """
        function Get-Outer {
            function Get-Inner { 'inner' }
            Get-Inner
        }
        filter Select-Even { if ($_ % 2 -eq 0) { $_ } }
        function global:Set-Scoped { }
        """
    )
    assert [function.name for function in tree.functions()] == ["Get-Outer", "Select-Even", "Set-Scoped"]
    assert [function.name for function in tree.functions(recurse_nested=True)] == [
        "Get-Outer",
        "Get-Inner",
        "Select-Even",
        "Set-Scoped",
    ]


def test_alias_attribute_values_are_read_from_param_block() -> None:
    tree = _parse(
        """
        function Get-Foo {
            [CmdletBinding()]
            [Alias('gf', "Get-Fu")]
            param(
                [Parameter(Mandatory)][string] $Name
            )
            $Name
        }
        """
    )
    (function,) = tree.functions()
    assert function.alias_attribute_values() == ["gf", "Get-Fu"]
    assert function.param_block is not None


def test_commands_in_function_only_returns_body_commands() -> None:
    tree = _parse(
        """
        Initialize-Module
        function Get-Foo {
            Get-Bar
        }
        """
    )
    (function,) = tree.functions()
    assert [command.name for command in tree.commands_in(function)] == ["Get-Bar"]


def test_find_all_without_recursion_skips_script_blocks() -> None:
    tree = _parse(
        """
        Start-Top
        Invoke-Block { Stop-Inner }
        """
    )
    top_level = tree.find_all(lambda node: hasattr(node, "invocation"), recurse_nested=False)
    assert [node.name for node in top_level] == ["Start-Top", "Invoke-Block"]


@pytest.mark.parametrize("text", ["function Broken {", "Get-Foo )", "@{ Key = (1 }"])
def test_unbalanced_brackets_raise(text: str) -> None:
    with pytest.raises(PowerShellSyntaxError):
        build_groups(tokenize(text))
