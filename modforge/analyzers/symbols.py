"""Function and alias discovery for PowerShell scripts."""

from __future__ import annotations

from typing import Dict, Iterable, List, Sequence, Tuple

from ..errors import DuplicateExportError
from ..logging import get_logger
from ..models import BuildReport, ClassifiedFile, FileRole, FunctionSymbol, SymbolTable
from ..powershell.syntax import CommandExpression, FunctionDefinition, SyntaxTree
from ..powershell.tokenizer import PowerShellSyntaxError, Token, TokenKind

_LOGGER = get_logger("analyzers.symbols")

_ALIAS_COMMANDS = frozenset({"set-alias", "new-alias"})
# Parameters of the alias cmdlets whose value is not an alias name.
_VALUE_PARAMETERS = frozenset({"scope", "option", "description"})


def _alias_registrations(function: FunctionDefinition, commands: Iterable[CommandExpression]) -> List[str]:
    """Literal names registered through Set-Alias/New-Alias inside ``function``."""
    aliases: List[str] = []
    for command in commands:
        if command.command_name.lower() not in _ALIAS_COMMANDS:
            continue
        skip_value = False
        for element in command.elements:
            if not isinstance(element, Token):
                skip_value = False
                continue
            if element.kind is TokenKind.PARAMETER:
                name = element.value.lower()
                skip_value = name in _VALUE_PARAMETERS
                continue
            if skip_value:
                skip_value = False
                continue
            if element.kind is TokenKind.GENERIC or (
                element.kind is TokenKind.STRING and element.is_literal_string
            ):
                value = element.value
                if value.lower() in _ALIAS_COMMANDS or value.lower() == function.name.lower():
                    continue
                aliases.append(value)
    return aliases


def _dedupe(values: Iterable[str]) -> Tuple[str, ...]:
    seen: Dict[str, str] = {}
    for value in values:
        key = value.lower()
        if key not in seen:
            seen[key] = value
    return tuple(seen.values())


def extract_file_symbols(text: str, path: str) -> Tuple[List[FunctionSymbol], List[str]]:
    """Return top-level function symbols and every declared function name in ``text``.

    Raises PowerShellSyntaxError when the text cannot be parsed.
    """
    tree = SyntaxTree.parse(text)
    symbols: List[FunctionSymbol] = []
    for function in tree.functions():
        attribute_aliases = function.alias_attribute_values()
        registered = _alias_registrations(function, tree.commands_in(function))
        symbols.append(
            FunctionSymbol(
                name=function.name,
                aliases=_dedupe([*attribute_aliases, *registered]),
                path=path,
            )
        )
    local_names = [function.name for function in tree.functions(recurse_nested=True)]
    return symbols, local_names


class SymbolExtractor:
    """Builds the project SymbolTable from script-role files."""

    def __init__(self, *, duplicate_policy: str = "warn", report: BuildReport | None = None) -> None:
        self.duplicate_policy = duplicate_policy
        self.report = report if report is not None else BuildReport()

    def extract(self, files: Sequence[ClassifiedFile]) -> SymbolTable:
        """Parse every Script-role file; unparseable files are reported and skipped."""
        collected: Dict[str, FunctionSymbol] = {}
        local_names: List[str] = []
        diagnostics = []

        for classified in files:
            if classified.role is not FileRole.SCRIPT:
                continue
            try:
                text = classified.read_text()
                symbols, names = extract_file_symbols(text, classified.relative_path)
            except (OSError, UnicodeDecodeError, PowerShellSyntaxError) as exc:
                diagnostics.append(
                    self.report.add(
                        "extract",
                        "warning",
                        f"Could not parse script, its functions are skipped: {exc}",
                        classified.relative_path,
                    )
                )
                continue

            local_names.extend(names)
            for symbol in symbols:
                key = symbol.name.lower()
                previous = collected.get(key)
                if previous is not None:
                    message = (
                        f"Function {symbol.name} is declared in {previous.path} and {symbol.path}; "
                        f"the definition in {symbol.path} wins"
                    )
                    if self.duplicate_policy == "error":
                        raise DuplicateExportError(message, identifier=symbol.name, stage="extract")
                    diagnostics.append(self.report.add("extract", "warning", message, symbol.name))
                    # Re-insert so the winning definition takes the later position.
                    del collected[key]
                collected[key] = symbol

        _LOGGER.debug("Extracted %d functions", len(collected))
        return SymbolTable(collected.values(), local_names=local_names, diagnostics=diagnostics)


__all__ = ["SymbolExtractor", "extract_file_symbols"]
