"""Dependency resolution for merged PowerShell modules."""

from __future__ import annotations

import re
from collections import deque
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..config import ModuleSkip
from ..errors import DependencyError
from ..logging import get_logger
from ..models import (
    BuildReport,
    CommandKind,
    CommandReference,
    DependencyReport,
    DependencyVerdict,
    SymbolTable,
    VerdictKind,
)
from ..powershell.syntax import CommandExpression, SyntaxTree
from ..powershell.tokenizer import PowerShellSyntaxError
from .commands import BUILTIN_COMMAND_NAMES, CommandInfo, CommandLookup, is_builtin_module

_LOGGER = get_logger("analyzers.dependencies")

RESERVED_NAMES = frozenset(
    {
        "if", "elseif", "else", "switch", "for", "foreach", "while", "do", "until",
        "try", "catch", "finally", "throw", "trap", "break", "continue", "return",
        "function", "filter", "workflow", "configuration", "class", "enum", "data",
        "param", "begin", "process", "end", "in", "using",
        ">", ">>", "2>", "2>>", "|",
    }
)

_PATH_LIKE = re.compile(r"^(?:\.|[A-Za-z]:|~)|[/]|\.ps1$", re.IGNORECASE)

# Noun prefixes of well-known Windows feature modules.
_NOUN_HINTS: Tuple[Tuple[str, str], ...] = (
    ("AD", "ActiveDirectory"),
    ("DnsServer", "DnsServer"),
    ("DhcpServer", "DhcpServer"),
)


def _is_candidate(command: CommandExpression) -> bool:
    name = command.command_name
    if not name or name.startswith("$") or name.startswith("@"):
        return False
    if name.lower() in RESERVED_NAMES:
        return False
    return not _PATH_LIKE.search(command.name)


def infer_module(name: str, command_modules: Mapping[str, Sequence[str]]) -> Optional[str]:
    """Guess the module of an unresolved command from configured hints or its noun."""
    for module, commands in command_modules.items():
        if any(command.lower() == name.lower() for command in commands):
            return module
    _, _, noun = name.partition("-")
    if noun:
        for prefix, module in _NOUN_HINTS:
            if noun.lower().startswith(prefix.lower()):
                return module
    return None


class DependencyResolver:
    """Finds invoked commands and classifies the modules they come from."""

    def __init__(
        self,
        lookup: CommandLookup,
        *,
        command_modules: Mapping[str, Sequence[str]] | None = None,
        report: BuildReport | None = None,
    ) -> None:
        self.lookup = lookup
        self.command_modules = dict(command_modules or {})
        self.report = report if report is not None else BuildReport()

    def invoked_commands(self, script: str | Sequence[str]) -> List[CommandExpression]:
        """Return command expressions at command positions, parsing each segment separately."""
        segments = [script] if isinstance(script, str) else list(script)
        commands: List[CommandExpression] = []
        for position, segment in enumerate(segments):
            try:
                tree = SyntaxTree.parse(segment)
            except PowerShellSyntaxError as exc:
                self.report.add(
                    "resolve_dependencies",
                    "warning",
                    f"Could not scan script segment {position + 1} for commands: {exc}",
                )
                continue
            commands.extend(command for command in tree.commands() if _is_candidate(command))
        return commands

    def resolve(
        self,
        script: str | Sequence[str],
        symbols: SymbolTable,
        required: Sequence[str],
        approved: Sequence[str],
        *,
        inline_approved: bool = False,
    ) -> DependencyReport:
        """Classify every non-local command referenced by ``script``.

        With ``inline_approved`` the bodies of functions from approved modules are
        collected in ``report.inlined`` and scanned for further dependencies.
        """
        report = DependencyReport()
        approved_keys = {name.lower() for name in approved}
        seen: Dict[str, CommandReference] = {}
        inlined_keys: set[str] = set()
        pending: deque[str | Sequence[str]] = deque([script])

        while pending:
            for command in self.invoked_commands(pending.popleft()):
                name = command.command_name
                key = name.lower()
                if key in seen or symbols.is_local(name) or key in inlined_keys:
                    continue
                reference = self._reference(command)
                seen[key] = reference
                if (
                    inline_approved
                    and reference.module.lower() in approved_keys
                    and reference.kind is CommandKind.FUNCTION
                ):
                    if reference.definition:
                        body = reference.definition.strip("\r\n")
                        report.inlined[reference.name] = f"function {reference.name} {{\n{body}\n}}"
                        inlined_keys.add(key)
                        pending.append(reference.definition)
                    else:
                        self.report.add(
                            "resolve_dependencies",
                            "warning",
                            f"No definition available to inline {reference.name} from {reference.module}",
                            reference.name,
                        )

        for reference in seen.values():
            if reference.kind is CommandKind.APPLICATION:
                report.applications.append(reference.name)
                continue
            if is_builtin_module(reference.module) or (
                not reference.module and reference.name.lower() in BUILTIN_COMMAND_NAMES
            ):
                continue
            report.references.append(reference)
            if not reference.module:
                report.unresolved.append(reference)
                hint = infer_module(reference.name, self.command_modules)
                if hint:
                    report.hints[reference.name] = hint

        direct = {name.lower() for name in required}
        closure = self.transitive_closure(required)
        report.transitive_modules = [name for name in closure if name.lower() not in direct]
        transitive_keys = {name.lower() for name in report.transitive_modules}

        grouped: Dict[str, List[str]] = {}
        display: Dict[str, str] = {}
        for reference in report.references:
            if not reference.module:
                continue
            module_key = reference.module.lower()
            display.setdefault(module_key, reference.module)
            grouped.setdefault(module_key, []).append(reference.name)

        for module_key, commands in grouped.items():
            if module_key in direct:
                kind = VerdictKind.SATISFIED_REQUIRED
            elif module_key in transitive_keys:
                kind = VerdictKind.SATISFIED_TRANSITIVE_REQUIRED
            elif module_key in approved_keys:
                kind = VerdictKind.APPROVED_MISSING
            else:
                kind = VerdictKind.UNRESOLVED_MISSING
            report.verdicts.append(
                DependencyVerdict(module=display[module_key], kind=kind, commands=tuple(commands))
            )

        _LOGGER.debug(
            "Resolved %d references into %d module verdicts", len(report.references), len(report.verdicts)
        )
        return report

    def transitive_closure(self, required: Iterable[str]) -> List[str]:
        """Return every module reachable from ``required`` (direct ones included), cycle-safe."""
        ordered: List[str] = []
        visited: set[str] = set()
        queue = deque(required)
        while queue:
            name = queue.popleft()
            key = name.lower()
            if key in visited:
                continue
            visited.add(key)
            ordered.append(name)
            try:
                dependencies = self.lookup.module_dependencies(name)
            except Exception as exc:  # lookups are best-effort
                self.report.add("resolve_dependencies", "warning", f"Module lookup failed: {exc}", name)
                continue
            queue.extend(dependencies)
        return ordered

    def _reference(self, command: CommandExpression) -> CommandReference:
        name = command.command_name
        info = self._lookup(name)
        if info is None:
            if command.qualifier:
                return CommandReference(name=name, module=command.qualifier, kind=CommandKind.FUNCTION)
            return CommandReference(name=name)

        if info.kind is CommandKind.ALIAS:
            target = self._lookup(info.target) if info.target else None
            if target is not None:
                return CommandReference(
                    name=name,
                    module=command.qualifier or target.module,
                    kind=target.kind,
                    is_alias=True,
                    definition=target.script_block,
                )
            return CommandReference(
                name=name,
                module=command.qualifier or info.module,
                kind=CommandKind.ALIAS,
                is_alias=True,
            )

        return CommandReference(
            name=info.name,
            module=command.qualifier or info.module,
            kind=info.kind,
            definition=info.script_block,
        )

    def _lookup(self, name: str) -> Optional[CommandInfo]:
        try:
            return self.lookup.resolve(name)
        except Exception as exc:  # lookups are best-effort
            self.report.add("resolve_dependencies", "warning", f"Command lookup failed: {exc}", name)
            return None


def evaluate_dependency_policy(
    dependencies: DependencyReport,
    skip: ModuleSkip,
    report: BuildReport,
) -> None:
    """Raise DependencyError for unsuppressed unresolved references.

    ``skip.force`` downgrades the failure to warnings.
    """
    failures: List[Tuple[str, str]] = []

    for verdict in dependencies.verdicts:
        if verdict.kind is not VerdictKind.UNRESOLVED_MISSING:
            continue
        if skip.ignores_module(verdict.module) or all(skip.ignores_function(name) for name in verdict.commands):
            report.add(
                "resolve_dependencies",
                "info",
                f"Module {verdict.module} is not required but suppressed by configuration",
                verdict.module,
            )
            continue
        failures.append(
            (
                verdict.module,
                f"Module {verdict.module} is used by {', '.join(verdict.commands)} "
                "but is neither required nor approved",
            )
        )

    for reference in dependencies.unresolved:
        hint = dependencies.hints.get(reference.name)
        if skip.ignores_function(reference.name) or (hint and skip.ignores_module(hint)):
            continue
        suffix = f" (possibly from module {hint})" if hint else ""
        failures.append((reference.name, f"Command {reference.name} could not be resolved{suffix}"))

    for name in dependencies.applications:
        report.add(
            "resolve_dependencies",
            "warning",
            f"Application {name} is invoked; it must exist on the target system",
            name,
        )

    if not failures:
        return
    if skip.force:
        for identifier, message in failures:
            report.add("resolve_dependencies", "warning", f"{message} (ignored because force is set)", identifier)
        return
    for identifier, message in failures:
        report.add("resolve_dependencies", "error", message, identifier)
    identifier, message = failures[0]
    extra = f" and {len(failures) - 1} more" if len(failures) > 1 else ""
    raise DependencyError(f"{message}{extra}", identifier=identifier)


__all__ = [
    "DependencyResolver",
    "RESERVED_NAMES",
    "evaluate_dependency_policy",
    "infer_module",
]
