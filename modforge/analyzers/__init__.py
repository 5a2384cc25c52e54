"""Source analyzers: symbol extraction, command lookup and dependency resolution."""

from .commands import (
    ChainedCommandLookup,
    CommandInfo,
    CommandLookup,
    InstalledModule,
    PowerShellCommandLookup,
    StaticCommandLookup,
)
from .dependencies import DependencyResolver, evaluate_dependency_policy
from .symbols import SymbolExtractor

__all__ = [
    "ChainedCommandLookup",
    "CommandInfo",
    "CommandLookup",
    "DependencyResolver",
    "InstalledModule",
    "PowerShellCommandLookup",
    "StaticCommandLookup",
    "SymbolExtractor",
    "evaluate_dependency_policy",
]
