"""PowerShell source analysis: tokenizer, light syntax tree and data-file codec."""

from .data import dumps, get_key, loads
from .syntax import CommandExpression, FunctionDefinition, SyntaxTree
from .tokenizer import PowerShellSyntaxError, Token, TokenKind, tokenize

__all__ = [
    "CommandExpression",
    "FunctionDefinition",
    "PowerShellSyntaxError",
    "SyntaxTree",
    "Token",
    "TokenKind",
    "dumps",
    "get_key",
    "loads",
    "tokenize",
]
