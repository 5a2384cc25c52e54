"""Light syntax tree over PowerShell tokens: groups, commands and function definitions."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Sequence, Tuple, Union

from .tokenizer import PowerShellSyntaxError, Token, TokenKind, tokenize


class GroupKind(str, Enum):
    SCRIPT = "script"
    PAREN = "paren"
    SUBEXPR = "subexpr"
    ARRAY = "array"
    HASHTABLE = "hashtable"
    BLOCK = "block"
    BRACKET = "bracket"


_OPENERS = {
    TokenKind.LPAREN: GroupKind.PAREN,
    TokenKind.SUBEXPR: GroupKind.SUBEXPR,
    TokenKind.ARRAY: GroupKind.ARRAY,
    TokenKind.HASHTABLE: GroupKind.HASHTABLE,
    TokenKind.LBRACE: GroupKind.BLOCK,
    TokenKind.LBRACKET: GroupKind.BRACKET,
}

_CLOSERS = {
    TokenKind.RPAREN: (GroupKind.PAREN, GroupKind.SUBEXPR, GroupKind.ARRAY),
    TokenKind.RBRACE: (GroupKind.BLOCK, GroupKind.HASHTABLE),
    TokenKind.RBRACKET: (GroupKind.BRACKET,),
}


@dataclass
class Group:
    """A bracketed token group; the whole file is the ``SCRIPT`` group."""

    kind: GroupKind
    open: Optional[Token] = None
    close: Optional[Token] = None
    children: List["Node"] = field(default_factory=list)

    @property
    def start(self) -> int:
        return self.open.start if self.open else 0

    @property
    def end(self) -> int:
        return self.close.end if self.close else 0

    def tokens(self) -> Iterator[Token]:
        """Yield every token in the group, depth-first, including delimiters."""
        if self.open is not None:
            yield self.open
        for child in self.children:
            if isinstance(child, Group):
                yield from child.tokens()
            else:
                yield child
        if self.close is not None:
            yield self.close


Node = Union[Token, Group]

# Words that start a statement rather than name a command.
KEYWORDS = frozenset(
    {
        "begin", "break", "catch", "class", "configuration", "continue", "data",
        "do", "dynamicparam", "else", "elseif", "end", "enum", "exit", "filter",
        "finally", "for", "foreach", "function", "if", "in", "param", "process",
        "return", "switch", "throw", "trap", "try", "until", "using", "while",
        "workflow",
    }
)

_FUNCTION_KEYWORDS = frozenset({"function", "filter", "workflow", "configuration"})
_SCOPE_PREFIXES = ("global:", "script:", "local:", "private:")
_STATEMENT_END = frozenset({TokenKind.NEWLINE, TokenKind.SEMI})
_ASSIGNMENT = frozenset({"=", "+=", "-=", "*=", "/=", "%="})


def build_groups(tokens: Sequence[Token]) -> Group:
    """Nest a token stream into groups, dropping comments.

    Raises PowerShellSyntaxError for unbalanced brackets.
    """
    root = Group(GroupKind.SCRIPT)
    stack: List[Group] = [root]
    for token in tokens:
        if token.kind is TokenKind.COMMENT:
            continue
        if token.kind in _OPENERS:
            group = Group(_OPENERS[token.kind], open=token)
            stack[-1].children.append(group)
            stack.append(group)
            continue
        if token.kind in _CLOSERS:
            current = stack[-1]
            if current.kind not in _CLOSERS[token.kind]:
                raise PowerShellSyntaxError(f"Unexpected '{token.text}'", token.line)
            current.close = token
            stack.pop()
            continue
        stack[-1].children.append(token)
    if len(stack) > 1:
        unclosed = stack[-1].open
        raise PowerShellSyntaxError(
            f"Missing closing bracket for '{unclosed.text if unclosed else ''}'",
            unclosed.line if unclosed else None,
        )
    return root


@dataclass(frozen=True)
class CommandExpression:
    """A command invocation found at a command position."""

    name: str
    token: Token
    elements: Tuple[Node, ...]
    depth: int
    invocation: str = "direct"

    @property
    def qualifier(self) -> Optional[str]:
        """Module name for ``Module\\Command`` style invocations."""
        if "\\" in self.name and not self.name.startswith("."):
            return self.name.rsplit("\\", 1)[0]
        return None

    @property
    def command_name(self) -> str:
        if self.qualifier is not None:
            return self.name.rsplit("\\", 1)[1]
        return self.name


@dataclass(frozen=True)
class FunctionDefinition:
    """A ``function``/``filter`` statement."""

    name: str
    keyword: Token
    body: Group
    depth: int
    parameters: Optional[Group] = None
    attributes: Tuple[Group, ...] = ()
    param_block: Optional[Group] = None

    def contains(self, node: "SyntaxNode") -> bool:
        start = node.token.start if isinstance(node, CommandExpression) else node.keyword.start
        return self.body.start < start < self.body.end

    def alias_attribute_values(self) -> List[str]:
        """Return literal arguments of ``[Alias(...)]`` attributes on the param block."""
        values: List[str] = []
        for attribute in self.attributes:
            words = [child for child in attribute.children if isinstance(child, Token)]
            if not words or words[0].kind is not TokenKind.GENERIC or words[0].value.lower() != "alias":
                continue
            for child in attribute.children:
                if isinstance(child, Group) and child.kind is GroupKind.PAREN:
                    values.extend(_literal_values(child.children))
        return values


SyntaxNode = Union[CommandExpression, FunctionDefinition]


def _literal_values(nodes: Iterable[Node]) -> List[str]:
    values: List[str] = []
    for node in nodes:
        if not isinstance(node, Token):
            continue
        if node.kind is TokenKind.GENERIC or (node.kind is TokenKind.STRING and node.is_literal_string):
            values.append(node.value)
    return values


def _strip_scope(name: str) -> str:
    lowered = name.lower()
    for prefix in _SCOPE_PREFIXES:
        if lowered.startswith(prefix):
            return name[len(prefix):]
    return name


class _Walker:
    """Collects command expressions and function definitions from a group tree."""

    def __init__(self) -> None:
        self.nodes: List[SyntaxNode] = []

    def walk_statements(self, nodes: Sequence[Node], depth: int, *, hashtable: bool = False) -> None:
        expect_command = not hashtable
        expect_key = hashtable
        index = 0
        while index < len(nodes):
            node = nodes[index]
            if isinstance(node, Group):
                self.walk_group(node, depth, previous=nodes[index - 1] if index else None)
                expect_command = False
                expect_key = False
                index += 1
                continue

            kind = node.kind
            if kind in _STATEMENT_END:
                expect_command = not hashtable
                expect_key = hashtable
            elif kind is TokenKind.PIPE or (kind is TokenKind.OPERATOR and node.value in ("&&", "||")):
                expect_command = True
            elif kind is TokenKind.OPERATOR and node.value in _ASSIGNMENT:
                expect_command = True
                expect_key = False
            elif expect_key:
                expect_key = False
            elif expect_command and kind is TokenKind.GENERIC:
                lowered = node.value.lower()
                if lowered in KEYWORDS:
                    index = self.handle_keyword(nodes, index, depth)
                    continue
                if node.value.startswith(":"):
                    index += 1
                    continue
                self.record(nodes, index, node.value, node, depth, "direct")
                expect_command = False
            elif expect_command and kind in (TokenKind.AMP, TokenKind.DOT):
                target = nodes[index + 1] if index + 1 < len(nodes) else None
                if isinstance(target, Token) and (
                    target.kind is TokenKind.GENERIC
                    or (target.kind is TokenKind.STRING and target.is_literal_string)
                ):
                    invocation = "call" if kind is TokenKind.AMP else "dot"
                    self.record(nodes, index + 1, target.value, target, depth, invocation)
                    index += 2
                    expect_command = False
                    continue
                expect_command = False
            elif kind is TokenKind.GENERIC and node.value.lower() == "in":
                expect_command = True
            else:
                expect_command = False

            if kind is TokenKind.STRING and node.nested:
                for stream in node.nested:
                    self.walk_statements(build_groups(stream).children, depth)
            index += 1

    def record(
        self,
        nodes: Sequence[Node],
        index: int,
        name: str,
        token: Token,
        depth: int,
        invocation: str,
    ) -> None:
        elements: List[Node] = []
        for follower in nodes[index + 1 :]:
            if isinstance(follower, Token) and (
                follower.kind in _STATEMENT_END
                or follower.kind is TokenKind.PIPE
                or (follower.kind is TokenKind.OPERATOR and follower.value in ("&&", "||"))
            ):
                break
            elements.append(follower)
        self.nodes.append(
            CommandExpression(
                name=name,
                token=token,
                elements=tuple(elements),
                depth=depth,
                invocation=invocation,
            )
        )

    def handle_keyword(self, nodes: Sequence[Node], index: int, depth: int) -> int:
        keyword = nodes[index]
        assert isinstance(keyword, Token)
        lowered = keyword.value.lower()
        index += 1

        if lowered in _FUNCTION_KEYWORDS:
            return self.handle_function(nodes, index, keyword, depth)

        if lowered in ("class", "enum"):
            while index < len(nodes):
                node = nodes[index]
                index += 1
                if isinstance(node, Group) and node.kind is GroupKind.BLOCK:
                    if lowered == "class":
                        self.walk_class_body(node, depth + 1)
                    break
            return index

        if lowered == "switch":
            while index < len(nodes):
                node = nodes[index]
                if isinstance(node, Group) and node.kind is GroupKind.BLOCK:
                    self.walk_switch_body(node, depth + 1)
                    return index + 1
                if isinstance(node, Group):
                    self.walk_group(node, depth, previous=None)
                elif node.kind is TokenKind.SEMI:
                    return index
                index += 1
            return index

        if lowered == "data":
            following = nodes[index] if index < len(nodes) else None
            if isinstance(following, Token) and following.kind is TokenKind.GENERIC:
                index += 1
            return index

        if lowered in ("using", "break", "continue"):
            while index < len(nodes):
                node = nodes[index]
                if isinstance(node, Token) and node.kind in _STATEMENT_END:
                    break
                index += 1
            return index

        # Remaining keywords are followed by a condition, a block or a pipeline;
        # the next token is back in command position.
        return index

    def handle_function(self, nodes: Sequence[Node], index: int, keyword: Token, depth: int) -> int:
        name: Optional[str] = None
        parameters: Optional[Group] = None
        while index < len(nodes):
            node = nodes[index]
            if isinstance(node, Token) and node.kind is TokenKind.NEWLINE:
                index += 1
                continue
            if name is None and isinstance(node, Token):
                name = _strip_scope(node.value)
                index += 1
                continue
            if isinstance(node, Group) and node.kind is GroupKind.PAREN and parameters is None:
                parameters = node
                self.walk_group(node, depth, previous=None)
                index += 1
                continue
            if isinstance(node, Group) and node.kind is GroupKind.BLOCK and name:
                attributes, param_block = _param_block(node)
                self.nodes.append(
                    FunctionDefinition(
                        name=name,
                        keyword=keyword,
                        body=node,
                        depth=depth,
                        parameters=parameters,
                        attributes=attributes,
                        param_block=param_block,
                    )
                )
                self.walk_statements(node.children, depth + 1)
                return index + 1
            break
        return index

    def walk_class_body(self, body: Group, depth: int) -> None:
        for child in body.children:
            if isinstance(child, Group) and child.kind is GroupKind.BLOCK:
                self.walk_statements(child.children, depth + 1)
            elif isinstance(child, Group) and child.kind is GroupKind.PAREN:
                self.walk_arguments(child, depth)

    def walk_switch_body(self, body: Group, depth: int) -> None:
        for child in body.children:
            if isinstance(child, Group):
                self.walk_group(child, depth, previous=None)
            elif child.nested:
                for stream in child.nested:
                    self.walk_statements(build_groups(stream).children, depth)

    def walk_arguments(self, group: Group, depth: int) -> None:
        """Walk method or attribute arguments: expressions only, no command positions."""
        for child in group.children:
            if isinstance(child, Group):
                self.walk_group(child, depth, previous=None)
            elif child.nested:
                for stream in child.nested:
                    self.walk_statements(build_groups(stream).children, depth)

    def walk_group(self, group: Group, depth: int, *, previous: Optional[Node]) -> None:
        kind = group.kind
        if kind is GroupKind.BLOCK:
            self.walk_statements(group.children, depth + 1)
        elif kind is GroupKind.HASHTABLE:
            self.walk_statements(group.children, depth, hashtable=True)
        elif kind is GroupKind.BRACKET:
            for child in group.children:
                if isinstance(child, Group) and child.kind is GroupKind.PAREN:
                    self.walk_arguments(child, depth)
                elif isinstance(child, Group):
                    self.walk_group(child, depth, previous=None)
        elif kind is GroupKind.PAREN and _is_call_arguments(group, previous):
            self.walk_arguments(group, depth)
        else:
            self.walk_statements(group.children, depth)


def _is_call_arguments(group: Group, previous: Optional[Node]) -> bool:
    if not isinstance(previous, Token) or group.open is None:
        return False
    return previous.kind is TokenKind.MEMBER and not group.open.space_before


def _param_block(body: Group) -> Tuple[Tuple[Group, ...], Optional[Group]]:
    attributes: List[Group] = []
    children = body.children
    index = 0
    while index < len(children):
        child = children[index]
        if isinstance(child, Token) and child.kind in _STATEMENT_END:
            index += 1
            continue
        if isinstance(child, Group) and child.kind is GroupKind.BRACKET:
            attributes.append(child)
            index += 1
            continue
        if (
            isinstance(child, Token)
            and child.kind is TokenKind.GENERIC
            and child.value.lower() == "param"
        ):
            following = children[index + 1] if index + 1 < len(children) else None
            if isinstance(following, Group) and following.kind is GroupKind.PAREN:
                return tuple(attributes), following
        break
    return (), None


class SyntaxTree:
    """Parsed PowerShell script with a small query interface."""

    def __init__(self, root: Group, nodes: Sequence[SyntaxNode]) -> None:
        self.root = root
        self._nodes = tuple(nodes)

    @classmethod
    def parse(cls, text: str) -> "SyntaxTree":
        root = build_groups(tokenize(text))
        walker = _Walker()
        walker.walk_statements(root.children, 0)
        return cls(root, walker.nodes)

    def find_all(
        self,
        predicate: Callable[[SyntaxNode], bool],
        *,
        recurse_nested: bool = True,
    ) -> List[SyntaxNode]:
        """Return nodes matching ``predicate`` in source order.

        Without ``recurse_nested`` only nodes outside every script block are returned.
        """
        return [
            node
            for node in self._nodes
            if (recurse_nested or node.depth == 0) and predicate(node)
        ]

    def functions(self, *, recurse_nested: bool = False) -> List[FunctionDefinition]:
        found = self.find_all(_is_function, recurse_nested=recurse_nested)
        return [node for node in found if isinstance(node, FunctionDefinition)]

    def commands(self, *, recurse_nested: bool = True) -> List[CommandExpression]:
        found = self.find_all(_is_command, recurse_nested=recurse_nested)
        return [node for node in found if isinstance(node, CommandExpression)]

    def commands_in(self, function: FunctionDefinition) -> List[CommandExpression]:
        return [command for command in self.commands() if function.contains(command)]


def _is_function(node: SyntaxNode) -> bool:
    return isinstance(node, FunctionDefinition)


def _is_command(node: SyntaxNode) -> bool:
    return isinstance(node, CommandExpression)


__all__ = [
    "CommandExpression",
    "FunctionDefinition",
    "Group",
    "GroupKind",
    "KEYWORDS",
    "SyntaxTree",
    "build_groups",
]
