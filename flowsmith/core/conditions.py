"""Boolean expressions for Condition nodes.

Expressions are tokenized and parsed into a small AST; nothing is ever
``eval``-ed. Operands may be template tokens (``{{@n1:Label.status}}``),
string/number/boolean/null literals, or bare identifiers that are looked up
in the outputs of the condition's activated direct predecessors.

Grammar::

    expr    := or
    or      := and (("||" | "or") and)*
    and     := not (("&&" | "and") not)*
    not     := ("!" | "not") not | compare
    compare := operand (OP operand)?
    operand := token | string | number | true | false | null | identifier | "(" expr ")"
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from flowsmith.core.templates import (
    MissingField,
    ResolutionError,
    TemplateReference,
    find_references,
    lookup_field,
    resolve_reference,
)

logger = logging.getLogger(__name__)

COMPARISON_OPERATORS = (
    "===",
    "!==",
    "==",
    "!=",
    ">=",
    "<=",
    ">",
    "<",
    "contains",
    "startsWith",
    "endsWith",
    "in",
)

_LITERAL_WORDS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
    "undefined": None,
}

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<ref>\{\{@[^{}]+\}\})
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[<>!()])
  | (?P<word>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z0-9_]+)*)
    """,
    re.VERBOSE,
)

_ESCAPE_RE = re.compile(r"\\(.)")


class ConditionSyntaxError(ValueError):
    """The expression could not be parsed."""

    pass


class AmbiguousIdentifier(ResolutionError):
    """A bare identifier matched fields in more than one predecessor."""

    def __init__(self, name: str, node_ids: Sequence[str]):
        self.candidates = sorted(node_ids)
        super().__init__(
            ",".join(self.candidates),
            name,
            f"Ambiguous identifier '{name}': found in {', '.join(self.candidates)}. "
            "Use a {{@nodeId:Label.field}} reference instead.",
        )


# ========== AST ==========


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Reference:
    ref: TemplateReference


@dataclass(frozen=True)
class Identifier:
    name: str


@dataclass(frozen=True)
class Compare:
    op: str
    left: Any
    right: Any


@dataclass(frozen=True)
class Not:
    operand: Any


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    operands: tuple


# ========== Comparison semantics ==========


def compare(op, left, right):
    """Compare two operand values without raising.

    Ordering comparisons need two numbers or two strings; any type mismatch
    evaluates to False.
    """

    def is_number(value):
        return isinstance(value, (int, float)) and not isinstance(value, bool)

    if op in ("==", "==="):
        return left == right
    if op in ("!=", "!=="):
        return left != right
    if op in (">", "<", ">=", "<="):
        if not (
            (is_number(left) and is_number(right))
            or (isinstance(left, str) and isinstance(right, str))
        ):
            return False
        if op == ">":
            return left > right
        if op == "<":
            return left < right
        if op == ">=":
            return left >= right
        return left <= right
    if op == "contains":
        if isinstance(left, str):
            return isinstance(right, str) and right in left
        if isinstance(left, (list, tuple, dict)):
            try:
                return right in left
            except TypeError:
                return False
        return False
    if op == "startsWith":
        return isinstance(left, str) and isinstance(right, str) and left.startswith(right)
    if op == "endsWith":
        return isinstance(left, str) and isinstance(right, str) and left.endswith(right)
    if op == "in":
        if isinstance(right, str):
            return isinstance(left, str) and left in right
        if isinstance(right, (list, tuple, dict)):
            try:
                return left in right
            except TypeError:
                return False
        return False
    return False


def lookup_identifier(name: str, scope: Sequence[tuple[str, Mapping[str, Any]]]) -> Any:
    """Find a bare identifier in the predecessor outputs.

    Args:
        name: Identifier, optionally dotted (``user.plan``)
        scope: ``(node_id, fields)`` for each activated direct predecessor

    Raises:
        AmbiguousIdentifier: More than one predecessor has the root field
        MissingField: No predecessor has it
    """
    root = name.split(".")[0]
    matches = [(node_id, fields) for node_id, fields in scope if root in fields]
    if len(matches) > 1:
        logger.warning(
            f"Identifier '{name}' is ambiguous across {[node_id for node_id, _ in matches]}"
        )
        raise AmbiguousIdentifier(name, [node_id for node_id, _ in matches])
    if not matches:
        raise MissingField(",".join(node_id for node_id, _ in scope) or "<none>", name)
    node_id, fields = matches[0]
    return lookup_field(node_id, fields, name)


# ========== Parser ==========


def _tokenize(source: str) -> list[tuple[str, Any]]:
    tokens: list[tuple[str, Any]] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if not match:
            raise ConditionSyntaxError(f"Unexpected character {source[pos]!r} at position {pos}")
        pos = match.end()
        kind = match.lastgroup
        text = match.group(0)
        if kind == "ws":
            continue
        if kind == "ref":
            refs = find_references(text)
            if not refs:
                raise ConditionSyntaxError(f"Malformed reference {text!r}")
            tokens.append(("ref", refs[0]))
        elif kind == "string":
            tokens.append(("literal", _ESCAPE_RE.sub(r"\1", text[1:-1])))
        elif kind == "number":
            tokens.append(("literal", float(text) if "." in text else int(text)))
        elif kind == "op":
            if text == "&&":
                tokens.append(("and", text))
            elif text == "||":
                tokens.append(("or", text))
            elif text == "!":
                tokens.append(("not", text))
            elif text in ("(", ")"):
                tokens.append((text, text))
            else:
                tokens.append(("cmp", text))
        elif text in _LITERAL_WORDS:
            tokens.append(("literal", _LITERAL_WORDS[text]))
        elif text in ("and", "or", "not"):
            tokens.append((text, text))
        elif text in COMPARISON_OPERATORS:
            tokens.append(("cmp", text))
        else:
            tokens.append(("ident", text))
    return tokens


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.pos = 0

    def peek(self) -> str | None:
        return self.tokens[self.pos][0] if self.pos < len(self.tokens) else None

    def take(self) -> tuple[str, Any]:
        token = self.tokens[self.pos]
        self.pos += 1
        return token

    def parse(self):
        if not self.tokens:
            raise ConditionSyntaxError("Condition expression is empty")
        node = self.parse_or()
        if self.pos != len(self.tokens):
            raise ConditionSyntaxError(
                f"Unexpected token {self.tokens[self.pos][1]!r} in {self.source!r}"
            )
        return node

    def parse_or(self):
        operands = [self.parse_and()]
        while self.peek() == "or":
            self.take()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else BoolOp("or", tuple(operands))

    def parse_and(self):
        operands = [self.parse_not()]
        while self.peek() == "and":
            self.take()
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else BoolOp("and", tuple(operands))

    def parse_not(self):
        if self.peek() == "not":
            self.take()
            return Not(self.parse_not())
        return self.parse_compare()

    def parse_compare(self):
        left = self.parse_operand()
        if self.peek() == "cmp":
            _, op = self.take()
            return Compare(op, left, self.parse_operand())
        return left

    def parse_operand(self):
        kind = self.peek()
        if kind is None:
            raise ConditionSyntaxError(f"Unexpected end of expression in {self.source!r}")
        _, value = self.take()
        if kind == "literal":
            return Literal(value)
        if kind == "ref":
            return Reference(value)
        if kind == "ident":
            return Identifier(value)
        if kind == "(":
            node = self.parse_or()
            if self.peek() != ")":
                raise ConditionSyntaxError(f"Missing closing parenthesis in {self.source!r}")
            self.take()
            return node
        raise ConditionSyntaxError(f"Unexpected token {value!r} in {self.source!r}")


# ========== Public API ==========


@dataclass(frozen=True)
class ConditionExpression:
    """A parsed condition, ready to evaluate or render."""

    source: str
    root: Any

    def references(self) -> list[TemplateReference]:
        refs: list[TemplateReference] = []
        self._walk(self.root, lambda n: refs.append(n.ref) if isinstance(n, Reference) else None)
        return refs

    def identifiers(self) -> list[str]:
        names: list[str] = []
        self._walk(self.root, lambda n: names.append(n.name) if isinstance(n, Identifier) else None)
        return names

    def _walk(self, node, visit: Callable[[Any], None]) -> None:
        visit(node)
        if isinstance(node, Compare):
            self._walk(node.left, visit)
            self._walk(node.right, visit)
        elif isinstance(node, Not):
            self._walk(node.operand, visit)
        elif isinstance(node, BoolOp):
            for operand in node.operands:
                self._walk(operand, visit)

    def evaluate(
        self,
        outputs: Mapping[str, Any],
        scope: Sequence[tuple[str, Mapping[str, Any]]] = (),
    ) -> bool:
        """Evaluate against node outputs.

        Args:
            outputs: Node outputs visible to the condition (for template tokens)
            scope: ``(node_id, fields)`` of activated direct predecessors
                (for bare identifiers)

        Raises:
            ResolutionError: A token or identifier cannot be resolved
        """
        return bool(self._eval(self.root, outputs, scope))

    def _eval(self, node, outputs, scope) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Reference):
            return resolve_reference(node.ref, outputs)
        if isinstance(node, Identifier):
            return lookup_identifier(node.name, scope)
        if isinstance(node, Not):
            return not self._eval(node.operand, outputs, scope)
        if isinstance(node, Compare):
            left = self._eval(node.left, outputs, scope)
            right = self._eval(node.right, outputs, scope)
            return compare(node.op, left, right)
        if isinstance(node, BoolOp):
            if node.op == "and":
                return all(self._eval(operand, outputs, scope) for operand in node.operands)
            return any(self._eval(operand, outputs, scope) for operand in node.operands)
        raise TypeError(f"Unknown expression node: {node!r}")

    def to_python(
        self,
        render_reference: Callable[[TemplateReference], str],
        render_identifier: Callable[[str], str],
    ) -> str:
        """Render as a Python expression using the generated program's helpers.

        The generated program defines ``compare`` with the same semantics as
        this module, so compiled and interpreted conditions agree.
        """
        return self._render(self.root, render_reference, render_identifier)

    def _render(self, node, render_reference, render_identifier) -> str:
        if isinstance(node, Literal):
            return repr(node.value)
        if isinstance(node, Reference):
            return render_reference(node.ref)
        if isinstance(node, Identifier):
            return render_identifier(node.name)
        if isinstance(node, Not):
            return f"(not {self._render(node.operand, render_reference, render_identifier)})"
        if isinstance(node, Compare):
            left = self._render(node.left, render_reference, render_identifier)
            right = self._render(node.right, render_reference, render_identifier)
            return f"compare({node.op!r}, {left}, {right})"
        if isinstance(node, BoolOp):
            parts = [self._render(o, render_reference, render_identifier) for o in node.operands]
            return "(" + f" {node.op} ".join(f"bool({p})" for p in parts) + ")"
        raise TypeError(f"Unknown expression node: {node!r}")


def parse_condition(source: str) -> ConditionExpression:
    """Parse a condition expression.

    Raises:
        ConditionSyntaxError: If the expression is empty or malformed
    """
    if not isinstance(source, str):
        raise ConditionSyntaxError("Condition expression must be a string")
    return ConditionExpression(source=source, root=_Parser(source).parse())
