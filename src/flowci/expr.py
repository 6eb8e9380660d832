"""Guard expressions and ``${{ }}`` templates.

Expressions are parsed once, when the pipeline is loaded, into a small typed
AST. Evaluation happens later against a scope object that resolves root
names (``github``, ``env``, ``needs``, ``steps``...) and functions.

Grammar (lowest to highest precedence)::

    or       := and ( "||" and )*
    and      := equality ( "&&" equality )*
    equality := compare ( ("==" | "!=") compare )*
    compare  := unary ( ("<" | "<=" | ">" | ">=") unary )*
    unary    := "!" unary | postfix
    postfix  := primary ( "." IDENT | "[" or "]" )*
    primary  := literal | IDENT | IDENT "(" args ")" | "(" or ")"
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

from .errors import ExpressionError, UnknownVariableError

logger = logging.getLogger(__name__)

STATUS_FUNCTIONS = frozenset({"always", "success", "failure", "cancelled"})

# name -> (min args, max args); None means unbounded
FUNCTION_ARITY: dict[str, tuple[int, int | None]] = {
    **{name: (0, 0) for name in STATUS_FUNCTIONS},
    "contains": (2, 2),
    "startsWith": (2, 2),
    "endsWith": (2, 2),
    "format": (1, None),
    "join": (1, 2),
    "toJSON": (1, 1),
    "fromJSON": (1, 1),
    "hashFiles": (1, None),
}
FUNCTIONS = frozenset(FUNCTION_ARITY)


class Scope(Protocol):
    def resolve(self, name: str) -> Any: ...

    def call(self, name: str, args: Sequence[Any]) -> Any: ...


# ---------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Name:
    name: str


@dataclass(frozen=True)
class Member:
    obj: "Node"
    name: str


@dataclass(frozen=True)
class Index:
    obj: "Node"
    key: "Node"


@dataclass(frozen=True)
class Call:
    name: str
    args: tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class Binary:
    op: str
    left: "Node"
    right: "Node"


Node = Literal | Name | Member | Index | Call | Not | Binary


# ---------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>-?\d+(?:\.\d+)?)
  | (?P<string>'(?:[^']|'')*')
  | (?P<op>&&|\|\||==|!=|<=|>=|<|>|!|\(|\)|\[|\]|\.|,)
  | (?P<ident>[A-Za-z_][A-Za-z0-9_-]*)
    """,
    re.VERBOSE,
)

_KEYWORDS = {"true": True, "false": False, "null": None}


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str
    pos: int


def _tokenize(source: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(source):
        m = _TOKEN_RE.match(source, pos)
        if not m:
            raise ExpressionError(source, f"unexpected character {source[pos]!r}", pos)
        kind = m.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind, m.group(), pos))
        pos = m.end()
    tokens.append(_Token("eof", "", len(source)))
    return tokens


# ---------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------

def _arity_text(low: int, high: int | None) -> str:
    if high is None:
        return f"at least {low} argument" + ("" if low == 1 else "s")
    if low == high:
        return f"{low} argument" + ("" if low == 1 else "s")
    return f"{low} to {high} arguments"


class _Parser:
    def __init__(self, source: str):
        self.source = source
        self.tokens = _tokenize(source)
        self.i = 0

    def peek(self) -> _Token:
        return self.tokens[self.i]

    def next(self) -> _Token:
        tok = self.tokens[self.i]
        self.i += 1
        return tok

    def accept(self, *texts: str) -> _Token | None:
        tok = self.peek()
        if tok.kind == "op" and tok.text in texts:
            self.i += 1
            return tok
        return None

    def expect(self, text: str) -> _Token:
        tok = self.next()
        if tok.kind != "op" or tok.text != text:
            found = tok.text or "end of expression"
            raise ExpressionError(self.source, f"expected {text!r}, found {found!r}", tok.pos)
        return tok

    def parse(self) -> Node:
        if self.peek().kind == "eof":
            raise ExpressionError(self.source, "empty expression", 0)
        node = self.parse_or()
        tok = self.peek()
        if tok.kind != "eof":
            raise ExpressionError(self.source, f"unexpected token {tok.text!r}", tok.pos)
        return node

    def parse_or(self) -> Node:
        node = self.parse_and()
        while self.accept("||"):
            node = Binary("||", node, self.parse_and())
        return node

    def parse_and(self) -> Node:
        node = self.parse_equality()
        while self.accept("&&"):
            node = Binary("&&", node, self.parse_equality())
        return node

    def parse_equality(self) -> Node:
        node = self.parse_compare()
        while True:
            tok = self.accept("==", "!=")
            if not tok:
                return node
            node = Binary(tok.text, node, self.parse_compare())

    def parse_compare(self) -> Node:
        node = self.parse_unary()
        while True:
            tok = self.accept("<", "<=", ">", ">=")
            if not tok:
                return node
            node = Binary(tok.text, node, self.parse_unary())

    def parse_unary(self) -> Node:
        if self.accept("!"):
            return Not(self.parse_unary())
        return self.parse_postfix()

    def parse_postfix(self) -> Node:
        node = self.parse_primary()
        while True:
            if self.accept("."):
                tok = self.next()
                if tok.kind != "ident":
                    raise ExpressionError(self.source, "expected property name after '.'", tok.pos)
                node = Member(node, tok.text)
            elif self.accept("["):
                key = self.parse_or()
                self.expect("]")
                node = Index(node, key)
            else:
                return node

    def parse_primary(self) -> Node:
        tok = self.next()
        if tok.kind == "number":
            return Literal(float(tok.text) if "." in tok.text else int(tok.text))
        if tok.kind == "string":
            return Literal(tok.text[1:-1].replace("''", "'"))
        if tok.kind == "ident":
            if tok.text in _KEYWORDS:
                return Literal(_KEYWORDS[tok.text])
            if self.accept("("):
                if tok.text not in FUNCTIONS:
                    raise ExpressionError(self.source, f"unknown function {tok.text}()", tok.pos)
                args: list[Node] = []
                if not self.accept(")"):
                    args.append(self.parse_or())
                    while self.accept(","):
                        args.append(self.parse_or())
                    self.expect(")")
                low, high = FUNCTION_ARITY[tok.text]
                if len(args) < low or (high is not None and len(args) > high):
                    raise ExpressionError(self.source, f"{tok.text}() takes {_arity_text(low, high)}, got {len(args)}", tok.pos)
                return Call(tok.text, tuple(args))
            return Name(tok.text)
        if tok.kind == "op" and tok.text == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        found = tok.text or "end of expression"
        raise ExpressionError(self.source, f"unexpected token {found!r}", tok.pos)


# ---------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------

def truthy(value: Any) -> bool:
    if value is None or value is False:
        return False
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return value != 0 and value == value  # NaN is falsy
    if isinstance(value, str):
        return value != ""
    return True


def to_text(value: Any) -> str:
    """Render a value the way it appears when interpolated into a string."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list, tuple)):
        return json.dumps(value, sort_keys=True)
    return str(value)


def _to_number(value: Any) -> float | None:
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if s == "":
            return 0.0
        try:
            return float(s)
        except ValueError:
            return None
    return None


def loose_equals(left: Any, right: Any) -> bool:
    # strings compare case-insensitively, mixed types are coerced to numbers
    if isinstance(left, str) and isinstance(right, str):
        return left.casefold() == right.casefold()
    if left is None or right is None:
        return left is right
    if type(left) is type(right):
        return left == right
    a, b = _to_number(left), _to_number(right)
    if a is None or b is None:
        return False
    return a == b


def describe(node: Node) -> str:
    """Dotted path text for a reference node (used in error messages)."""
    if isinstance(node, Name):
        return node.name
    if isinstance(node, Member):
        return f"{describe(node.obj)}.{node.name}"
    if isinstance(node, Index):
        key = node.key.value if isinstance(node.key, Literal) else "?"
        return f"{describe(node.obj)}[{key!r}]"
    return type(node).__name__


def _lookup(container: Any, key: Any, node: Node) -> Any:
    if isinstance(container, dict) or hasattr(container, "keys"):
        try:
            return container[key]
        except (KeyError, TypeError):
            raise UnknownVariableError(describe(node)) from None
    if isinstance(container, (list, tuple)) and isinstance(key, (int, float)):
        idx = int(key)
        if 0 <= idx < len(container):
            return container[idx]
    raise UnknownVariableError(describe(node))


def evaluate_node(node: Node, scope: Scope) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Name):
        return scope.resolve(node.name)
    if isinstance(node, Member):
        return _lookup(evaluate_node(node.obj, scope), node.name, node)
    if isinstance(node, Index):
        return _lookup(evaluate_node(node.obj, scope), evaluate_node(node.key, scope), node)
    if isinstance(node, Call):
        return scope.call(node.name, [evaluate_node(a, scope) for a in node.args])
    if isinstance(node, Not):
        return not truthy(evaluate_node(node.operand, scope))
    if isinstance(node, Binary):
        if node.op == "&&":
            left = evaluate_node(node.left, scope)
            return evaluate_node(node.right, scope) if truthy(left) else left
        if node.op == "||":
            left = evaluate_node(node.left, scope)
            return left if truthy(left) else evaluate_node(node.right, scope)
        left = evaluate_node(node.left, scope)
        right = evaluate_node(node.right, scope)
        if node.op == "==":
            return loose_equals(left, right)
        if node.op == "!=":
            return not loose_equals(left, right)
        a, b = _to_number(left), _to_number(right)
        if a is None or b is None:
            return False
        return {"<": a < b, "<=": a <= b, ">": a > b, ">=": a >= b}[node.op]
    raise TypeError(f"Unknown expression node: {node!r}")


def _calls(node: Node) -> set[str]:
    if isinstance(node, Call):
        out = {node.name}
        for a in node.args:
            out |= _calls(a)
        return out
    if isinstance(node, Member):
        return _calls(node.obj)
    if isinstance(node, Not):
        return _calls(node.operand)
    if isinstance(node, Index):
        return _calls(node.obj) | _calls(node.key)
    if isinstance(node, Binary):
        return _calls(node.left) | _calls(node.right)
    return set()


def _roots(node: Node) -> set[str]:
    if isinstance(node, Name):
        return {node.name}
    if isinstance(node, Call):
        out: set[str] = set()
        for a in node.args:
            out |= _roots(a)
        return out
    if isinstance(node, Member):
        return _roots(node.obj)
    if isinstance(node, Not):
        return _roots(node.operand)
    if isinstance(node, Index):
        return _roots(node.obj) | _roots(node.key)
    if isinstance(node, Binary):
        return _roots(node.left) | _roots(node.right)
    return set()


# ---------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------

def _strip_wrapper(source: str) -> str:
    s = source.strip()
    if s.startswith("${{") and s.endswith("}}"):
        s = s[3:-2].strip()
    return s


@dataclass(frozen=True)
class Expression:
    source: str
    root: Node

    def evaluate(self, scope: Scope) -> Any:
        return evaluate_node(self.root, scope)

    @property
    def functions(self) -> frozenset[str]:
        return frozenset(_calls(self.root))

    @property
    def roots(self) -> frozenset[str]:
        """Context names the expression reads, e.g. {"github", "needs"}."""
        return frozenset(_roots(self.root))

    @property
    def uses_status_function(self) -> bool:
        return bool(self.functions & STATUS_FUNCTIONS)


def parse(source: str) -> Expression:
    """Parse a guard expression, with or without the ``${{ }}`` wrapper."""
    if not isinstance(source, str):
        # YAML may hand us `if: true`
        return Expression(str(source), Literal(source))
    return Expression(source, _Parser(_strip_wrapper(source)).parse())


def evaluate_guard(expr: Expression | None, scope: Scope) -> bool:
    """Evaluate a guard; unknown variables and bad runtime values make it false instead of raising."""
    if expr is None:
        return True
    try:
        return truthy(expr.evaluate(scope))
    except UnknownVariableError as e:
        logger.warning("Guard %r evaluated to false: %s", expr.source, e)
        return False
    except (ValueError, TypeError, IndexError, KeyError) as e:
        # bad runtime values, e.g. fromJSON on a non-JSON output
        logger.warning("Guard %r failed to evaluate, treating as false: %s: %s", expr.source, type(e).__name__, e)
        return False


@dataclass(frozen=True)
class Template:
    """A string with zero or more ``${{ expr }}`` spans."""
    source: str
    parts: tuple[str | Expression, ...]

    @property
    def is_static(self) -> bool:
        return all(isinstance(p, str) for p in self.parts)

    def render(self, scope: Scope) -> str:
        out: list[str] = []
        for part in self.parts:
            if isinstance(part, str):
                out.append(part)
                continue
            try:
                out.append(to_text(part.evaluate(scope)))
            except UnknownVariableError as e:
                logger.debug("Template %r: %s (rendered as empty)", self.source, e)
        return "".join(out)


def _find_close(text: str, start: int) -> int:
    """Index of the ``}}`` closing a span opened before ``start``, skipping quoted strings."""
    i = start
    in_str = False
    while i < len(text):
        ch = text[i]
        if in_str:
            if ch == "'":
                if text.startswith("''", i):
                    i += 2
                    continue
                in_str = False
        elif ch == "'":
            in_str = True
        elif text.startswith("}}", i):
            return i
        i += 1
    return -1


def parse_template(text: str) -> Template:
    parts: list[str | Expression] = []
    pos = 0
    while True:
        open_at = text.find("${{", pos)
        if open_at < 0:
            if pos < len(text):
                parts.append(text[pos:])
            break
        if open_at > pos:
            parts.append(text[pos:open_at])
        close_at = _find_close(text, open_at + 3)
        if close_at < 0:
            raise ExpressionError(text, "unterminated '${{'", open_at)
        inner = text[open_at + 3:close_at].strip()
        parts.append(Expression(inner, _Parser(inner).parse()))
        pos = close_at + 2
    return Template(text, tuple(parts))


def render(value: Any, scope: Scope) -> Any:
    """Render templates inside strings, lists and dicts (dict keys are left as-is)."""
    if isinstance(value, str):
        if "${{" not in value:
            return value
        return parse_template(value).render(scope)
    if isinstance(value, dict):
        return {k: render(v, scope) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [render(v, scope) for v in value]
    return value


def validate_templates(value: Any) -> None:
    """Parse every template inside ``value`` so syntax errors surface at load time."""
    if isinstance(value, str):
        if "${{" in value:
            parse_template(value)
    elif isinstance(value, dict):
        for v in value.values():
            validate_templates(v)
    elif isinstance(value, (list, tuple)):
        for v in value:
            validate_templates(v)


__all__ = [
    "Expression",
    "Template",
    "evaluate_guard",
    "parse",
    "parse_template",
    "render",
    "to_text",
    "truthy",
    "validate_templates",
]
