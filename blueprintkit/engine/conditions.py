"""Condition expressions: parsing, evaluation and plan building.

A condition is a small boolean expression over declared variable names.  It
is parsed into an explicit AST and evaluated against the typed
``ResolvedConfig``; there is no template-engine truthiness involved.

Two surface syntaxes produce the same AST:

* infix::

      DatabaseDriver != "" and AuthType in ["jwt", "oauth2"]
      !UseDocker || Framework == "gin"

* the call form used by existing blueprint manifests::

      {{and (ne .DatabaseDriver "") (eq .DatabaseORM "gorm")}}
      {{eq .Framework "gin" "echo"}}

Operands of ``and``/``or``/``not`` must be booleans; a bare variable is only
accepted when it is a bool variable.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Optional, Union

from blueprintkit.catalog.models import (
    BlueprintManifest,
    DependencyDeclaration,
    FileEntry,
    PostHook,
)
from blueprintkit.engine.resolver import ResolvedConfig
from blueprintkit.errors import ConditionError


# ---------------------------------------------------------------------------
# AST
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Literal:
    value: Union[str, int, bool]


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class ListLiteral:
    items: tuple["Node", ...]


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class And:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    operands: tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    op: str  # "==" or "!="
    left: "Node"
    right: "Node"


@dataclass(frozen=True)
class Membership:
    item: "Node"
    options: ListLiteral
    negated: bool = False


Node = Union[Literal, Variable, ListLiteral, Not, And, Or, Compare, Membership]


# ---------------------------------------------------------------------------
# Tokenizer
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class _Token:
    kind: str  # STRING, INT, NAME, FIELD, OP, END
    text: str
    pos: int


_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<int>-?\d+)
  | (?P<field>\.[A-Za-z_][A-Za-z0-9_]*)
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|&&|\|\||!|\(|\)|\[|\]|,)
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", '"': '"', "'": "'"}


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", lambda m: _ESCAPES.get(m.group(1), m.group(1)), body)


def _tokenize(expression: str) -> list[_Token]:
    tokens: list[_Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ConditionError(f"unexpected character {expression[pos]!r} at {pos}", expression)
        kind = match.lastgroup or ""
        if kind != "ws":
            tokens.append(_Token(kind.upper(), match.group(), pos))
        pos = match.end()
    tokens.append(_Token("END", "", len(expression)))
    return tokens


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


class _Parser:
    """Recursive-descent parser over a token list."""

    def __init__(self, expression: str, tokens: list[_Token]) -> None:
        self.expression = expression
        self.tokens = tokens
        self.index = 0

    # -- token helpers -----------------------------------------------------

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _peek(self, offset: int = 1) -> _Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def _advance(self) -> _Token:
        token = self.current
        if token.kind != "END":
            self.index += 1
        return token

    def _is(self, *texts: str) -> bool:
        token = self.current
        return token.kind in ("OP", "NAME") and token.text in texts

    def _expect(self, text: str) -> _Token:
        if not self._is(text):
            self._fail(f"expected {text!r}")
        return self._advance()

    def _fail(self, message: str) -> None:
        token = self.current
        found = token.text or "end of expression"
        raise ConditionError(f"{message}, found {found!r} at {token.pos}", self.expression)

    def expect_end(self) -> None:
        if self.current.kind != "END":
            self._fail("unexpected trailing input")

    # -- infix grammar -----------------------------------------------------

    def parse_or(self) -> Node:
        operands = [self.parse_and()]
        while self._is("or", "||"):
            self._advance()
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else Or(tuple(operands))

    def parse_and(self) -> Node:
        operands = [self.parse_not()]
        while self._is("and", "&&"):
            self._advance()
            operands.append(self.parse_not())
        return operands[0] if len(operands) == 1 else And(tuple(operands))

    def parse_not(self) -> Node:
        if self._is("not", "!") and not (self._is("not") and self._peek().text == "in"):
            self._advance()
            return Not(self.parse_not())
        return self.parse_comparison()

    def parse_comparison(self) -> Node:
        left = self.parse_operand()
        if self._is("==", "!="):
            op = self._advance().text
            return Compare(op, left, self.parse_operand())
        if self._is("in"):
            self._advance()
            return Membership(left, self._parse_list())
        if self._is("not") and self._peek().text == "in":
            self._advance()
            self._advance()
            return Membership(left, self._parse_list(), negated=True)
        return left

    def parse_operand(self) -> Node:
        token = self.current
        if self._is("("):
            self._advance()
            node = self.parse_or()
            self._expect(")")
            return node
        if self._is("["):
            return self._parse_list()
        if token.kind in ("STRING", "INT", "NAME", "FIELD"):
            return self._parse_atom()
        self._fail("expected an operand")
        raise AssertionError("unreachable")

    def _parse_atom(self) -> Node:
        token = self._advance()
        if token.kind == "STRING":
            return Literal(_unquote(token.text))
        if token.kind == "INT":
            return Literal(int(token.text))
        if token.kind == "FIELD":
            return Variable(token.text[1:])
        if token.text in ("true", "false"):
            return Literal(token.text == "true")
        if token.text in _RESERVED:
            self.index -= 1
            self._fail("unexpected keyword")
        return Variable(token.text)

    def _parse_list(self) -> ListLiteral:
        self._expect("[")
        items: list[Node] = []
        while not self._is("]"):
            if self.current.kind not in ("STRING", "INT", "NAME", "FIELD"):
                self._fail("expected a list item")
            items.append(self._parse_atom())
            if self._is(","):
                self._advance()
            elif not self._is("]"):
                self._fail("expected ',' or ']'")
        self._expect("]")
        return ListLiteral(tuple(items))

    # -- call form (``{{eq .A "x"}}``) --------------------------------------

    def parse_call_form(self) -> Node:
        token = self.current
        if token.kind == "NAME" and token.text in _CALL_FUNCS:
            return self._parse_call()
        return self._parse_call_arg()

    def _parse_call(self) -> Node:
        func = self._advance().text
        args: list[Node] = []
        while self.current.kind != "END" and not self._is(")"):
            args.append(self._parse_call_arg())

        if func == "not":
            if len(args) != 1:
                self._fail("'not' takes exactly one argument")
            return Not(args[0])
        if func in ("and", "or"):
            if len(args) < 2:
                self._fail(f"'{func}' takes at least two arguments")
            return And(tuple(args)) if func == "and" else Or(tuple(args))
        if len(args) < 2:
            self._fail(f"'{func}' takes at least two arguments")
        if func == "ne":
            if len(args) != 2:
                self._fail("'ne' takes exactly two arguments")
            return Compare("!=", args[0], args[1])
        if len(args) == 2:
            return Compare("==", args[0], args[1])
        # eq with several candidates is a membership test
        return Membership(args[0], ListLiteral(tuple(args[1:])))

    def _parse_call_arg(self) -> Node:
        if self._is("("):
            self._advance()
            node = self.parse_call_form()
            self._expect(")")
            return node
        if self.current.kind in ("STRING", "INT", "FIELD") or (
            self.current.kind == "NAME" and self.current.text in ("true", "false")
        ):
            return self._parse_atom()
        self._fail("expected an argument")
        raise AssertionError("unreachable")


_RESERVED = frozenset({"and", "or", "not", "in", "true", "false"})
_CALL_FUNCS = frozenset({"eq", "ne", "and", "or", "not"})
_CALL_FORM_RE = re.compile(r"^\{\{-?\s*(.*?)\s*-?\}\}$", re.DOTALL)


@lru_cache(maxsize=1024)
def parse_condition(expression: str) -> Optional[Node]:
    """Parse *expression* into an AST; ``None`` for an absent condition.

    Raises:
        ConditionError: On any syntax error.
    """
    text = expression.strip()
    if not text:
        return None

    call_form = _CALL_FORM_RE.match(text)
    if call_form:
        body = call_form.group(1)
        parser = _Parser(expression, _tokenize(body))
        if parser.current.kind == "END":
            raise ConditionError("empty condition", expression)
        node = parser.parse_call_form()
    else:
        parser = _Parser(expression, _tokenize(text))
        node = parser.parse_or()
    parser.expect_end()
    return node


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------


def referenced_variables(node: Optional[Node]) -> set[str]:
    """Return every variable name referenced by *node*."""
    if node is None or isinstance(node, Literal):
        return set()
    if isinstance(node, Variable):
        return {node.name}
    if isinstance(node, Not):
        return referenced_variables(node.operand)
    if isinstance(node, (And, Or)):
        return set().union(*(referenced_variables(n) for n in node.operands))
    if isinstance(node, ListLiteral):
        return set().union(*(referenced_variables(n) for n in node.items)) if node.items else set()
    if isinstance(node, Compare):
        return referenced_variables(node.left) | referenced_variables(node.right)
    return referenced_variables(node.item) | referenced_variables(node.options)


def _equals(left: Any, right: Any) -> bool:
    # bool is an int subclass; True must not equal 1.
    return type(left) is type(right) and left == right


def _as_bool(value: Any, node: Node, expression: str) -> bool:
    if not isinstance(value, bool):
        what = f"variable '{node.name}'" if isinstance(node, Variable) else "operand"
        raise ConditionError(
            f"{what} is {type(value).__name__}, not a boolean", expression
        )
    return value


def _evaluate(node: Node, config: ResolvedConfig, expression: str) -> Any:
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Variable):
        if node.name not in config:
            raise ConditionError(f"undeclared variable '{node.name}'", expression)
        return config.value(node.name)
    if isinstance(node, Not):
        return not _as_bool(_evaluate(node.operand, config, expression), node.operand, expression)
    if isinstance(node, And):
        return all(
            _as_bool(_evaluate(n, config, expression), n, expression) for n in node.operands
        )
    if isinstance(node, Or):
        return any(
            _as_bool(_evaluate(n, config, expression), n, expression) for n in node.operands
        )
    if isinstance(node, Compare):
        equal = _equals(
            _evaluate(node.left, config, expression),
            _evaluate(node.right, config, expression),
        )
        return equal if node.op == "==" else not equal
    if isinstance(node, Membership):
        item = _evaluate(node.item, config, expression)
        found = any(_equals(item, _evaluate(o, config, expression)) for o in node.options.items)
        return not found if node.negated else found
    raise ConditionError("a list cannot be used as a condition", expression)


def evaluate_condition(expression: Optional[str], config: ResolvedConfig) -> bool:
    """Evaluate *expression* against *config*.

    An absent or blank expression is unconditionally true.  Every referenced
    variable is checked against the declared set before evaluation, so an
    undeclared name fails even on a short-circuited branch.

    Raises:
        ConditionError: On a syntax error, an undeclared variable, or a
            non-boolean operand.
    """
    node = parse_condition(expression or "")
    if node is None:
        return True
    undeclared = sorted(n for n in referenced_variables(node) if n not in config)
    if undeclared:
        raise ConditionError(
            f"undeclared variable(s): {', '.join(undeclared)}", expression or ""
        )
    return _as_bool(_evaluate(node, config, expression or ""), node, expression or "")


# ---------------------------------------------------------------------------
# Plan
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class GenerationPlan:
    """The entries of a blueprint whose condition evaluated true."""

    blueprint_id: str
    files: tuple[FileEntry, ...]
    dependencies: tuple[DependencyDeclaration, ...]
    hooks: tuple[PostHook, ...]


async def _select(
    entries: tuple[Any, ...],
    config: ResolvedConfig,
    semaphore: asyncio.Semaphore,
) -> list[Any]:
    async def _check(entry: Any) -> bool:
        async with semaphore:
            return await asyncio.to_thread(evaluate_condition, entry.condition, config)

    decisions = await asyncio.gather(*(_check(e) for e in entries))
    return [entry for entry, keep in zip(entries, decisions) if keep]


async def evaluate_plan(
    manifest: BlueprintManifest,
    config: ResolvedConfig,
    *,
    max_workers: int = 8,
) -> GenerationPlan:
    """Evaluate every file, dependency and hook condition of *manifest*.

    Evaluations fan out over at most *max_workers* worker threads; the plan
    keeps the manifest's declaration order.

    Raises:
        ConditionError: From the first failing condition.
    """
    semaphore = asyncio.Semaphore(max_workers)
    files, dependencies, hooks = await asyncio.gather(
        _select(manifest.files, config, semaphore),
        _select(manifest.dependencies, config, semaphore),
        _select(manifest.post_hooks, config, semaphore),
    )
    return GenerationPlan(
        blueprint_id=manifest.id,
        files=tuple(files),
        dependencies=tuple(dependencies),
        hooks=tuple(hooks),
    )
