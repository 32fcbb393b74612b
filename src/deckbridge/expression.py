"""
Sandboxed expression language for mapping files.

Mapping files may come from third-party contributors, so expressions such as
``value > 64 ? 'down' : 'up'`` are parsed by a small recursive-descent parser
and evaluated against a caller-supplied context. Nothing in the host
interpreter is reachable: only context variables, literals, arithmetic,
comparison, boolean logic, the ternary operator and a handful of pure math
functions.

Grammar (lowest to highest precedence)::

    ternary     := logic_or ('?' ternary ':' ternary)?
    logic_or    := logic_and (('||' | 'or') logic_and)*
    logic_and   := logic_not (('&&' | 'and') logic_not)*
    logic_not   := ('!' | 'not') logic_not | comparison
    comparison  := additive (('==' | '!=' | '<' | '<=' | '>' | '>=') additive)*
    additive    := term (('+' | '-') term)*
    term        := unary (('*' | '/' | '%') unary)*
    unary       := ('-' | '+') unary | primary
    primary     := NUMBER | STRING | 'true' | 'false' | 'null'
                 | NAME ('.' NAME)* | NAME '(' args ')' | '(' ternary ')'
"""

import math
import operator
import re
from functools import lru_cache
from typing import Any, Callable, Mapping, Optional

from deckbridge.logging_config import get_logger
from deckbridge.utils import clamp

logger = get_logger(__name__)

Context = Mapping[str, Any]
Node = Callable[[Context], Any]

MAX_EXPRESSION_LENGTH = 512
MAX_NESTING_DEPTH = 48

_MISSING = object()

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
    |(?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
    |(?P<name>[A-Za-z_][A-Za-z0-9_]*)
    |(?P<op>===|!==|==|!=|<=|>=|&&|\|\||[<>+\-*/%!?:().,])
    """,
    re.VERBOSE,
)

_KEYWORD_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "None": None,
}

_COMPARISONS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "===": operator.eq,
    "!=": operator.ne,
    "!==": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

def _numeric(symbol: str, apply: Callable[[Any, Any], Any]) -> Callable[[Any, Any], Any]:
    """Restrict a binary operator to numbers (no string repetition or formatting)."""

    def checked(left: Any, right: Any) -> Any:
        if not isinstance(left, (int, float)) or not isinstance(right, (int, float)):
            raise ExpressionError(
                f"Operator '{symbol}' needs numbers, got {type(left).__name__} and {type(right).__name__}"
            )
        return apply(left, right)

    return checked


_ARITHMETIC: dict[str, Callable[[Any, Any], Any]] = {
    symbol: _numeric(symbol, apply)
    for symbol, apply in (
        ("+", operator.add),
        ("-", operator.sub),
        ("*", operator.mul),
        ("/", operator.truediv),
        ("%", operator.mod),
    )
}


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "abs": abs,
    "min": min,
    "max": max,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
    "clamp": clamp,
}


class ExpressionError(Exception):
    """Raised when an expression cannot be parsed or evaluated."""

    pass


def _tokenize(source: str) -> list[tuple[str, str]]:
    tokens = []
    position = 0
    while position < len(source):
        match = _TOKEN_RE.match(source, position)
        if not match:
            raise ExpressionError(f"Unexpected character {source[position]!r} at position {position}")
        kind = match.lastgroup
        if kind != "ws":
            tokens.append((kind, match.group()))
        position = match.end()
    tokens.append(("end", ""))
    return tokens


def _unquote(literal: str) -> str:
    body = literal[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


class _Parser:
    """Builds a tree of closures; each closure evaluates one node."""

    def __init__(self, source: str):
        self._tokens = _tokenize(source)
        self._index = 0
        self._depth = 0

    def parse(self) -> Node:
        node = self._ternary()
        kind, text = self._peek()
        if kind != "end":
            raise ExpressionError(f"Unexpected token {text!r}")
        return node

    # Token helpers

    def _peek(self) -> tuple[str, str]:
        return self._tokens[self._index]

    def _advance(self) -> tuple[str, str]:
        token = self._tokens[self._index]
        self._index += 1
        return token

    def _accept(self, *symbols: str) -> Optional[str]:
        kind, text = self._peek()
        if kind in ("op", "name") and text in symbols:
            self._index += 1
            return text
        return None

    def _expect(self, symbol: str) -> None:
        if self._accept(symbol) is None:
            _, text = self._peek()
            raise ExpressionError(f"Expected {symbol!r}, found {text or 'end of expression'!r}")

    # Grammar rules

    def _ternary(self) -> Node:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise ExpressionError("Expression nested too deeply")
        try:
            condition = self._logic_or()
            if self._accept("?") is None:
                return condition
            if_true = self._ternary()
            self._expect(":")
            if_false = self._ternary()
            return lambda ctx: if_true(ctx) if condition(ctx) else if_false(ctx)
        finally:
            self._depth -= 1

    def _logic_or(self) -> Node:
        node = self._logic_and()
        while self._accept("||", "or"):
            left, right = node, self._logic_and()
            node = lambda ctx, left=left, right=right: left(ctx) or right(ctx)
        return node

    def _logic_and(self) -> Node:
        node = self._logic_not()
        while self._accept("&&", "and"):
            left, right = node, self._logic_not()
            node = lambda ctx, left=left, right=right: left(ctx) and right(ctx)
        return node

    def _logic_not(self) -> Node:
        if self._accept("!", "not"):
            operand = self._logic_not()
            return lambda ctx: not operand(ctx)
        return self._comparison()

    def _comparison(self) -> Node:
        node = self._additive()
        while True:
            symbol = self._accept(*_COMPARISONS)
            if symbol is None:
                return node
            compare, left, right = _COMPARISONS[symbol], node, self._additive()
            node = lambda ctx, compare=compare, left=left, right=right: compare(left(ctx), right(ctx))

    def _additive(self) -> Node:
        node = self._term()
        while True:
            symbol = self._accept("+", "-")
            if symbol is None:
                return node
            apply, left, right = _ARITHMETIC[symbol], node, self._term()
            node = lambda ctx, apply=apply, left=left, right=right: apply(left(ctx), right(ctx))

    def _term(self) -> Node:
        node = self._unary()
        while True:
            symbol = self._accept("*", "/", "%")
            if symbol is None:
                return node
            apply, left, right = _ARITHMETIC[symbol], node, self._unary()
            node = lambda ctx, apply=apply, left=left, right=right: apply(left(ctx), right(ctx))

    def _unary(self) -> Node:
        symbol = self._accept("-", "+")
        if symbol is None:
            return self._primary()
        operand = self._unary()
        if symbol == "-":
            return lambda ctx: -operand(ctx)
        return lambda ctx: +operand(ctx)

    def _primary(self) -> Node:
        kind, text = self._advance()

        if kind == "number":
            number = float(text) if any(c in text for c in ".eE") else int(text)
            return lambda ctx: number

        if kind == "string":
            string = _unquote(text)
            return lambda ctx: string

        if kind == "name":
            if text in _KEYWORD_LITERALS:
                literal = _KEYWORD_LITERALS[text]
                return lambda ctx: literal
            if self._accept("("):
                return self._call(text)
            return self._reference(text)

        if kind == "op" and text == "(":
            node = self._ternary()
            self._expect(")")
            return node

        raise ExpressionError(f"Unexpected token {text or 'end of expression'!r}")

    def _call(self, name: str) -> Node:
        function = FUNCTIONS.get(name)
        if function is None:
            raise ExpressionError(f"Unknown function '{name}'")

        args: list[Node] = []
        if self._accept(")") is None:
            args.append(self._ternary())
            while self._accept(","):
                args.append(self._ternary())
            self._expect(")")

        return lambda ctx: function(*(arg(ctx) for arg in args))

    def _reference(self, name: str) -> Node:
        path = [name]
        while self._accept("."):
            kind, attribute = self._advance()
            if kind != "name":
                raise ExpressionError(f"Expected attribute name after '.', found {attribute!r}")
            path.append(attribute)

        def lookup(ctx: Context) -> Any:
            if path[0] not in ctx:
                raise ExpressionError(f"Undefined variable '{path[0]}'")
            value = ctx[path[0]]
            for attribute in path[1:]:
                if not isinstance(value, Mapping) or attribute not in value:
                    raise ExpressionError(f"Undefined attribute '{attribute}' in '{'.'.join(path)}'")
                value = value[attribute]
            return value

        return lookup


class Expression:
    """
    A parsed expression, reusable across evaluations.

    Raises:
        ExpressionError: On construction if the source does not parse
    """

    def __init__(self, source: str):
        if len(source) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")
        self.source = source
        self._root = _Parser(source).parse()

    def evaluate(self, context: Context) -> Any:
        """
        Evaluate against a context.

        Raises:
            ExpressionError: Undefined variables, type errors, division by zero
        """
        try:
            return self._root(context)
        except ExpressionError:
            raise
        except (ArithmeticError, TypeError, ValueError, MemoryError, RecursionError) as e:
            raise ExpressionError(f"Error evaluating '{self.source}': {e}") from e

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    """Parse (and cache) an expression."""
    return Expression(source)


def evaluate(expression: str, context: Context, default: Any = _MISSING) -> Any:
    """
    Evaluate an expression without ever raising.

    On any parse or evaluation error the error is logged and the fallback is
    returned: ``default`` if given, otherwise ``context["value"]``.

    Args:
        expression: Expression source text
        context: Variable values (numbers, booleans, strings, nested dicts)
        default: Fallback value

    Returns:
        Expression result or fallback

    Example:
        >>> evaluate("value > 64 ? 'down' : 'up'", {"value": 70})
        'down'
    """
    try:
        return compile_expression(expression).evaluate(context)
    except ExpressionError as e:
        fallback = context.get("value") if default is _MISSING else default
        logger.warning(f"Failed to evaluate expression '{expression}': {e} (using {fallback!r})")
        return fallback
