"""
Objective-function formulas over named feature extractors.

A formula is a small expression language compiled once against a feature
set (an ordered mapping of feature name -> extractor function). Compilation
parses the text into an AST and binds every identifier to a declared
extractor, so typos surface as CompileError before any candidate is scored.
Evaluation walks the tree; no source code is generated at runtime.

Language:
    literals     1, 2.5, 1e-3, "text", 'text', true, false
    identifiers  feature names, constants PI, E, EPS (Math.PI, Math.E)
    unary        -x  +x  !b  not b
    binary       x ** y   x * y  x / y  x % y   x + y  x - y
    comparison   <  <=  >  >=  ==  !=
    logical      &&  ||  and  or
    conditional  cond ? a : b
    functions    abs min max sqrt pow exp log log10 floor ceil round sign
                 (also spelled Math.Abs, Math.Max, Math.Ceiling, ...)

Arithmetic follows IEEE double semantics: division by zero and invalid
function arguments give inf/NaN rather than raising.
"""
import logging
import math
import numbers
import re
import types
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from tolerances import get_abs_tol

logger = logging.getLogger(__name__)

Extractor = Callable[[Any], Any]
FeatureSet = Mapping[str, Extractor]


# ─── Errors ──────────────────────────────────────────────────────────────────

class FormulaError(Exception):
    """Base exception for formula errors."""
    pass


class CompileError(FormulaError):
    """The formula text is malformed or references an undeclared name."""

    def __init__(self, message: str, expression: str = "", position: Optional[int] = None):
        detail = message
        if position is not None:
            detail = f"{message} at position {position} in '{expression}'"
        elif expression:
            detail = f"{message} in '{expression}'"
        super().__init__(detail)
        self.expression = expression
        self.position = position


class EvaluationError(FormulaError):
    """A formula produced or consumed a value of the wrong type."""

    def __init__(self, message: str, candidate_index: Optional[int] = None):
        self.detail = message
        if candidate_index is not None:
            message = f"{message} (candidate {candidate_index})"
        super().__init__(message)
        self.candidate_index = candidate_index


# ─── Values ──────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class Number:
    value: float
    kind = "number"


@dataclass(frozen=True)
class Boolean:
    value: bool
    kind = "boolean"


@dataclass(frozen=True)
class Text:
    value: str
    kind = "text"


Value = Union[Number, Boolean, Text]


def box(raw: Any) -> Value:
    """Wrap a raw extractor result as a Value."""
    if isinstance(raw, (Number, Boolean, Text)):
        return raw
    if isinstance(raw, (bool, np.bool_)):
        return Boolean(bool(raw))
    if isinstance(raw, numbers.Real):
        return Number(float(raw))
    if isinstance(raw, str):
        return Text(raw)
    raise EvaluationError(f"Unsupported feature value of type {type(raw).__name__}")


# ─── Tokenizer ───────────────────────────────────────────────────────────────

_TOKEN_RE = re.compile(
    r"""
    (?P<number>(?:\d+\.\d*|\.\d+|\d+)(?:[eE][+-]?\d+)?)
    |(?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
    |(?P<name>[A-Za-z_][A-Za-z_0-9]*(?:\.[A-Za-z_][A-Za-z_0-9]*)*)
    |(?P<op>\*\*|&&|\|\||==|!=|<=|>=|[-+*/%<>!?:(),])
    """,
    re.VERBOSE,
)

_KEYWORD_OPS = {"and": "&&", "or": "||", "not": "!"}
_BOOLEAN_LITERALS = {"true": True, "True": True, "false": False, "False": False}


@dataclass(frozen=True)
class _Token:
    kind: str  # "number" | "string" | "name" | "op" | "end"
    text: str
    position: int


def _tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expression):
        if expression[pos].isspace():
            pos += 1
            continue
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise CompileError(f"Unexpected character '{expression[pos]}'", expression, pos)
        kind = match.lastgroup
        text = match.group(kind)
        if kind == "name" and text in _KEYWORD_OPS:
            kind, text = "op", _KEYWORD_OPS[text]
        tokens.append(_Token(kind, text, pos))
        pos = match.end()
    tokens.append(_Token("end", "", len(expression)))
    return tokens


# ─── Functions and constants ─────────────────────────────────────────────────

def _unary_np(fn):
    def apply(x):
        with np.errstate(all="ignore"):
            return float(fn(np.float64(x)))
    return apply


def _log(x, base=None):
    with np.errstate(all="ignore"):
        if base is None:
            return float(np.log(np.float64(x)))
        return float(np.log(np.float64(x)) / np.log(np.float64(base)))


def _round(x, digits=0):
    if not math.isfinite(digits):
        return math.nan
    return float(round(float(x), int(digits)))


def _pow(x, y):
    with np.errstate(all="ignore"):
        return float(np.power(np.float64(x), np.float64(y)))


# name -> (function, min arity, max arity or None for variadic)
_FUNCTIONS: Dict[str, Tuple[Callable[..., float], int, Optional[int]]] = {
    "abs": (_unary_np(np.abs), 1, 1),
    "min": (lambda *xs: float(np.min(xs)), 1, None),
    "max": (lambda *xs: float(np.max(xs)), 1, None),
    "sqrt": (_unary_np(np.sqrt), 1, 1),
    "pow": (_pow, 2, 2),
    "exp": (_unary_np(np.exp), 1, 1),
    "log": (_log, 1, 2),
    "log10": (_unary_np(np.log10), 1, 1),
    "floor": (_unary_np(np.floor), 1, 1),
    "ceil": (_unary_np(np.ceil), 1, 1),
    "ceiling": (_unary_np(np.ceil), 1, 1),
    "round": (_round, 1, 2),
    "sign": (_unary_np(np.sign), 1, 1),
}


def _function_key(name: str) -> str:
    if name.startswith("Math."):
        name = name[len("Math."):]
    return name.lower()


def _constants() -> Dict[str, float]:
    return {
        "PI": float(np.pi),
        "Math.PI": float(np.pi),
        "E": float(np.e),
        "Math.E": float(np.e),
        "EPS": get_abs_tol(),
    }


# ─── AST ─────────────────────────────────────────────────────────────────────

Lookup = Callable[[str], Value]


def _require(value: Value, expected: type, context: str) -> Value:
    if not isinstance(value, expected):
        raise EvaluationError(
            f"{context} expects a {expected.kind}, got {value.kind} {value.value!r}",
        )
    return value


@dataclass(frozen=True)
class _Literal:
    value: Value

    def evaluate(self, lookup: Lookup) -> Value:
        return self.value


@dataclass(frozen=True)
class _Identifier:
    name: str

    def evaluate(self, lookup: Lookup) -> Value:
        return lookup(self.name)


@dataclass(frozen=True)
class _Unary:
    op: str
    operand: Any

    def evaluate(self, lookup: Lookup) -> Value:
        value = self.operand.evaluate(lookup)
        if self.op == "!":
            return Boolean(not _require(value, Boolean, "Operator '!'").value)
        number = _require(value, Number, f"Unary '{self.op}'").value
        return Number(-number if self.op == "-" else number)


def _arithmetic(op: str, a: float, b: float) -> float:
    with np.errstate(all="ignore"):
        x, y = np.float64(a), np.float64(b)
        if op == "+":
            return float(x + y)
        if op == "-":
            return float(x - y)
        if op == "*":
            return float(x * y)
        if op == "/":
            return float(np.divide(x, y))
        if op == "%":
            return float(np.fmod(x, y))
        return float(np.power(x, y))


_COMPARISONS = {
    "<": lambda a, b: a < b,
    "<=": lambda a, b: a <= b,
    ">": lambda a, b: a > b,
    ">=": lambda a, b: a >= b,
}


@dataclass(frozen=True)
class _Binary:
    op: str
    left: Any
    right: Any

    def evaluate(self, lookup: Lookup) -> Value:
        a = self.left.evaluate(lookup)
        b = self.right.evaluate(lookup)
        context = f"Operator '{self.op}'"
        if self.op in ("==", "!="):
            if type(a) is not type(b):
                raise EvaluationError(f"{context} cannot compare {a.kind} with {b.kind}")
            equal = a.value == b.value
            return Boolean(equal if self.op == "==" else not equal)
        if self.op == "+" and isinstance(a, Text):
            return Text(a.value + _require(b, Text, context).value)
        x = _require(a, Number, context).value
        y = _require(b, Number, context).value
        if self.op in _COMPARISONS:
            return Boolean(bool(_COMPARISONS[self.op](x, y)))
        return Number(_arithmetic(self.op, x, y))


@dataclass(frozen=True)
class _Logical:
    op: str
    left: Any
    right: Any

    def evaluate(self, lookup: Lookup) -> Value:
        context = f"Operator '{self.op}'"
        a = _require(self.left.evaluate(lookup), Boolean, context).value
        if self.op == "&&" and not a:
            return Boolean(False)
        if self.op == "||" and a:
            return Boolean(True)
        return Boolean(_require(self.right.evaluate(lookup), Boolean, context).value)


@dataclass(frozen=True)
class _Conditional:
    condition: Any
    if_true: Any
    if_false: Any

    def evaluate(self, lookup: Lookup) -> Value:
        cond = _require(self.condition.evaluate(lookup), Boolean, "Conditional '?:'")
        return (self.if_true if cond.value else self.if_false).evaluate(lookup)


@dataclass(frozen=True)
class _Call:
    name: str
    function: Callable[..., float]
    args: Tuple[Any, ...]

    def evaluate(self, lookup: Lookup) -> Value:
        values = [
            _require(arg.evaluate(lookup), Number, f"Function '{self.name}'").value
            for arg in self.args
        ]
        return Number(self.function(*values))


# ─── Parser ──────────────────────────────────────────────────────────────────

class _Parser:
    """Recursive-descent parser, lowest precedence first."""

    def __init__(self, expression: str, feature_names: Sequence[str]):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.index = 0
        self.feature_names = set(feature_names)
        self.constants = _constants()
        self.identifiers: List[str] = []

    def parse(self):
        node = self._conditional()
        token = self._peek()
        if token.kind != "end":
            raise self._error(f"Unexpected '{token.text}'", token)
        return node

    def _peek(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *ops: str) -> Optional[_Token]:
        token = self._peek()
        if token.kind == "op" and token.text in ops:
            return self._advance()
        return None

    def _expect(self, op: str) -> _Token:
        token = self._accept(op)
        if token is None:
            found = self._peek()
            raise self._error(f"Expected '{op}' but found '{found.text or 'end of formula'}'", found)
        return token

    def _error(self, message: str, token: _Token) -> CompileError:
        return CompileError(message, self.expression, token.position)

    def _conditional(self):
        node = self._or()
        if self._accept("?"):
            if_true = self._conditional()
            self._expect(":")
            if_false = self._conditional()
            node = _Conditional(node, if_true, if_false)
        return node

    def _or(self):
        node = self._and()
        while self._accept("||"):
            node = _Logical("||", node, self._and())
        return node

    def _and(self):
        node = self._equality()
        while self._accept("&&"):
            node = _Logical("&&", node, self._equality())
        return node

    def _equality(self):
        node = self._comparison()
        while True:
            token = self._accept("==", "!=")
            if token is None:
                return node
            node = _Binary(token.text, node, self._comparison())

    def _comparison(self):
        node = self._additive()
        while True:
            token = self._accept("<", "<=", ">", ">=")
            if token is None:
                return node
            node = _Binary(token.text, node, self._additive())

    def _additive(self):
        node = self._multiplicative()
        while True:
            token = self._accept("+", "-")
            if token is None:
                return node
            node = _Binary(token.text, node, self._multiplicative())

    def _multiplicative(self):
        node = self._unary()
        while True:
            token = self._accept("*", "/", "%")
            if token is None:
                return node
            node = _Binary(token.text, node, self._unary())

    def _unary(self):
        token = self._accept("-", "+", "!")
        if token is not None:
            return _Unary(token.text, self._unary())
        return self._power()

    def _power(self):
        node = self._primary()
        if self._accept("**"):
            # Right associative, binds tighter than unary minus on its left
            node = _Binary("**", node, self._unary())
        return node

    def _primary(self):
        token = self._advance()
        if token.kind == "number":
            return _Literal(Number(float(token.text)))
        if token.kind == "string":
            return _Literal(Text(re.sub(r"\\(.)", r"\1", token.text[1:-1])))
        if token.kind == "name":
            if self._peek().kind == "op" and self._peek().text == "(":
                return self._call(token)
            return self._name(token)
        if token.kind == "op" and token.text == "(":
            node = self._conditional()
            self._expect(")")
            return node
        if token.kind == "end":
            raise self._error("Unexpected end of formula", token)
        raise self._error(f"Unexpected '{token.text}'", token)

    def _name(self, token: _Token):
        name = token.text
        if name in _BOOLEAN_LITERALS:
            return _Literal(Boolean(_BOOLEAN_LITERALS[name]))
        if name in self.feature_names:
            if name not in self.identifiers:
                self.identifiers.append(name)
            return _Identifier(name)
        if name in self.constants:
            return _Literal(Number(self.constants[name]))
        raise self._error(f"Unknown identifier '{name}'", token)

    def _call(self, token: _Token):
        entry = _FUNCTIONS.get(_function_key(token.text))
        if entry is None:
            raise self._error(f"Unknown function '{token.text}'", token)
        function, min_arity, max_arity = entry

        self._expect("(")
        args = []
        if not self._accept(")"):
            args.append(self._conditional())
            while self._accept(","):
                args.append(self._conditional())
            self._expect(")")

        if len(args) < min_arity or (max_arity is not None and len(args) > max_arity):
            expected = str(min_arity) if min_arity == max_arity else (
                f"{min_arity}+" if max_arity is None else f"{min_arity}-{max_arity}"
            )
            raise self._error(
                f"Function '{token.text}' takes {expected} argument(s), got {len(args)}", token,
            )
        return _Call(token.text, function, tuple(args))


# ─── Compiled formula ────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class CompiledFormula:
    """A formula bound to a feature set, validated at construction.

    Raises:
        CompileError: if the text is malformed or names an undeclared feature,
            unknown function or wrong number of arguments.
    """
    features: FeatureSet
    expression: str
    identifiers: Tuple[str, ...] = field(init=False)
    _root: Any = field(init=False, repr=False)

    def __post_init__(self):
        if not isinstance(self.expression, str) or not self.expression.strip():
            raise CompileError("Empty formula", str(self.expression or ""))
        for name in self.features:
            if not isinstance(name, str) or not name:
                raise CompileError(f"Invalid feature name {name!r}", self.expression)
        object.__setattr__(self, "features", types.MappingProxyType(dict(self.features)))

        parser = _Parser(self.expression, list(self.features))
        object.__setattr__(self, "_root", parser.parse())
        object.__setattr__(self, "identifiers", tuple(parser.identifiers))
        logger.debug(
            "Compiled formula '%s' over %d features (uses %s)",
            self.expression, len(self.features), ", ".join(self.identifiers) or "none",
        )

    def evaluate(self, candidate: Any, features: Optional[FeatureSet] = None) -> Value:
        """Evaluate against one candidate.

        ``features`` substitutes extractors (e.g. a normalized set with the
        same names); it defaults to the compiled feature set.
        """
        extractors = self.features if features is None else features
        cache: Dict[str, Value] = {}

        def lookup(name: str) -> Value:
            if name not in cache:
                cache[name] = box(extractors[name](candidate))
            return cache[name]

        return self._root.evaluate(lookup)

    def evaluate_number(self, candidate: Any, features: Optional[FeatureSet] = None) -> float:
        """Evaluate and require a numeric result."""
        value = self.evaluate(candidate, features)
        if not isinstance(value, Number):
            raise EvaluationError(
                f"Formula '{self.expression}' produced {value.kind} {value.value!r}, "
                "a number is required",
            )
        return value.value


def compile_formula(features: FeatureSet, expression: str) -> CompiledFormula:
    return CompiledFormula(features, expression)
