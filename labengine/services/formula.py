"""Closed arithmetic grammar for test-template calculations.

Formulas are parsed once into a small AST and interpreted against a mapping of
named numeric values. Nothing is ever handed to the host interpreter.

Grammar::

    expr   := term (("+" | "-") term)*
    term   := unary (("*" | "/") unary)*
    unary  := ("-" | "+") unary | power
    power  := atom ("^" unary)?
    atom   := NUMBER | NAME | NAME "(" expr ("," expr)* ")" | "(" expr ")"

Aggregate functions (AVERAGE, STDDEV, SUM, MIN, MAX, COUNT) take exactly one
name and read its values across all sample rows from ``lists``.
"""
import math
import re
from dataclasses import dataclass
from typing import Optional, Tuple

from labengine.services.errors import (
    DivisionByZero,
    EmptyAggregate,
    Malformed,
    NonFiniteResult,
    UnknownReference,
)

TOKEN_RE = re.compile(
    r"\s*(?:"
    r"(?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)"
    r"|(?P<name>[A-Za-z_][A-Za-z0-9_]*)"
    r"|(?P<op>[-+*/^(),])"
    r")"
)

AGGREGATE_FUNCTIONS = ("AVERAGE", "STDDEV", "SUM", "MIN", "MAX", "COUNT")
SCALAR_FUNCTIONS = {
    "ABS": abs,
    "SQRT": math.sqrt,
    "LOG10": math.log10,
    "LN": math.log,
}
BUILTIN_CONSTANTS = {"PI": math.pi}


@dataclass(frozen=True)
class Literal:
    value: float


@dataclass(frozen=True)
class Reference:
    name: str


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: object


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: object
    right: object


@dataclass(frozen=True)
class Call:
    function: str
    args: Tuple[object, ...]

    @property
    def is_aggregate(self):
        return self.function in AGGREGATE_FUNCTIONS


def tokenize(source):
    tokens = []
    pos = 0
    text = source.rstrip()
    while pos < len(text):
        m = TOKEN_RE.match(text, pos)
        if not m or m.end() == pos:
            raise Malformed(f"Unexpected character at position {pos}: {text[pos:pos + 10]!r}")
        kind = m.lastgroup
        tokens.append((kind, m.group(kind)))
        pos = m.end()
    return tokens


class _Parser:
    def __init__(self, tokens):
        self.tokens = tokens
        self.pos = 0

    def peek(self):
        if self.pos < len(self.tokens):
            return self.tokens[self.pos]
        return (None, None)

    def take(self):
        tok = self.peek()
        self.pos += 1
        return tok

    def expect(self, value):
        kind, text = self.take()
        if kind != "op" or text != value:
            raise Malformed(f"Expected {value!r}, found {text!r}")

    def parse(self):
        if not self.tokens:
            raise Malformed("Empty formula")
        node = self.expr()
        if self.pos != len(self.tokens):
            raise Malformed(f"Unexpected token {self.peek()[1]!r}")
        return node

    def expr(self):
        node = self.term()
        while self.peek() in (("op", "+"), ("op", "-")):
            op = self.take()[1]
            node = BinaryOp(op, node, self.term())
        return node

    def term(self):
        node = self.unary()
        while self.peek() in (("op", "*"), ("op", "/")):
            op = self.take()[1]
            node = BinaryOp(op, node, self.unary())
        return node

    def unary(self):
        if self.peek() in (("op", "-"), ("op", "+")):
            op = self.take()[1]
            return UnaryOp(op, self.unary())
        return self.power()

    def power(self):
        base = self.atom()
        if self.peek() == ("op", "^"):
            self.take()
            return BinaryOp("^", base, self.unary())
        return base

    def atom(self):
        kind, text = self.take()
        if kind == "number":
            return Literal(float(text))
        if kind == "name":
            if self.peek() == ("op", "("):
                return self.call(text)
            return Reference(text)
        if (kind, text) == ("op", "("):
            node = self.expr()
            self.expect(")")
            return node
        if kind is None:
            raise Malformed("Unexpected end of formula")
        raise Malformed(f"Unexpected token {text!r}")

    def call(self, name):
        function = name.upper()
        self.expect("(")
        args = [self.expr()]
        while self.peek() == ("op", ","):
            self.take()
            args.append(self.expr())
        self.expect(")")
        if function in AGGREGATE_FUNCTIONS:
            if len(args) != 1 or not isinstance(args[0], Reference):
                raise Malformed(f"{function} takes a single field name")
        elif function in SCALAR_FUNCTIONS:
            if len(args) != 1:
                raise Malformed(f"{function} takes one argument")
        else:
            raise Malformed(f"Unknown function: {name}")
        return Call(function, tuple(args))


class Formula:
    """A parsed formula. Immutable and safe to share between records."""

    def __init__(self, source):
        if not isinstance(source, str):
            raise Malformed("Formula must be text")
        self.source = source.strip()
        self.ast = _Parser(tokenize(self.source)).parse()
        refs = set()
        aggregate_refs = set()
        _collect(self.ast, refs, aggregate_refs)
        self.references = frozenset(refs)
        self.aggregate_refs = frozenset(aggregate_refs)

    @property
    def names(self):
        return self.references | self.aggregate_refs

    def evaluate(self, env, lists=None):
        return evaluate(self, env, lists)

    def __repr__(self):
        return f"Formula({self.source!r})"

    def __eq__(self, other):
        return isinstance(other, Formula) and other.source == self.source

    def __hash__(self):
        return hash(self.source)


def parse(source):
    if isinstance(source, Formula):
        return source
    return Formula(source)


def evaluate(formula, env, lists=None):
    """Evaluate ``formula`` against ``env`` (name -> float).

    ``lists`` maps a field key to its values across the current rows and is
    only consulted by aggregate functions.
    """
    node = parse(formula).ast
    out = _eval(node, env or {}, lists or {})
    if not math.isfinite(out):
        raise NonFiniteResult("Result is not finite")
    return out


def _collect(node, refs, aggregate_refs):
    if isinstance(node, Reference):
        if node.name not in BUILTIN_CONSTANTS:
            refs.add(node.name)
    elif isinstance(node, UnaryOp):
        _collect(node.operand, refs, aggregate_refs)
    elif isinstance(node, BinaryOp):
        _collect(node.left, refs, aggregate_refs)
        _collect(node.right, refs, aggregate_refs)
    elif isinstance(node, Call):
        if node.is_aggregate:
            aggregate_refs.add(node.args[0].name)
        else:
            for arg in node.args:
                _collect(arg, refs, aggregate_refs)


def _eval(node, env, lists):
    if isinstance(node, Literal):
        return node.value
    if isinstance(node, Reference):
        return _lookup(node.name, env)
    if isinstance(node, UnaryOp):
        val = _eval(node.operand, env, lists)
        return -val if node.op == "-" else val
    if isinstance(node, BinaryOp):
        return _binary(node.op, _eval(node.left, env, lists), _eval(node.right, env, lists))
    if isinstance(node, Call):
        if node.is_aggregate:
            return _aggregate(node.function, node.args[0].name, lists)
        return _scalar(node.function, _eval(node.args[0], env, lists))
    raise Malformed(f"Unknown node {node!r}")


def _lookup(name, env):
    val = env.get(name)
    if val is None:
        if name in BUILTIN_CONSTANTS:
            return BUILTIN_CONSTANTS[name]
        raise UnknownReference(name)
    return float(val)


def _binary(op, a, b):
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if op == "/":
        if b == 0:
            raise DivisionByZero("Division by zero")
        return a / b
    if op == "^":
        try:
            out = math.pow(a, b)
        except (OverflowError, ValueError) as exc:
            raise NonFiniteResult(f"{a} ^ {b} is not a real number") from exc
        return out
    raise Malformed(f"Unknown operator {op!r}")


def _scalar(function, val):
    try:
        return SCALAR_FUNCTIONS[function](val)
    except (OverflowError, ValueError) as exc:
        raise NonFiniteResult(f"{function}({val}) is not a real number") from exc


def _aggregate(function, name, lists):
    if name not in lists:
        raise UnknownReference(name)
    values = [float(v) for v in lists[name] if v is not None]
    if function == "COUNT":
        return float(len(values))
    if not values:
        raise EmptyAggregate(f"{function}({name}) has no values")
    if function == "AVERAGE":
        return mean(values)
    if function == "STDDEV":
        out = stddev(values)
        if out is None:
            raise EmptyAggregate(f"STDDEV({name}) needs at least two values")
        return out
    if function == "SUM":
        return math.fsum(values)
    if function == "MIN":
        return min(values)
    return max(values)


def mean(values) -> Optional[float]:
    if not values:
        return None
    return math.fsum(values) / len(values)


def stddev(values) -> Optional[float]:
    """Sample standard deviation (n - 1)."""
    if len(values) < 2:
        return None
    m = mean(values)
    return math.sqrt(math.fsum((v - m) ** 2 for v in values) / (len(values) - 1))
