"""
Query Generation - Portable Model Spec to SQL

Builds backend-agnostic scalar expression trees from portable model specs and
renders them in a relational backend's SQL dialect, so predictions can run
inside a larger query instead of pulling rows into memory.

Key Features:
- Immutable expression nodes (columns, literals, casts, CASE, sums, functions)
- Dialect rendering for DuckDB, PostgreSQL and SQLite
- Lossless float literals (shortest round-trip repr, exponent form on DuckDB)
- Prediction SELECT statements embedding the generated expression

Tree splits render as ``CASE WHEN <cond> THEN <left> ELSE <right> END``; the
condition uses the ensemble's split operator, so equality at a threshold
routes exactly as in the fitting library.
"""

import logging
import math
from dataclasses import dataclass
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)


class UnsupportedBackendError(ValueError):
    """Raised when an expression is rendered for an unknown SQL dialect."""


# ---------------------------------------------------------------------------
# Expression tree
# ---------------------------------------------------------------------------

class Expr:
    """Base class of scalar expression nodes."""

    def render(self, dialect: "Dialect") -> str:
        raise NotImplementedError


@dataclass(frozen=True)
class Column(Expr):
    name: str

    def render(self, dialect: "Dialect") -> str:
        return dialect.quote_identifier(self.name)


@dataclass(frozen=True)
class Literal(Expr):
    value: float

    def render(self, dialect: "Dialect") -> str:
        return dialect.float_literal(self.value)


@dataclass(frozen=True)
class Cast(Expr):
    """Cast to a logical precision: ``float32`` or ``float64``."""
    operand: Expr
    precision: str

    def render(self, dialect: "Dialect") -> str:
        type_name = dialect.type_name(self.precision)
        if type_name is None:
            return self.operand.render(dialect)
        return f"CAST({self.operand.render(dialect)} AS {type_name})"


@dataclass(frozen=True)
class BinaryOp(Expr):
    op: str
    left: Expr
    right: Expr

    _OPERATORS = ("+", "-", "*", "/", "<", "<=", ">", ">=", "=")

    def __post_init__(self):
        if self.op not in self._OPERATORS:
            raise ValueError(f"Unsupported operator: {self.op}")

    def render(self, dialect: "Dialect") -> str:
        return f"({self.left.render(dialect)} {self.op} {self.right.render(dialect)})"


@dataclass(frozen=True)
class Split(Expr):
    """
    Tree split ``operand op threshold`` with the operand rounded to
    ``precision`` before the comparison.

    Dialects without a 32-bit float type get the equivalent comparison on
    the unrounded value (see ``float32_split_bound``).
    """
    op: str
    operand: Expr
    threshold: float
    precision: str = "float64"

    def render(self, dialect: "Dialect") -> str:
        if self.precision != "float32":
            return BinaryOp(self.op, self.operand, Literal(self.threshold)).render(dialect)
        if dialect.type_name("float32") is None:
            op, bound = float32_split_bound(self.op, self.threshold)
            return BinaryOp(op, self.operand, Literal(bound)).render(dialect)
        return BinaryOp(self.op, Cast(self.operand, "float32"), Literal(self.threshold)).render(dialect)


_FLOAT32_MAX = float(np.finfo(np.float32).max)
# magnitudes at or above this round to infinity
_FLOAT32_OVERFLOW = _FLOAT32_MAX + 2.0 ** 103


def float32_split_bound(op: str, threshold: float) -> Tuple[str, float]:
    """
    Rewrite ``float32(x) op threshold`` as a comparison on ``x`` itself.

    Rounding to float32 is monotone, so the rows passing the split are the
    ones rounding to at most ``p``, the largest float32 that passes. Those
    are the values below the midpoint between ``p`` and the next float32,
    plus the midpoint itself when round-half-to-even takes it down to ``p``.

    Args:
        op: ``"<"`` or ``"<="``
        threshold: Split threshold (any double)

    Returns:
        ``(op, bound)`` such that ``x op bound`` holds exactly when the split does
    """
    if op not in ("<", "<="):
        raise ValueError(f"Unsupported split operator: {op}")

    if threshold > _FLOAT32_MAX:
        nearest = np.float32(np.inf)
    elif threshold < -_FLOAT32_MAX:
        nearest = np.float32(-np.inf)
    else:
        nearest = np.float32(threshold)

    passes = float(nearest) < threshold if op == "<" else float(nearest) <= threshold
    largest = nearest if passes else np.nextafter(nearest, np.float32(-np.inf))

    if np.isneginf(largest):
        return "<=", -_FLOAT32_OVERFLOW
    if float(largest) == _FLOAT32_MAX:
        return "<", _FLOAT32_OVERFLOW

    above = np.nextafter(largest, np.float32(np.inf))
    midpoint = (float(largest) + float(above)) / 2.0
    even = np.asarray(largest, dtype=np.float32).view(np.uint32).item() % 2 == 0
    return ("<=" if even else "<"), midpoint


@dataclass(frozen=True)
class IsNull(Expr):
    operand: Expr

    def render(self, dialect: "Dialect") -> str:
        return f"({self.operand.render(dialect)} IS NULL)"


@dataclass(frozen=True)
class Or(Expr):
    left: Expr
    right: Expr

    def render(self, dialect: "Dialect") -> str:
        return f"({self.left.render(dialect)} OR {self.right.render(dialect)})"


@dataclass(frozen=True)
class Case(Expr):
    condition: Expr
    then: Expr
    otherwise: Expr

    def render(self, dialect: "Dialect") -> str:
        return (
            f"CASE WHEN {self.condition.render(dialect)} "
            f"THEN {self.then.render(dialect)} "
            f"ELSE {self.otherwise.render(dialect)} END"
        )


@dataclass(frozen=True)
class Sum(Expr):
    """Flat left-to-right sum; avoids deeply nested parentheses for large ensembles."""
    terms: Tuple[Expr, ...]

    def render(self, dialect: "Dialect") -> str:
        if not self.terms:
            return dialect.float_literal(0.0)
        return "(" + " + ".join(term.render(dialect) for term in self.terms) + ")"


@dataclass(frozen=True)
class Func(Expr):
    name: str
    args: Tuple[Expr, ...]

    def render(self, dialect: "Dialect") -> str:
        return f"{dialect.function_name(self.name)}({', '.join(a.render(dialect) for a in self.args)})"


def apply_link(margin: Expr, link: str) -> Expr:
    """Wrap a margin expression in the inverse link function."""
    if link == "identity":
        return margin
    if link == "logistic":
        one = Literal(1.0)
        return BinaryOp("/", one, BinaryOp("+", one, Func("exp", (BinaryOp("-", Literal(0.0), margin),))))
    if link == "exp":
        return Func("exp", (margin,))
    raise ValueError(f"Unsupported link function: {link}")


# ---------------------------------------------------------------------------
# Dialects
# ---------------------------------------------------------------------------

class Dialect:
    """SQL rendering rules of one backend."""

    name = "ansi"
    # logical precision -> SQL type; None renders the operand unchanged
    type_names: Dict[str, Optional[str]] = {"float32": "REAL", "float64": "DOUBLE PRECISION"}
    double_literals = True
    # exponent form parses straight to a double instead of a decimal
    exponent_literals = False

    def quote_identifier(self, name: str) -> str:
        return '"' + name.replace('"', '""') + '"'

    def float_literal(self, value: float) -> str:
        value = float(value)
        if not math.isfinite(value):
            raise ValueError(f"Cannot render non-finite literal: {value}")
        text = repr(value)
        if self.exponent_literals and "e" not in text:
            text += "e0"
        if self.double_literals:
            return f"CAST({text} AS {self.type_names['float64']})"
        return f"({text})" if value < 0 else text

    def type_name(self, precision: str) -> Optional[str]:
        if precision not in self.type_names:
            raise ValueError(f"Unknown precision: {precision}")
        return self.type_names[precision]

    def function_name(self, name: str) -> str:
        return name.upper()


class DuckDBDialect(Dialect):
    name = "duckdb"
    type_names = {"float32": "FLOAT", "float64": "DOUBLE"}
    exponent_literals = True


class PostgresDialect(Dialect):
    name = "postgres"
    type_names = {"float32": "REAL", "float64": "DOUBLE PRECISION"}


class SQLiteDialect(Dialect):
    """SQLite has no 32-bit float type; float32 splits compare against rewritten bounds."""
    name = "sqlite"
    type_names = {"float32": None, "float64": None}
    double_literals = False


_DIALECTS: Dict[str, Dialect] = {
    "duckdb": DuckDBDialect(),
    "postgres": PostgresDialect(),
    "postgresql": PostgresDialect(),
    "sqlite": SQLiteDialect(),
}


def get_dialect(dialect: Any) -> Dialect:
    """Resolve a dialect name (or instance) to a Dialect."""
    if isinstance(dialect, Dialect):
        return dialect
    key = str(dialect).lower()
    if key not in _DIALECTS:
        raise UnsupportedBackendError(
            f"Unsupported backend dialect: {dialect!r} "
            f"(supported: {', '.join(sorted(set(_DIALECTS) - {'postgresql'}))})"
        )
    return _DIALECTS[key]


def supported_dialects() -> Sequence[str]:
    return ("duckdb", "postgres", "sqlite")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def generate_query_expression(spec, dialect: Any = "duckdb") -> str:
    """
    Generate the SQL prediction expression of a portable model spec.

    Args:
        spec: Portable model spec (anything exposing ``to_expression()``)
        dialect: Target backend dialect name

    Returns:
        Scalar SQL expression text embeddable in a SELECT list
    """
    resolved = get_dialect(dialect)
    sql = spec.to_expression().render(resolved)

    logger.debug("query_expression.generated", extra={
        "dialect": resolved.name,
        "kind": spec.kind,
        "expression_length": len(sql)
    })

    return sql


def build_prediction_query(spec,
                           table: str,
                           dialect: Any = "duckdb",
                           columns: Optional[Sequence[str]] = None,
                           alias: str = "prediction",
                           where: Optional[str] = None) -> str:
    """
    Build a SELECT statement that scores every row of ``table`` in the database.

    Args:
        spec: Portable model spec
        table: Table (or view) name holding the feature columns
        dialect: Target backend dialect name
        columns: Columns to carry through (all columns when None)
        alias: Name of the prediction column
        where: Optional raw SQL filter

    Returns:
        SQL text
    """
    resolved = get_dialect(dialect)
    expression = generate_query_expression(spec, resolved)

    if columns is None:
        select_list = "*"
    else:
        select_list = ", ".join(resolved.quote_identifier(c) for c in columns) or "*"

    sql = (
        f"SELECT {select_list}, {expression} AS {resolved.quote_identifier(alias)} "
        f"FROM {resolved.quote_identifier(table)}"
    )
    if where:
        sql += f" WHERE {where}"

    return sql
