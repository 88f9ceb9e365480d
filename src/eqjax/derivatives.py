"""Symbolic differentiation plus gradient, Jacobian and Hessian builders."""

from __future__ import annotations

import logging
from collections.abc import Iterator, Sequence
from dataclasses import dataclass, field

from .errors import EqShapeError, UnsupportedOperatorError
from .expressions import (
    ADD,
    DIFFERENTIAL,
    DIV,
    IDENTITY,
    MUL,
    SUB,
    Constant,
    Expression,
    Operation,
    Variable,
    get_variables,
    iter_postorder,
)
from .operators import lookup_operator
from .simplify import simplify_constants

logger = logging.getLogger(__name__)

DenseMatrix = tuple[tuple[Expression, ...], ...]


@dataclass(frozen=True)
class SparseMatrix:
    """Structurally sparse matrix of expressions; missing entries are exact zeros."""

    shape: tuple[int, int]
    entries: tuple[tuple[tuple[int, int], Expression], ...]
    _index: dict = field(init=False, compare=False, repr=False, hash=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "entries", tuple((tuple(key), expr) for key, expr in self.entries))
        rows, cols = self.shape
        index: dict[tuple[int, int], Expression] = {}
        for (i, j), expr in self.entries:
            if not (0 <= i < rows and 0 <= j < cols):
                raise EqShapeError(f"Sparse entry {(i, j)} is outside shape {self.shape}")
            if (i, j) in index:
                raise EqShapeError(f"Duplicate sparse entry {(i, j)}")
            index[(i, j)] = expr
        object.__setattr__(self, "_index", index)

    def __getitem__(self, key: tuple[int, int]) -> Expression:
        return self._index.get(key, Constant(0))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self) -> Iterator[tuple[tuple[int, int], Expression]]:
        return iter(self.entries)

    @property
    def pattern(self) -> tuple[tuple[int, int], ...]:
        return tuple(key for key, _ in self.entries)

    def to_dense(self) -> DenseMatrix:
        rows, cols = self.shape
        return tuple(tuple(self[(i, j)] for j in range(cols)) for i in range(rows))


def _check_variable(var: object) -> Variable:
    if not isinstance(var, Variable):
        raise TypeError(f"Can only differentiate with respect to a Variable, got {type(var).__name__}")
    return var


def differentiate(expr: Expression, var: Variable) -> Expression:
    """Raw derivative of `expr` with respect to `var` (chain rule over the operator table).

    Nodes are visited children first; a node none of whose arguments depend
    on `var` has no derivative entry and counts as zero without consulting
    the operator table.
    """
    _check_variable(var)
    deriv: dict[int, Expression | None] = {}
    for node in iter_postorder(expr):
        if not isinstance(node, Operation):
            deriv[id(node)] = Constant(1) if node == var else None
            continue
        dargs = [deriv[id(arg)] for arg in node.args]
        if all(darg is None for darg in dargs):
            deriv[id(node)] = None
            continue
        spec = lookup_operator(node.op, stage="differentiation")
        if spec.partial is None or not spec.accepts(len(node.args)):
            raise UnsupportedOperatorError(op=node.op, stage="differentiation", arity=len(node.args))
        terms = [
            Operation(MUL, (spec.partial(node.args, i), darg))
            for i, darg in enumerate(dargs)
            if darg is not None
        ]
        deriv[id(node)] = terms[0] if len(terms) == 1 else Operation(ADD, tuple(terms))
    out = deriv[id(expr)]
    return Constant(0) if out is None else out


def expand_derivatives(expr: Expression, simplify: bool = True) -> Expression:
    """Replace every `differential(f, iv)` node by the derivative of `f`."""
    out = _expand(expr)
    return simplify_constants(out) if simplify else out


def _expand(expr: Expression) -> Expression:
    done: dict[int, Expression] = {}
    for node in iter_postorder(expr):
        if not isinstance(node, Operation):
            done[id(node)] = node
            continue
        args = tuple(done[id(arg)] for arg in node.args)
        if node.op == DIFFERENTIAL:
            inner, iv = args
            done[id(node)] = differentiate(inner, iv)
        elif any(new is not old for new, old in zip(args, node.args)):
            done[id(node)] = Operation(node.op, args)
        else:
            done[id(node)] = node
    return done[id(expr)]


def derivative(expr: Expression, var: Variable, simplify: bool = True) -> Expression:
    out = differentiate(expr, var)
    return simplify_constants(out) if simplify else out


def gradient(expr: Expression, dvs: Sequence[Variable], simplify: bool = True) -> tuple[Expression, ...]:
    return tuple(derivative(expr, var, simplify) for var in dvs)


def jacobian(exprs: Sequence[Expression], dvs: Sequence[Variable], simplify: bool = True) -> DenseMatrix:
    exprs = tuple(exprs)
    dvs = tuple(dvs)
    logger.debug("dense jacobian %dx%d (simplify=%s)", len(exprs), len(dvs), simplify)
    return tuple(tuple(derivative(expr, var, simplify) for var in dvs) for expr in exprs)


def jacobian_sparsity(exprs: Sequence[Expression], dvs: Sequence[Variable]) -> tuple[tuple[int, int], ...]:
    """`(i, j)` pairs where expression `i` structurally depends on variable `j`."""
    dvs = tuple(dvs)
    pattern: list[tuple[int, int]] = []
    for i, expr in enumerate(exprs):
        present = set(get_variables(expr))
        pattern.extend((i, j) for j, var in enumerate(dvs) if var in present)
    return tuple(pattern)


def sparsejacobian(exprs: Sequence[Expression], dvs: Sequence[Variable], simplify: bool = True) -> SparseMatrix:
    exprs = tuple(exprs)
    dvs = tuple(dvs)
    pattern = jacobian_sparsity(exprs, dvs)
    logger.debug("sparse jacobian %dx%d with %d structural nonzeros", len(exprs), len(dvs), len(pattern))
    entries = tuple(((i, j), derivative(exprs[i], dvs[j], simplify)) for i, j in pattern)
    return SparseMatrix(shape=(len(exprs), len(dvs)), entries=entries)


def hessian(expr: Expression, dvs: Sequence[Variable], simplify: bool = True) -> DenseMatrix:
    dvs = tuple(dvs)
    first = gradient(expr, dvs, simplify)
    return tuple(tuple(derivative(di, var, simplify) for var in dvs) for di in first)


def sparsehessian(expr: Expression, dvs: Sequence[Variable], simplify: bool = True) -> SparseMatrix:
    dvs = tuple(dvs)
    pattern = hessian_sparsity(expr, dvs)
    first: dict[int, Expression] = {}
    entries = []
    for i, j in pattern:
        if i not in first:
            first[i] = derivative(expr, dvs[i], simplify)
        entries.append(((i, j), derivative(first[i], dvs[j], simplify)))
    return SparseMatrix(shape=(len(dvs), len(dvs)), entries=tuple(entries))


_Pattern = tuple[frozenset, frozenset]


def _couple(left: frozenset, right: frozenset) -> set:
    pairs = set()
    for a in left:
        for b in right:
            pairs.add((a, b))
            pairs.add((b, a))
    return pairs


def _hessian_pattern(expr: Expression) -> _Pattern:
    """Return (variables, coupled variable pairs) for the second derivatives of `expr`."""
    found_at: dict[int, _Pattern] = {}
    for node in iter_postorder(expr):
        if isinstance(node, Variable):
            found_at[id(node)] = (frozenset((node,)), frozenset())
            continue
        if not isinstance(node, Operation):
            found_at[id(node)] = (frozenset(), frozenset())
            continue
        parts = [found_at[id(arg)] for arg in node.args]
        found = frozenset().union(*(p[0] for p in parts))
        pairs = set().union(*(p[1] for p in parts))
        if node.op in (ADD, IDENTITY, SUB):
            pass
        elif node.op == MUL:
            for i in range(len(parts)):
                for j in range(i + 1, len(parts)):
                    pairs |= _couple(parts[i][0], parts[j][0])
        elif node.op == DIV and not parts[1][0]:
            pass
        else:
            pairs |= _couple(found, found)
        found_at[id(node)] = (found, frozenset(pairs))
    return found_at[id(expr)]


def hessian_sparsity(expr: Expression, dvs: Sequence[Variable]) -> tuple[tuple[int, int], ...]:
    """Structural `(i, j)` pattern of the Hessian of `expr` over `dvs`."""
    dvs = tuple(dvs)
    _, pairs = _hessian_pattern(expr)
    return tuple(
        (i, j) for i, vi in enumerate(dvs) for j, vj in enumerate(dvs) if (vi, vj) in pairs
    )
