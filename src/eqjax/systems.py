"""Thin system containers that drive the derivative builders and codegen."""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass

import jax.numpy as jnp

from .codegen import build_function
from .derivatives import (
    DenseMatrix,
    gradient,
    hessian,
    hessian_sparsity,
    jacobian,
    jacobian_sparsity,
    sparsehessian,
    sparsejacobian,
)
from .errors import ValidationError
from .expressions import (
    DIFFERENTIAL,
    Constant,
    Equation,
    Expression,
    Inequality,
    Operation,
    Variable,
    canonical_form,
    get_variables,
    is_one,
    is_zero,
    subs_constants,
    substitute,
    wrap,
)
from .simplify import simplify_constants

logger = logging.getLogger(__name__)

Reorder = Callable[[Sequence[Variable]], Sequence[Sequence[Variable]]]


class SystemCounter:
    """Process-wide source of unique system tags. Never decreases except via `reset()`."""

    def __init__(self, start: int = 0) -> None:
        self._lock = threading.Lock()
        self._next = start

    def next_tag(self) -> int:
        with self._lock:
            tag = self._next
            self._next += 1
            return tag

    def reset(self, start: int = 0) -> None:
        with self._lock:
            self._next = start


DEFAULT_SYSTEM_COUNTER = SystemCounter()


class JacobianCache:
    """Single memo slot holding the last Jacobian and the `(sparse, simplify)` it was built with.

    The slot is not invalidated when a system's equations change; systems keep
    their lists as tuples so that cannot happen through this package.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._slot: tuple[object, tuple[bool, bool]] | None = None

    def get(self, key: tuple[bool, bool]):
        with self._lock:
            if self._slot is not None and self._slot[1] == key:
                return self._slot[0]
            return None

    def get_or_compute(self, key: tuple[bool, bool], compute: Callable[[], object]):
        cached = self.get(key)
        if cached is not None:
            logger.debug("jacobian cache hit for (sparse, simplify)=%s", key)
            return cached
        logger.debug("jacobian cache miss for (sparse, simplify)=%s", key)
        value = compute()
        with self._lock:
            self._slot = (value, key)
        return value

    @property
    def key(self) -> tuple[bool, bool] | None:
        with self._lock:
            return None if self._slot is None else self._slot[1]

    def clear(self) -> None:
        with self._lock:
            self._slot = None


def _as_variables(values: Iterable[object], what: str) -> tuple[Variable, ...]:
    out = tuple(values)
    for value in out:
        if not isinstance(value, Variable):
            raise ValidationError(f"{what} must be variables, got {value!r}")
    return out


def _check_observed(observed: Iterable[Equation]) -> tuple[Equation, ...]:
    out = tuple(observed)
    for eq in out:
        if not isinstance(eq, Equation) or not isinstance(eq.lhs, Variable):
            raise ValidationError(f"Observed equations must have a variable on the left, got {eq!r}")
    return out


def _expand_observed(exprs: Sequence[Expression], observed: Sequence[Equation]) -> tuple[Expression, ...]:
    """Substitute observed variables until none remain (observed equations must be acyclic)."""
    if not observed:
        return tuple(exprs)
    mapping = {eq.lhs: eq.rhs for eq in observed}
    out = tuple(exprs)
    for _ in range(len(mapping) + 1):
        expanded = tuple(substitute(expr, mapping) for expr in out)
        if expanded == out:
            return out
        out = expanded
    raise ValidationError("Observed equations are cyclic")


def _default_reorder(ps: Sequence[Variable]) -> tuple[tuple[Variable, ...], ...]:
    return (tuple(ps),)


class _SystemBase:
    def __init__(
        self,
        *,
        name: str | None,
        unknowns: Iterable[Variable],
        ps: Iterable[Variable],
        observed: Iterable[Equation] = (),
        defaults: Mapping[Variable, object] | None = None,
        systems: Iterable["_SystemBase"] = (),
        counter: SystemCounter | None = None,
    ) -> None:
        if name is None:
            raise ValidationError(f"{type(self).__name__} requires a name")
        self.name = name
        self._unknowns = _as_variables(unknowns, "Unknowns")
        self._ps = _as_variables(ps, "Parameters")
        self._observed = _check_observed(observed)
        self.defaults: dict[Variable, object] = dict(defaults or {})
        self.systems = tuple(systems)
        names = [sys.name for sys in self.systems]
        if len(set(names)) != len(names):
            raise ValidationError("System names must be unique.")
        self.jac_cache = JacobianCache()
        self.tag = (counter or DEFAULT_SYSTEM_COUNTER).next_tag()

    def unknowns(self) -> tuple[Variable, ...]:
        return self._unknowns

    def states(self) -> tuple[Variable, ...]:
        return self._unknowns

    def parameters(self) -> tuple[Variable, ...]:
        return self._ps

    def observed(self) -> tuple[Equation, ...]:
        return self._observed

    def reorder_parameters(self, ps: Sequence[Variable] | None = None, reorder: Reorder | None = None):
        ps = self._ps if ps is None else tuple(ps)
        return tuple(tuple(group) for group in (reorder or _default_reorder)(ps))

    def _prepare(self, exprs: Sequence[Expression]) -> tuple[Expression, ...]:
        return subs_constants(_expand_observed(exprs, self._observed), self.defaults)

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, tag={self.tag})"


class ConstraintsSystem(_SystemBase):
    """Equality and inequality constraints over a set of unknowns.

    Residuals are taken in canonical form: `h(x) = 0` for equations and
    `g(x) <= 0` (or `< 0`) for inequalities.
    """

    def __init__(
        self,
        constraints: Iterable[Equation | Inequality],
        unknowns: Iterable[Variable],
        ps: Iterable[Variable],
        *,
        name: str | None = None,
        observed: Iterable[Equation] = (),
        defaults: Mapping[Variable, object] | None = None,
        systems: Iterable["ConstraintsSystem"] = (),
        continuous_events=None,
        discrete_events=None,
        counter: SystemCounter | None = None,
    ) -> None:
        if continuous_events:
            raise ValidationError(f"ConstraintsSystem does not accept `continuous_events`, you provided {continuous_events}")
        if discrete_events:
            raise ValidationError(f"ConstraintsSystem does not accept `discrete_events`, you provided {discrete_events}")
        cstr = tuple(constraints)
        for item in cstr:
            if not isinstance(item, (Equation, Inequality)):
                raise ValidationError(f"Constraints must be equations or inequalities, got {item!r}")
        super().__init__(
            name=name,
            unknowns=unknowns,
            ps=ps,
            observed=observed,
            defaults=defaults,
            systems=systems,
            counter=counter,
        )
        self._constraints = tuple(canonical_form(item) for item in cstr)

    def constraints(self) -> tuple[Equation | Inequality, ...]:
        return self._constraints

    def equations(self) -> tuple[Equation | Inequality, ...]:
        return self._constraints

    def canonical_residuals(self) -> tuple[Expression, ...]:
        return self._prepare([item.lhs for item in self._constraints])

    def calculate_jacobian(self, *, sparse: bool = False, simplify: bool = False):
        def compute():
            lhss = self.canonical_residuals()
            if sparse:
                return sparsejacobian(lhss, self._unknowns, simplify=simplify)
            return jacobian(lhss, self._unknowns, simplify=simplify)

        return self.jac_cache.get_or_compute((bool(sparse), bool(simplify)), compute)

    def generate_jacobian(
        self,
        vs: Sequence[Variable] | None = None,
        ps: Sequence[Variable] | None = None,
        *,
        sparse: bool = False,
        simplify: bool = False,
        reorder: Reorder | None = None,
        **kwargs,
    ):
        jac = self.calculate_jacobian(sparse=sparse, simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(jac, vs, *self.reorder_parameters(ps, reorder), defaults=self.defaults, **kwargs)

    def calculate_hessian(self, *, sparse: bool = False, simplify: bool = False):
        lhss = self.canonical_residuals()
        if sparse:
            return tuple(sparsehessian(lhs, self._unknowns, simplify=simplify) for lhs in lhss)
        return tuple(hessian(lhs, self._unknowns, simplify=simplify) for lhs in lhss)

    def generate_hessian(
        self,
        vs: Sequence[Variable] | None = None,
        ps: Sequence[Variable] | None = None,
        *,
        sparse: bool = False,
        simplify: bool = False,
        reorder: Reorder | None = None,
        **kwargs,
    ):
        """One generated function per constraint residual."""
        hess = self.calculate_hessian(sparse=sparse, simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        groups = self.reorder_parameters(ps, reorder)
        return tuple(build_function(h, vs, *groups, defaults=self.defaults, **kwargs) for h in hess)

    def bounds(self):
        """`(lcons, ucons)`: `[0, 0]` for equations, `[-inf, 0]` for inequalities."""
        lcons = [0.0 if isinstance(item, Equation) else -jnp.inf for item in self._constraints]
        ucons = [0.0] * len(self._constraints)
        return jnp.asarray(lcons, dtype=float), jnp.asarray(ucons, dtype=float)

    def generate_function(
        self,
        vs: Sequence[Variable] | None = None,
        ps: Sequence[Variable] | None = None,
        *,
        reorder: Reorder | None = None,
        **kwargs,
    ):
        vs = self._unknowns if vs is None else tuple(vs)
        func = build_function(
            list(self.canonical_residuals()),
            vs,
            *self.reorder_parameters(ps, reorder),
            defaults=self.defaults,
            **kwargs,
        )
        lcons, ucons = self.bounds()
        return func, lcons, ucons

    def jacobian_sparsity(self) -> tuple[tuple[int, int], ...]:
        return jacobian_sparsity(self.canonical_residuals(), self._unknowns)

    def hessian_sparsity(self) -> tuple[tuple[tuple[int, int], ...], ...]:
        return tuple(hessian_sparsity(lhs, self._unknowns) for lhs in self.canonical_residuals())


class OptimizationSystem(_SystemBase):
    """Scalar objective over a set of states, with optional constraints."""

    def __init__(
        self,
        objective,
        states: Iterable[Variable],
        ps: Iterable[Variable],
        *,
        name: str | None = None,
        observed: Iterable[Equation] = (),
        equality_constraints: Iterable[Equation] = (),
        inequality_constraints: Iterable[Inequality] = (),
        defaults: Mapping[Variable, object] | None = None,
        systems: Iterable["OptimizationSystem"] = (),
        counter: SystemCounter | None = None,
    ) -> None:
        super().__init__(
            name=name,
            unknowns=states,
            ps=ps,
            observed=observed,
            defaults=defaults,
            systems=systems,
            counter=counter,
        )
        self.objective = wrap(objective)
        self.equality_constraints = tuple(equality_constraints)
        self.inequality_constraints = tuple(inequality_constraints)

    def equations(self) -> Expression:
        return self._prepare([self.objective])[0]

    def calculate_gradient(self, *, simplify: bool = True) -> tuple[Expression, ...]:
        return gradient(self.equations(), self._unknowns, simplify=simplify)

    def generate_gradient(self, vs=None, ps=None, *, simplify: bool = True, reorder: Reorder | None = None, **kwargs):
        grad = self.calculate_gradient(simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(list(grad), vs, *self.reorder_parameters(ps, reorder), defaults=self.defaults, **kwargs)

    def calculate_hessian(self, *, sparse: bool = False, simplify: bool = True):
        if sparse:
            return sparsehessian(self.equations(), self._unknowns, simplify=simplify)
        return hessian(self.equations(), self._unknowns, simplify=simplify)

    def generate_hessian(
        self, vs=None, ps=None, *, sparse: bool = False, simplify: bool = True, reorder: Reorder | None = None, **kwargs
    ):
        hess = self.calculate_hessian(sparse=sparse, simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(hess, vs, *self.reorder_parameters(ps, reorder), defaults=self.defaults, **kwargs)

    def generate_function(self, vs=None, ps=None, *, reorder: Reorder | None = None, **kwargs):
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(self.equations(), vs, *self.reorder_parameters(ps, reorder), defaults=self.defaults, **kwargs)

    def hessian_sparsity(self) -> tuple[tuple[int, int], ...]:
        return hessian_sparsity(self.equations(), self._unknowns)

    def constraints_system(self, *, counter: SystemCounter | None = None) -> ConstraintsSystem:
        """The equality and inequality constraints as a `ConstraintsSystem` over the same states."""
        return ConstraintsSystem(
            self.equality_constraints + self.inequality_constraints,
            self._unknowns,
            self._ps,
            name=f"{self.name}_constraints",
            observed=self._observed,
            defaults=self.defaults,
            counter=counter,
        )


@dataclass(frozen=True)
class _StateEquation:
    state: Variable
    rhs: Expression


class ODESystem(_SystemBase):
    """First-order ODEs `D(x) = f(x, p, t)`, one per state."""

    def __init__(
        self,
        eqs: Iterable[Equation],
        iv: Variable,
        states: Iterable[Variable] | None = None,
        ps: Iterable[Variable] | None = None,
        *,
        name: str | None = None,
        observed: Iterable[Equation] = (),
        defaults: Mapping[Variable, object] | None = None,
        counter: SystemCounter | None = None,
    ) -> None:
        if not isinstance(iv, Variable):
            raise ValidationError(f"Independent variable must be a Variable, got {iv!r}")
        eqs = tuple(eqs)
        observed = tuple(observed)
        parsed = []
        for eq in eqs:
            lhs = eq.lhs if isinstance(eq, Equation) else None
            if not (
                isinstance(lhs, Operation)
                and lhs.op == DIFFERENTIAL
                and isinstance(lhs.args[0], Variable)
                and lhs.args[1] == iv
            ):
                raise ValidationError(f"No intermediate equations permitted in ODESystem: {eq!r}")
            parsed.append(_StateEquation(state=lhs.args[0], rhs=eq.rhs))

        derived_states = tuple(item.state for item in parsed)
        if len(set(derived_states)) != len(derived_states):
            raise ValidationError("Each state may have only one differential equation")
        if states is None:
            states = derived_states
        states = _as_variables(states, "States")
        if len(states) != len(parsed):
            raise ValidationError(f"{len(parsed)} equations for {len(states)} states")
        if set(states) != set(derived_states):
            raise ValidationError("States must match the differentiated variables")
        if ps is None:
            excluded = set(states) | {iv} | {eq.lhs for eq in observed}
            ps = tuple(v for v in get_variables([item.rhs for item in parsed]) if v not in excluded and v.kind != "constant")

        super().__init__(
            name=name,
            unknowns=states,
            ps=ps,
            observed=observed,
            defaults=defaults,
            counter=counter,
        )
        self.iv = iv
        self._eqs = eqs
        self.gam = Variable("gam", kind="parameter")
        order = {item.state: item.rhs for item in parsed}
        self._rhs = tuple(order[state] for state in self._unknowns)

    def equations(self) -> tuple[Equation, ...]:
        return self._eqs

    def rhss(self) -> tuple[Expression, ...]:
        """Right-hand sides ordered like `states()`."""
        return self._prepare(self._rhs)

    def generate_function(self, vs=None, ps=None, *, reorder: Reorder | None = None, **kwargs):
        """`f(u, p, t)` returning the derivative vector, or `f(du, u, p, t)` with `inplace=True`."""
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(
            list(self.rhss()), vs, *self.reorder_parameters(ps, reorder), iv=self.iv, defaults=self.defaults, **kwargs
        )

    def calculate_jacobian(self, *, sparse: bool = False, simplify: bool = True):
        def compute():
            rhs = self.rhss()
            if sparse:
                return sparsejacobian(rhs, self._unknowns, simplify=simplify)
            return jacobian(rhs, self._unknowns, simplify=simplify)

        return self.jac_cache.get_or_compute((bool(sparse), bool(simplify)), compute)

    def generate_jacobian(
        self, vs=None, ps=None, *, sparse: bool = False, simplify: bool = True, reorder: Reorder | None = None, **kwargs
    ):
        jac = self.calculate_jacobian(sparse=sparse, simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        return build_function(jac, vs, *self.reorder_parameters(ps, reorder), iv=self.iv, defaults=self.defaults, **kwargs)

    def jacobian_sparsity(self) -> tuple[tuple[int, int], ...]:
        return jacobian_sparsity(self.rhss(), self._unknowns)

    def calculate_iw(self, *, simplify: bool = True) -> tuple[DenseMatrix, DenseMatrix]:
        """Symbolic `inv(I - gam*J)` and `inv(I/gam - J)` for implicit steppers.

        `J` is the dense state Jacobian (shared with `calculate_jacobian`) and
        `gam` is the scalar `self.gam`. Raises `ValidationError` when a matrix
        is structurally singular.
        """
        jac = self.calculate_jacobian(sparse=False, simplify=simplify)
        gam = self.gam
        size = len(self._unknowns)
        w = tuple(
            tuple(_combine(Constant(1), Constant(int(i == j)), gam, jac[i][j]) for j in range(size))
            for i in range(size)
        )
        inv_gam = Constant(1) / gam
        w_t = tuple(
            tuple(
                _combine(Constant(1), inv_gam if i == j else Constant(0), Constant(1), jac[i][j])
                for j in range(size)
            )
            for i in range(size)
        )
        logger.debug("inverting %dx%d W matrices for %s", size, size, self.name)
        return _symbolic_inverse(w, simplify=simplify), _symbolic_inverse(w_t, simplify=simplify)

    def generate_iw(self, vs=None, ps=None, *, simplify: bool = True, reorder: Reorder | None = None, **kwargs):
        """Two functions `f(u, p, gam, t)` for `calculate_iw()`, or `f(out, u, p, gam, t)` with `inplace=True`."""
        iw, iw_t = self.calculate_iw(simplify=simplify)
        vs = self._unknowns if vs is None else tuple(vs)
        groups = self.reorder_parameters(ps, reorder)
        return tuple(
            build_function(
                list(matrix), vs, *groups, iv=self.iv, scalars=(self.gam,), defaults=self.defaults, **kwargs
            )
            for matrix in (iw, iw_t)
        )


def _scaled(coeff: Expression, expr: Expression) -> Expression:
    if is_zero(coeff) or is_zero(expr):
        return Constant(0)
    if is_one(coeff):
        return expr
    if is_one(expr):
        return coeff
    return coeff * expr


def _combine(p: Expression, x: Expression, a: Expression, y: Expression) -> Expression:
    """`p*x - a*y` without building products or differences of literal zeros."""
    left = _scaled(p, x)
    right = _scaled(a, y)
    if is_zero(right):
        return left
    if is_zero(left):
        return -right
    return left - right


def _symbolic_inverse(matrix: DenseMatrix, *, simplify: bool = True) -> DenseMatrix:
    """Fraction-free Gauss-Jordan elimination on `[matrix | I]`.

    Each elimination step replaces row `i` by `p*row_i - a_ik*row_k` with `p`
    the pivot, so no division appears until the last step divides every row
    by its diagonal entry. Pivots are the first structurally nonzero entry in
    their column.
    """
    size = len(matrix)
    tidy = simplify_constants if simplify else (lambda expr: expr)
    rows = [
        [tidy(wrap(entry)) for entry in row] + [Constant(int(i == j)) for j in range(size)]
        for i, row in enumerate(matrix)
    ]
    for k in range(size):
        pivot_row = next((r for r in range(k, size) if not is_zero(rows[r][k])), None)
        if pivot_row is None:
            raise ValidationError(f"Matrix is structurally singular in column {k}")
        rows[k], rows[pivot_row] = rows[pivot_row], rows[k]
        pivot = rows[k][k]
        for i in range(size):
            factor = rows[i][k]
            if i == k or is_zero(factor):
                continue
            rows[i] = [
                Constant(0) if j == k else tidy(_combine(pivot, rows[i][j], factor, rows[k][j]))
                for j in range(2 * size)
            ]
    inverse = []
    for i in range(size):
        diagonal = rows[i][i]
        inverse.append(
            tuple(
                entry if is_one(diagonal) or is_zero(entry) else tidy(entry / diagonal)
                for entry in rows[i][size:]
            )
        )
    return tuple(inverse)
