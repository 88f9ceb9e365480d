"""Expression tree model: constants, variables, operations and relations."""

from __future__ import annotations

import numbers
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from .errors import ValidationError

ADD = "+"
MUL = "*"
SUB = "-"
DIV = "/"
POW = "^"
IDENTITY = "identity"
DIFFERENTIAL = "differential"

AC_OPERATORS = (ADD, MUL)

VARIABLE_KINDS = ("variable", "parameter", "constant")
RELATIONS = ("<=", "<", ">=", ">")

_INFIX_RENDER = {ADD: " + ", MUL: " * ", SUB: " - ", DIV: " / ", POW: " ^ "}


class Expression:
    """Mixin giving every node arithmetic operators that build new trees."""

    __slots__ = ()

    def __add__(self, other):
        return Operation(ADD, (self, wrap(other)))

    def __radd__(self, other):
        return Operation(ADD, (wrap(other), self))

    def __sub__(self, other):
        return Operation(SUB, (self, wrap(other)))

    def __rsub__(self, other):
        return Operation(SUB, (wrap(other), self))

    def __mul__(self, other):
        return Operation(MUL, (self, wrap(other)))

    def __rmul__(self, other):
        return Operation(MUL, (wrap(other), self))

    def __truediv__(self, other):
        return Operation(DIV, (self, wrap(other)))

    def __rtruediv__(self, other):
        return Operation(DIV, (wrap(other), self))

    def __pow__(self, other):
        return Operation(POW, (self, wrap(other)))

    def __rpow__(self, other):
        return Operation(POW, (wrap(other), self))

    def __neg__(self):
        return Operation(SUB, (self,))

    def __str__(self) -> str:
        return render(self)


@dataclass(frozen=True, eq=False)
class Constant(Expression):
    """Numeric literal. Equality and hashing include the value's type, so `2`, `2.0` and `2+0j` differ."""

    value: numbers.Number

    def __post_init__(self) -> None:
        if isinstance(self.value, bool) or not isinstance(self.value, numbers.Number):
            raise TypeError(f"Constant must wrap a number, got {type(self.value).__name__}")

    def __eq__(self, other):
        if not isinstance(other, Constant):
            return NotImplemented
        return type(self.value) is type(other.value) and self.value == other.value

    def __hash__(self) -> int:
        return hash((type(self.value), self.value))


@dataclass(frozen=True)
class Variable(Expression):
    name: str
    kind: str = "variable"
    default: object = field(default=None, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValidationError("Variable name must be non-empty")
        if self.kind not in VARIABLE_KINDS:
            raise ValidationError(f"Variable kind must be one of {VARIABLE_KINDS}, got {self.kind!r}")


@dataclass(frozen=True, eq=False)
class Operation(Expression):
    """Operator application. The hash is computed once from the arguments' hashes
    and equality walks both trees with an explicit stack, so neither recurses."""

    op: str
    args: tuple[Expression, ...]
    _hash: int = field(init=False, repr=False)

    def __post_init__(self) -> None:
        args = tuple(wrap(arg) for arg in self.args)
        if not args:
            raise ValidationError(f"Operation {self.op!r} needs at least one argument")
        object.__setattr__(self, "args", args)
        object.__setattr__(self, "_hash", hash((self.op, args)))

    def __hash__(self) -> int:
        return self._hash

    def __eq__(self, other):
        if self is other:
            return True
        if not isinstance(other, Operation):
            return NotImplemented
        stack: list[tuple[Expression, Expression]] = [(self, other)]
        while stack:
            left, right = stack.pop()
            if left is right:
                continue
            if isinstance(left, Operation) and isinstance(right, Operation):
                if left._hash != right._hash or left.op != right.op or len(left.args) != len(right.args):
                    return False
                stack.extend(zip(left.args, right.args))
            elif isinstance(left, Operation) or isinstance(right, Operation) or left != right:
                return False
        return True


@dataclass(frozen=True)
class Equation:
    """`lhs = rhs`."""

    lhs: Expression
    rhs: Expression

    def __post_init__(self) -> None:
        object.__setattr__(self, "lhs", wrap(self.lhs))
        object.__setattr__(self, "rhs", wrap(self.rhs))


@dataclass(frozen=True)
class Inequality:
    """`lhs <relation> rhs` with relation one of `<=`, `<`, `>=`, `>`."""

    lhs: Expression
    rhs: Expression = Constant(0)
    relation: str = "<="

    def __post_init__(self) -> None:
        if self.relation not in RELATIONS:
            raise ValidationError(f"Inequality relation must be one of {RELATIONS}, got {self.relation!r}")
        object.__setattr__(self, "lhs", wrap(self.lhs))
        object.__setattr__(self, "rhs", wrap(self.rhs))


@dataclass(frozen=True)
class Differential:
    """Callable building `differential(expr, iv)` nodes, e.g. `D = Differential(t); D(x)`."""

    iv: Variable

    def __call__(self, expr) -> Operation:
        return Operation(DIFFERENTIAL, (wrap(expr), self.iv))


def wrap(value) -> Expression:
    if isinstance(value, Expression):
        return value
    if isinstance(value, numbers.Number) and not isinstance(value, bool):
        return Constant(value)
    raise TypeError(f"Cannot use {type(value).__name__} as an expression")


def is_operation(expr: object) -> bool:
    return isinstance(expr, Operation)


def is_constant(expr: object) -> bool:
    return isinstance(expr, Constant)


def is_variable(expr: object) -> bool:
    return isinstance(expr, Variable)


def children(expr: Expression) -> tuple[Expression, ...]:
    if isinstance(expr, Operation):
        return expr.args
    return ()


def is_zero(expr: Expression) -> bool:
    return isinstance(expr, Constant) and expr.value == 0


def is_one(expr: Expression) -> bool:
    return isinstance(expr, Constant) and expr.value == 1


def _split_names(names: str) -> list[str]:
    return [name for name in names.replace(",", " ").split() if name]


def variables(names: str) -> tuple[Variable, ...]:
    return tuple(Variable(name) for name in _split_names(names))


def parameters(names: str) -> tuple[Variable, ...]:
    return tuple(Variable(name, kind="parameter") for name in _split_names(names))


def named_constant(name: str, default: numbers.Number | None = None) -> Variable:
    return Variable(name, kind="constant", default=default)


def canonical_form(relation: Equation | Inequality) -> Equation | Inequality:
    """Move everything to the left: `h(x) = 0` or `g(x) <= 0` / `g(x) < 0`."""
    if isinstance(relation, Equation):
        return Equation(relation.lhs - relation.rhs, Constant(0))
    if isinstance(relation, Inequality):
        if relation.relation in ("<=", "<"):
            return Inequality(relation.lhs - relation.rhs, Constant(0), relation.relation)
        flipped = "<=" if relation.relation == ">=" else "<"
        return Inequality(relation.rhs - relation.lhs, Constant(0), flipped)
    raise TypeError(f"Expected Equation or Inequality, got {type(relation).__name__}")


def iter_postorder(expr: Expression):
    """Yield every distinct node of `expr` once, each after all of its arguments.

    The walk keeps an explicit stack, so arbitrarily deep trees never hit the
    interpreter's recursion limit. Shared sub-trees are visited once, by identity.
    """
    seen: set[int] = set()
    stack: list[tuple[Expression, bool]] = [(expr, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            yield node
            continue
        if id(node) in seen:
            continue
        seen.add(id(node))
        stack.append((node, True))
        if isinstance(node, Operation):
            for arg in reversed(node.args):
                if id(arg) not in seen:
                    stack.append((arg, False))


def _collect_variables(expr: Expression, seen: dict[Variable, None]) -> None:
    for node in iter_postorder(expr):
        if isinstance(node, Variable):
            seen.setdefault(node, None)


def get_variables(exprs: Expression | Iterable[Expression]) -> tuple[Variable, ...]:
    """Variables an expression depends on, in first-occurrence order."""
    seen: dict[Variable, None] = {}
    if isinstance(exprs, Expression):
        _collect_variables(exprs, seen)
    else:
        for expr in exprs:
            _collect_variables(expr, seen)
    return tuple(seen)


def contains(expr: Expression, var: Variable) -> bool:
    return any(node == var for node in iter_postorder(expr) if not isinstance(node, Operation))


def substitute(expr: Expression, mapping: Mapping[Expression, object]) -> Expression:
    """Structurally replace every sub-expression found in `mapping`."""
    if not mapping:
        return expr
    done: dict[int, Expression] = {}
    for node in iter_postorder(expr):
        if node in mapping:
            done[id(node)] = wrap(mapping[node])
        elif isinstance(node, Operation):
            args = tuple(done[id(arg)] for arg in node.args)
            changed = any(new is not old for new, old in zip(args, node.args))
            done[id(node)] = Operation(node.op, args) if changed else node
        else:
            done[id(node)] = node
    return done[id(expr)]


def collect_constants(exprs: Expression | Iterable[Expression]) -> tuple[Variable, ...]:
    return tuple(var for var in get_variables(exprs) if var.kind == "constant")


def constant_map(
    constants: Iterable[Variable], defaults: Mapping[Variable, object] | None = None
) -> dict[Variable, Expression]:
    """Map each named constant to its registered default.

    A default may be a number or an expression; expressions can mention other
    named constants, which `subs_constants` resolves in later rounds.
    """
    defaults = defaults or {}
    cmap: dict[Variable, Expression] = {}
    for const in constants:
        value = defaults.get(const, const.default)
        if value is None:
            raise ValidationError(f"Named constant {const.name!r} has no default value")
        try:
            cmap[const] = wrap(value)
        except TypeError as exc:
            raise ValidationError(f"Default for named constant {const.name!r} is not an expression: {exc}") from exc
    return cmap


def _subs_constants_one(expr: Expression, defaults, keep: frozenset) -> Expression:
    seen: set[Variable] = set()
    rounds = 0
    while True:
        pending = [const for const in collect_constants(expr) if const not in keep]
        if not pending:
            return expr
        seen.update(pending)
        rounds += 1
        if rounds > len(seen):
            names = ", ".join(sorted(const.name for const in pending))
            raise ValidationError(f"Named constant defaults are cyclic through {names}")
        expr = substitute(expr, constant_map(pending, defaults))


def subs_constants(exprs, defaults: Mapping[Variable, object] | None = None, keep: Iterable[Variable] = ()):
    """Replace named constants by their default values.

    Defaults that are themselves expressions are substituted until no named
    constant outside `keep` remains. Accepts a single expression or a sequence;
    returns the same shape.
    """
    keep = frozenset(keep)
    if isinstance(exprs, Expression):
        return _subs_constants_one(exprs, defaults, keep)
    return tuple(_subs_constants_one(expr, defaults, keep) for expr in exprs)


def render(expr: Expression) -> str:
    if not isinstance(expr, Expression):
        return repr(expr)
    text: dict[int, str] = {}
    for node in iter_postorder(expr):
        if isinstance(node, Constant):
            text[id(node)] = repr(node.value)
        elif isinstance(node, Variable):
            text[id(node)] = node.name
        else:
            parts = [text[id(arg)] for arg in node.args]
            if node.op == SUB and len(parts) == 1:
                text[id(node)] = f"(-{parts[0]})"
            elif node.op in _INFIX_RENDER and len(parts) > 1:
                text[id(node)] = "(" + _INFIX_RENDER[node.op].join(parts) + ")"
            else:
                text[id(node)] = f"{node.op}({', '.join(parts)})"
    return text[id(expr)]
