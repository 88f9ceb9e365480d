"""Operator registry: tag -> arity, partial derivatives, numeric lowering."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .errors import UnsupportedOperatorError, ValidationError
from .expressions import ADD, DIFFERENTIAL, DIV, IDENTITY, MUL, POW, SUB, Constant, Expression, Operation

logger = logging.getLogger(__name__)

Partial = Callable[[tuple[Expression, ...], int], Expression]


@dataclass(frozen=True)
class OperatorSpec:
    """Everything the derivative builders and the code generator know about a tag.

    - `arities`: accepted argument counts, `None` for any count >= 1.
    - `partial`: `partial(args, i)` is the derivative with respect to `args[i]`.
    - `jnp_name`: name of the `jax.numpy` function used for lowering.
    - `impl`: explicit numeric callable, takes precedence over `jnp_name`.
    - `infix`: Python infix symbol used for source rendering.
    """

    name: str
    arities: tuple[int, ...] | None = None
    partial: Partial | None = None
    jnp_name: str | None = None
    impl: Callable[..., object] | None = None
    infix: str | None = None

    def accepts(self, arity: int) -> bool:
        return self.arities is None or arity in self.arities


def _call(op: str, *args: Expression) -> Operation:
    return Operation(op, args)


def _add_partial(args, i):
    return Constant(1)


def _mul_partial(args, i):
    rest = args[:i] + args[i + 1 :]
    if len(rest) == 1:
        return rest[0]
    return Operation(MUL, rest)


def _sub_partial(args, i):
    if len(args) == 1 or i == 1:
        return Constant(-1)
    return Constant(1)


def _div_partial(args, i):
    a, b = args
    if i == 0:
        return _call(DIV, Constant(1), b)
    return _call(SUB, _call(DIV, a, _call(POW, b, Constant(2))))


def _pow_partial(args, i):
    a, b = args
    if i == 0:
        return _call(MUL, b, _call(POW, a, _call(SUB, b, Constant(1))))
    return _call(MUL, _call(POW, a, b), _call("log", a))


def _sin_partial(args, i):
    return _call("cos", args[0])


def _cos_partial(args, i):
    return _call(SUB, _call("sin", args[0]))


def _tan_partial(args, i):
    return _call(ADD, Constant(1), _call(POW, _call("tan", args[0]), Constant(2)))


def _exp_partial(args, i):
    return _call("exp", args[0])


def _log_partial(args, i):
    return _call(DIV, Constant(1), args[0])


def _sqrt_partial(args, i):
    return _call(DIV, Constant(1), _call(MUL, Constant(2), _call("sqrt", args[0])))


def _tanh_partial(args, i):
    return _call(SUB, Constant(1), _call(POW, _call("tanh", args[0]), Constant(2)))


def _abs_partial(args, i):
    return _call("sign", args[0])


def _zero_partial(args, i):
    return Constant(0)


_REGISTRY: dict[str, OperatorSpec] = {}


def register_operator(
    name: str,
    *,
    arities: tuple[int, ...] | None = None,
    partial: Partial | None = None,
    jnp_name: str | None = None,
    impl: Callable[..., object] | None = None,
    infix: str | None = None,
    replace: bool = False,
) -> OperatorSpec:
    """Register an operator tag for differentiation and code generation."""
    if name in _REGISTRY and not replace:
        raise ValidationError(f"Operator {name!r} is already registered; pass replace=True to override")
    if arities is not None and any(n < 1 for n in arities):
        raise ValidationError(f"Operator {name!r} must take at least one argument")
    spec = OperatorSpec(name=name, arities=arities, partial=partial, jnp_name=jnp_name, impl=impl, infix=infix)
    _REGISTRY[name] = spec
    logger.debug("registered operator %r (arities=%s)", name, arities)
    return spec


def unregister_operator(name: str) -> None:
    _REGISTRY.pop(name, None)


def lookup_operator(name: str, *, stage: str = "lookup") -> OperatorSpec:
    spec = _REGISTRY.get(name)
    if spec is None:
        raise UnsupportedOperatorError(op=name, stage=stage)
    return spec


register_operator(ADD, partial=_add_partial, infix="+")
register_operator(MUL, partial=_mul_partial, infix="*")
register_operator(SUB, arities=(1, 2), partial=_sub_partial, infix="-")
register_operator(DIV, arities=(2,), partial=_div_partial, infix="/")
register_operator(POW, arities=(2,), partial=_pow_partial, infix="**")
register_operator(IDENTITY, arities=(1,), partial=_add_partial)
register_operator("sin", arities=(1,), partial=_sin_partial, jnp_name="sin")
register_operator("cos", arities=(1,), partial=_cos_partial, jnp_name="cos")
register_operator("tan", arities=(1,), partial=_tan_partial, jnp_name="tan")
register_operator("exp", arities=(1,), partial=_exp_partial, jnp_name="exp")
register_operator("log", arities=(1,), partial=_log_partial, jnp_name="log")
register_operator("sqrt", arities=(1,), partial=_sqrt_partial, jnp_name="sqrt")
register_operator("tanh", arities=(1,), partial=_tanh_partial, jnp_name="tanh")
register_operator("abs", arities=(1,), partial=_abs_partial, jnp_name="abs")
register_operator("sign", arities=(1,), partial=_zero_partial, jnp_name="sign")
# Only meaningful before expand_derivatives; no numeric or derivative rule.
register_operator(DIFFERENTIAL, arities=(2,))
