"""Lowering of symbolic targets to JAX-evaluated IR and Python source."""

from __future__ import annotations

import hashlib
import keyword
import logging
import math
import operator
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from functools import reduce
from typing import Final, Literal

import jax
import jax.numpy as jnp
from jax.experimental import sparse

from .derivatives import SparseMatrix
from .errors import BindingError, EqShapeError, UnsupportedOperatorError
from .expressions import (
    ADD,
    DIFFERENTIAL,
    DIV,
    IDENTITY,
    MUL,
    POW,
    SUB,
    Constant,
    Expression,
    Operation,
    Variable,
    iter_postorder,
    subs_constants,
    wrap,
)
from .operators import OperatorSpec, lookup_operator

logger = logging.getLogger(__name__)

_USE_LOWER_CACHE: Final[bool] = os.environ.get("EQJAX_DISABLE_LOWER_CACHE", "0") != "1"
_LOWER_CACHE_MAX: Final[int] = max(1, int(os.environ.get("EQJAX_LOWER_CACHE_MAX", "256")))
_LOWER_CACHE: dict[tuple[object, ...], "FunctionIR"] = {}
_LOWER_CACHE_STATS: dict[str, int] = {"hits": 0, "misses": 0, "evictions": 0}

OutputKind = Literal["scalar", "vector", "matrix", "sparse"]

_RESERVED_ARG_NAMES: Final[frozenset[str]] = frozenset({"t", "out", "float", "jnp", "sparse"})


@dataclass(frozen=True)
class IRNode:
    """Single SSA node. `arg` nodes carry `(position, index)` in `value`."""

    id: int
    op: str
    inputs: tuple[int, ...] = ()
    value: object | None = None
    name: str | None = None


@dataclass(frozen=True)
class FunctionIR:
    """Structural program: nodes, argument layout and output layout."""

    nodes: tuple[IRNode, ...]
    outputs: tuple[int, ...]
    kind: OutputKind
    shape: tuple[int, ...]
    arg_names: tuple[str, ...]
    arg_sizes: tuple[int | None, ...]
    pattern: tuple[tuple[int, int], ...] = ()

    def to_source(self, name: str = "generated_function", *, inplace: bool = False) -> str:
        return _render_source(self, name, inplace=inplace)


@dataclass(frozen=True)
class _Targets:
    kind: OutputKind
    shape: tuple[int, ...]
    exprs: tuple[Expression, ...]
    pattern: tuple[tuple[int, int], ...] = ()


def _normalize_targets(targets) -> _Targets:
    if isinstance(targets, SparseMatrix):
        return _Targets("sparse", tuple(targets.shape), tuple(e for _, e in targets), targets.pattern)
    if isinstance(targets, (Expression, int, float, complex)) and not isinstance(targets, bool):
        return _Targets("scalar", (), (wrap(targets),))
    if not isinstance(targets, Sequence) or isinstance(targets, str):
        raise TypeError(f"Cannot generate code for targets of type {type(targets).__name__}")

    items = list(targets)
    if not items:
        return _Targets("vector", (0,), ())
    nested = [isinstance(item, Sequence) and not isinstance(item, (str, Expression)) for item in items]
    if not any(nested):
        return _Targets("vector", (len(items),), tuple(wrap(item) for item in items))
    if not all(nested):
        raise EqShapeError("Targets mix scalars and rows; expected a vector or a matrix")
    width = len(items[0])
    exprs: list[Expression] = []
    for row_idx, row in enumerate(items):
        if len(row) != width:
            raise EqShapeError(f"Ragged matrix target: row {row_idx} has {len(row)} entries, expected {width}")
        for item in row:
            if isinstance(item, Sequence) and not isinstance(item, Expression):
                raise EqShapeError("Targets deeper than a matrix are not supported")
            exprs.append(wrap(item))
    return _Targets("matrix", (len(items), width), tuple(exprs))


def _arg_layout(
    unknowns: Sequence[Variable],
    param_groups: Sequence[Sequence[Variable]],
    iv: Variable | None,
    scalars: Sequence[Variable] = (),
) -> tuple[tuple[str, ...], tuple[int | None, ...], dict[Variable, tuple[int, int | None]]]:
    names = ["u"]
    groups: list[tuple[Variable, ...]] = [tuple(unknowns)]
    if len(param_groups) == 1:
        names.append("p")
    else:
        names.extend(f"p{k + 1}" for k in range(len(param_groups)))
    groups.extend(tuple(group) for group in param_groups)

    bindings: dict[Variable, tuple[int, int | None]] = {}
    for position, group in enumerate(groups):
        for index, var in enumerate(group):
            if not isinstance(var, Variable):
                raise BindingError(f"Only variables can be bound to arguments, got {var!r}")
            if var in bindings:
                raise BindingError(f"Symbol {var.name!r} is bound more than once")
            bindings[var] = (position, index)
    sizes: list[int | None] = [len(group) for group in groups]

    # Scalar arguments are passed by their own name, after the vectors and before `t`.
    for var in scalars:
        if not isinstance(var, Variable):
            raise BindingError(f"Only variables can be bound to arguments, got {var!r}")
        if var in bindings:
            raise BindingError(f"Symbol {var.name!r} is bound more than once")
        name = var.name
        if not name.isidentifier() or keyword.iskeyword(name) or name.startswith("_"):
            raise BindingError(f"Scalar argument {name!r} is not usable as a parameter name")
        if name in names or name in _RESERVED_ARG_NAMES:
            raise BindingError(f"Scalar argument {name!r} clashes with another argument name")
        bindings[var] = (len(names), None)
        names.append(name)
        sizes.append(None)

    if iv is not None:
        if iv in bindings:
            raise BindingError(f"Independent variable {iv.name!r} is also bound as an unknown or parameter")
        bindings[iv] = (len(names), None)
        names.append("t")
        sizes.append(None)
    return tuple(names), tuple(sizes), bindings


class _Lowerer:
    def __init__(self, *, bindings: dict[Variable, tuple[int, int | None]], arg_names: tuple[str, ...]) -> None:
        self.bindings = bindings
        self.arg_names = arg_names
        self.nodes: list[IRNode] = []
        self._expr_cache: dict[Expression, int] = {}

    def _add(self, op: str, *, inputs: tuple[int, ...] = (), value: object | None = None, name: str | None = None) -> int:
        node_id = len(self.nodes)
        self.nodes.append(IRNode(id=node_id, op=op, inputs=inputs, value=value, name=name))
        return node_id

    def _cache_expr(self, expr: Expression, node_id: int) -> int:
        self._expr_cache[expr] = node_id
        return node_id

    def lower_expr(self, expr: Expression) -> int:
        if expr in self._expr_cache:
            return self._expr_cache[expr]
        for node in iter_postorder(expr):
            if node in self._expr_cache:
                continue
            if isinstance(node, Constant):
                self._cache_expr(node, self._add("const", value=node.value))
            elif isinstance(node, Variable):
                if node not in self.bindings:
                    raise BindingError(f"Unbound symbol {node.name!r}; bind it as an unknown, parameter or constant")
                self._cache_expr(node, self._add("arg", value=self.bindings[node], name=node.name))
            elif isinstance(node, Operation):
                spec = lookup_operator(node.op, stage="code generation")
                if not spec.accepts(len(node.args)) or not _is_lowerable(spec):
                    raise UnsupportedOperatorError(op=node.op, stage="code generation", arity=len(node.args))
                input_ids = tuple(self._expr_cache[arg] for arg in node.args)
                self._cache_expr(node, self._add(f"op:{node.op}", inputs=input_ids))
            else:
                raise TypeError(f"Cannot lower node of type {type(node).__name__}")
        return self._expr_cache[expr]


def _is_lowerable(spec: OperatorSpec) -> bool:
    if spec.name == DIFFERENTIAL:
        return False
    return spec.name in _INFIX_EVAL or spec.name == IDENTITY or spec.impl is not None or spec.jnp_name is not None


def _sub_eval(*args):
    if len(args) == 1:
        return -args[0]
    return args[0] - args[1]


_INFIX_EVAL = {
    ADD: lambda *args: reduce(operator.add, args),
    MUL: lambda *args: reduce(operator.mul, args),
    SUB: _sub_eval,
    DIV: operator.truediv,
    POW: jnp.power,
}


def _operator_fn(tag: str):
    if tag in _INFIX_EVAL:
        return _INFIX_EVAL[tag]
    if tag == IDENTITY:
        return lambda x: x
    spec = lookup_operator(tag, stage="evaluation")
    if spec.impl is not None:
        return spec.impl
    return getattr(jnp, spec.jnp_name)


def _default_float():
    return jnp.result_type(float)


def _as_value(value) -> jnp.ndarray:
    arr = jnp.asarray(value)
    if not jnp.issubdtype(arr.dtype, jnp.inexact):
        arr = arr.astype(_default_float())
    return arr


def _as_input(value, size: int | None, where: str) -> jnp.ndarray:
    """Coerce a positional argument, checking vector length against its binding."""
    if size is None:
        return _as_value(value)
    if value is None:
        if size == 0:
            return jnp.zeros((0,), dtype=_default_float())
        raise EqShapeError(f"Argument {where!r} is missing; expected length {size}")
    arr = _as_value(value)
    if arr.ndim != 1 or int(arr.shape[0]) != size:
        raise EqShapeError(f"Argument {where!r} has shape {tuple(arr.shape)}, expected ({size},)")
    return arr


def _pack_vector(values):
    if not values:
        return jnp.zeros((0,), dtype=_default_float())
    return jnp.stack([jnp.asarray(v) for v in values])


def _pack_matrix(values, shape):
    if not values:
        return jnp.zeros(shape, dtype=_default_float())
    return jnp.stack([jnp.asarray(v) for v in values]).reshape(shape)


def _pack_sparse(values, pattern, shape):
    if not values:
        data = jnp.zeros((0,), dtype=_default_float())
        indices = jnp.zeros((0, 2), dtype=jnp.int32)
    else:
        data = jnp.stack([jnp.asarray(v) for v in values])
        indices = jnp.asarray(pattern, dtype=jnp.int32)
    return sparse.BCOO((data, indices), shape=shape)


def _pack_outputs(ir: FunctionIR, values: list[object]):
    if ir.kind == "scalar":
        return values[0]
    if ir.kind == "vector":
        return _pack_vector(values)
    if ir.kind == "matrix":
        return _pack_matrix(values, ir.shape)
    return _pack_sparse(values, ir.pattern, ir.shape)


def evaluate_ir(ir: FunctionIR, args: tuple[object, ...]) -> object:
    """Execute lowered IR with `jax.numpy` operations."""
    if len(args) != len(ir.arg_names):
        raise TypeError(f"Expected {len(ir.arg_names)} arguments {ir.arg_names}, got {len(args)}")
    inputs = [_as_input(arg, size, name) for arg, size, name in zip(args, ir.arg_sizes, ir.arg_names, strict=True)]

    values: list[object] = [None] * len(ir.nodes)
    for node in ir.nodes:
        if node.op == "arg":
            position, index = node.value
            values[node.id] = inputs[position] if index is None else inputs[position][index]
        elif node.op == "const":
            values[node.id] = _as_value(node.value)
        else:
            fn = _operator_fn(node.op.partition(":")[2])
            values[node.id] = fn(*(values[idx] for idx in node.inputs))
    return _pack_outputs(ir, [values[idx] for idx in ir.outputs])


def _write_outputs(ir: FunctionIR, out, result) -> None:
    if ir.kind == "vector":
        if len(out) != ir.shape[0]:
            raise EqShapeError(f"Output buffer has length {len(out)}, expected {ir.shape[0]}")
        for i in range(ir.shape[0]):
            out[i] = result[i]
    elif ir.kind == "matrix":
        rows, cols = ir.shape
        if len(out) != rows:
            raise EqShapeError(f"Output buffer has {len(out)} rows, expected {rows}")
        for i in range(rows):
            for j in range(cols):
                out[i][j] = result[i, j]
    else:
        data = result.data
        if len(out) != len(ir.pattern):
            raise EqShapeError(f"Output buffer has length {len(out)}, expected {len(ir.pattern)} nonzeros")
        for k in range(len(ir.pattern)):
            out[k] = data[k]


@dataclass
class CompiledFunction:
    """Callable wrapper around lowered IR with JAX transforms.

    In-place functions take the output buffer first, write every entry into it
    and return `None`; sparse outputs write the nonzero values in pattern order.
    """

    ir: FunctionIR
    inplace: bool = False
    _call_ir: object = field(default=None, init=False, repr=False)
    _jit_fn: object | None = field(default=None, init=False, repr=False)
    _grad_cache: dict[int, object] = field(default_factory=dict, init=False, repr=False)
    _transform_stats: dict[str, int] = field(
        default_factory=lambda: {"jit_hits": 0, "jit_misses": 0, "grad_hits": 0, "grad_misses": 0},
        init=False,
        repr=False,
    )

    def __post_init__(self) -> None:
        if self.inplace and self.ir.kind == "scalar":
            raise EqShapeError("In-place generation needs a vector, matrix or sparse target")
        ir = self.ir

        def _call_ir(*args):
            return evaluate_ir(ir, args)

        self._call_ir = _call_ir

    @property
    def arg_names(self) -> tuple[str, ...]:
        if self.inplace:
            return ("out",) + self.ir.arg_names
        return self.ir.arg_names

    def _run(self, fn, args: tuple[object, ...]):
        if not self.inplace:
            return fn(*args)
        if not args:
            raise TypeError("In-place function needs an output buffer as its first argument")
        out, rest = args[0], args[1:]
        _write_outputs(self.ir, out, fn(*rest))
        return None

    def __call__(self, *args):
        return self._run(self._call_ir, args)

    def trace(self, *args):
        return jax.make_jaxpr(self._call_ir)(*args)

    def jit(self):
        if self._jit_fn is None:
            self._transform_stats["jit_misses"] += 1
            self._jit_fn = jax.jit(self._call_ir)
        else:
            self._transform_stats["jit_hits"] += 1
        jitted = self._jit_fn

        def wrapped(*args):
            return self._run(jitted, args)

        return wrapped

    def grad(self, *, argnums: int = 0):
        if self.ir.kind != "scalar":
            raise EqShapeError("grad() needs a scalar target")
        cached = self._grad_cache.get(argnums)
        if cached is not None:
            self._transform_stats["grad_hits"] += 1
            return cached
        self._transform_stats["grad_misses"] += 1
        grad_core = jax.grad(self._call_ir, argnums=argnums)
        grad_fn = jax.jit(grad_core)
        self._grad_cache[argnums] = grad_fn
        return grad_fn

    def transform_cache_stats(self) -> dict[str, int]:
        return dict(self._transform_stats)


@dataclass(frozen=True)
class GeneratedFunction:
    """Textual/structural form of a generated function."""

    ir: FunctionIR
    source: str
    name: str
    inplace: bool = False

    def compile(self):
        """Run the rendered source through `exec` against `source_globals(ir)` and return the defined function.

        Only call this on source produced by `build_function` or `FunctionIR.to_source`;
        `evaluate_ir` runs the same IR without executing any text.
        """
        namespace = source_globals(self.ir)
        exec(compile(self.source, f"<eqjax:{self.name}>", "exec"), namespace)
        return namespace[self.name]


_SOURCE_HELPERS = {
    "jnp": jnp,
    "sparse": sparse,
    "_as_input": _as_input,
    "_pack_vector": _pack_vector,
    "_pack_matrix": _pack_matrix,
    "_pack_sparse": _pack_sparse,
}


def _custom_op_name(tag: str) -> str:
    """Source-level name for a custom operator; the digest keeps tags that sanitize alike apart."""
    readable = "".join(ch if ch.isalnum() else "_" for ch in tag)
    return f"_op_{readable}_{hashlib.sha1(tag.encode('utf-8')).hexdigest()[:8]}"


def source_globals(ir: FunctionIR) -> dict[str, object]:
    """Globals needed to execute `ir.to_source()`."""
    namespace = dict(_SOURCE_HELPERS)
    for node in ir.nodes:
        if not node.op.startswith("op:"):
            continue
        tag = node.op[3:]
        spec = lookup_operator(tag, stage="source rendering")
        if spec.impl is not None:
            namespace[_custom_op_name(tag)] = spec.impl
    return namespace


def _literal(value: object) -> str:
    if isinstance(value, complex):
        return repr(value)
    number = float(value)
    if math.isfinite(number):
        return repr(number)
    return f"float({str(number)!r})"


def _render_call(tag: str, parts: list[str]) -> str:
    if tag == ADD:
        return "(" + " + ".join(parts) + ")"
    if tag == MUL:
        return "(" + " * ".join(parts) + ")"
    if tag == SUB:
        return f"(-{parts[0]})" if len(parts) == 1 else f"({parts[0]} - {parts[1]})"
    if tag == DIV:
        return f"({parts[0]} / {parts[1]})"
    if tag == POW:
        return f"jnp.power({parts[0]}, {parts[1]})"
    if tag == IDENTITY:
        return parts[0]
    spec = lookup_operator(tag, stage="source rendering")
    if spec.impl is not None:
        return f"{_custom_op_name(tag)}({', '.join(parts)})"
    return f"jnp.{spec.jnp_name}({', '.join(parts)})"


def _render_source(ir: FunctionIR, name: str, *, inplace: bool) -> str:
    if not name.isidentifier() or keyword.iskeyword(name):
        raise ValueError(f"Function name {name!r} is not a valid identifier")
    if inplace and ir.kind == "scalar":
        raise EqShapeError("In-place generation needs a vector, matrix or sparse target")

    reserved = set(ir.arg_names) | set(_SOURCE_HELPERS) | {"out", "float", name}
    used: set[str] = set()
    local: dict[int, str] = {}
    lines = []
    params = (("out",) if inplace else ()) + ir.arg_names
    lines.append(f"def {name}({', '.join(params)}):")
    for arg_name, size in zip(ir.arg_names, ir.arg_sizes, strict=True):
        lines.append(f"    {arg_name} = _as_input({arg_name}, {size!r}, {arg_name!r})")

    for node in ir.nodes:
        if node.op == "arg":
            symbol = node.name or ""
            ok = symbol.isidentifier() and not keyword.iskeyword(symbol) and not symbol.startswith("_")
            target = symbol if ok and symbol not in reserved and symbol not in used else f"_s{node.id}"
            used.add(target)
            position, index = node.value
            source = ir.arg_names[position] if index is None else f"{ir.arg_names[position]}[{index}]"
            lines.append(f"    {target} = {source}")
        elif node.op == "const":
            target = f"_t{node.id}"
            lines.append(f"    {target} = jnp.asarray({_literal(node.value)})")
        else:
            target = f"_t{node.id}"
            parts = [local[idx] for idx in node.inputs]
            lines.append(f"    {target} = {_render_call(node.op[3:], parts)}")
        local[node.id] = target

    outs = [local[idx] for idx in ir.outputs]
    if inplace:
        if ir.kind == "matrix":
            cols = ir.shape[1]
            for k, value in enumerate(outs):
                lines.append(f"    out[{k // cols}][{k % cols}] = {value}")
        else:
            for k, value in enumerate(outs):
                lines.append(f"    out[{k}] = {value}")
        lines.append("    return None")
    elif ir.kind == "scalar":
        lines.append(f"    return {outs[0]}")
    elif ir.kind == "vector":
        lines.append(f"    return _pack_vector([{', '.join(outs)}])")
    elif ir.kind == "matrix":
        lines.append(f"    return _pack_matrix([{', '.join(outs)}], {ir.shape!r})")
    else:
        lines.append(f"    return _pack_sparse([{', '.join(outs)}], {ir.pattern!r}, {ir.shape!r})")
    return "\n".join(lines) + "\n"


def lower_to_ir(
    targets,
    unknowns: Sequence[Variable],
    *param_groups: Sequence[Variable],
    iv: Variable | None = None,
    scalars: Sequence[Variable] = (),
    defaults: Mapping[Variable, object] | None = None,
    use_cache: bool = True,
) -> FunctionIR:
    """Lower scalar/vector/matrix/sparse targets against an argument binding.

    Named constants that are not bound as arguments are replaced by their
    defaults (from `defaults`, falling back to the symbol's own default).
    `scalars` binds extra variables as scalar arguments named after them,
    placed after the parameter groups and before `t`.
    """
    normalized = _normalize_targets(targets)
    scalars = tuple(scalars)
    arg_names, arg_sizes, bindings = _arg_layout(unknowns, param_groups, iv, scalars)
    exprs = subs_constants(normalized.exprs, defaults, keep=bindings)

    cache_key = (
        normalized.kind,
        normalized.shape,
        normalized.pattern,
        exprs,
        tuple(unknowns),
        tuple(tuple(group) for group in param_groups),
        scalars,
        iv,
    )
    use_cache = use_cache and _USE_LOWER_CACHE
    if use_cache:
        cached = _LOWER_CACHE.get(cache_key)
        if cached is not None:
            _LOWER_CACHE_STATS["hits"] += 1
            logger.debug("lowering cache hit (%s %s)", cached.kind, cached.shape)
            return cached
        _LOWER_CACHE_STATS["misses"] += 1

    lowerer = _Lowerer(bindings=bindings, arg_names=arg_names)
    outputs = tuple(lowerer.lower_expr(expr) for expr in exprs)
    ir = FunctionIR(
        nodes=tuple(lowerer.nodes),
        outputs=outputs,
        kind=normalized.kind,
        shape=normalized.shape,
        arg_names=arg_names,
        arg_sizes=arg_sizes,
        pattern=normalized.pattern,
    )
    logger.debug("lowered %s target %s to %d IR nodes", ir.kind, ir.shape, len(ir.nodes))

    if use_cache:
        if len(_LOWER_CACHE) >= _LOWER_CACHE_MAX:
            _LOWER_CACHE.pop(next(iter(_LOWER_CACHE)))
            _LOWER_CACHE_STATS["evictions"] += 1
        _LOWER_CACHE[cache_key] = ir
    return ir


def build_function(
    targets,
    unknowns: Sequence[Variable],
    *param_groups: Sequence[Variable],
    iv: Variable | None = None,
    scalars: Sequence[Variable] = (),
    defaults: Mapping[Variable, object] | None = None,
    expression: bool = False,
    inplace: bool = False,
    name: str = "generated_function",
    use_cache: bool = True,
):
    """Generate a numeric function `f(u, p..., [scalars...], [t])` for `targets`.

    Returns a `CompiledFunction`, or a `GeneratedFunction` carrying the IR and
    Python source when `expression=True`. With `inplace=True` the function
    takes an output buffer first and writes into it.
    """
    ir = lower_to_ir(
        targets, unknowns, *param_groups, iv=iv, scalars=scalars, defaults=defaults, use_cache=use_cache
    )
    if expression:
        return GeneratedFunction(ir=ir, source=ir.to_source(name, inplace=inplace), name=name, inplace=inplace)
    return CompiledFunction(ir=ir, inplace=inplace)


def lowering_cache_stats(*, reset: bool = False) -> dict[str, float | int]:
    hits = _LOWER_CACHE_STATS["hits"]
    misses = _LOWER_CACHE_STATS["misses"]
    total = hits + misses
    stats: dict[str, float | int] = {
        "hits": hits,
        "misses": misses,
        "evictions": _LOWER_CACHE_STATS["evictions"],
        "size": len(_LOWER_CACHE),
        "max_size": _LOWER_CACHE_MAX,
        "enabled": _USE_LOWER_CACHE,
        "hit_rate": float(hits / total) if total else 0.0,
    }
    if reset:
        _LOWER_CACHE.clear()
        for key in _LOWER_CACHE_STATS:
            _LOWER_CACHE_STATS[key] = 0
    return stats
