"""Constant folding and tree shortening by local rewrites run to a fixed point."""

from __future__ import annotations

import logging
import operator
import os
from functools import reduce
from typing import Final

from .errors import SimplificationError
from .expressions import (
    AC_OPERATORS,
    ADD,
    IDENTITY,
    MUL,
    SUB,
    Constant,
    Expression,
    Operation,
    is_one,
    is_zero,
)

logger = logging.getLogger(__name__)

_MAX_SIMPLIFY_PASSES: Final[int] = max(1, int(os.environ.get("EQJAX_MAX_SIMPLIFY_PASSES", "10000")))

_FOLD_FUNCTIONS = {ADD: operator.add, MUL: operator.mul}


def simplify_constants(expr: Expression, shorten_tree: bool = True) -> Expression:
    """Simplify `expr` until every node is structurally unchanged by a rewrite.

    Nodes are settled children first: once all arguments are at their fixed
    point the parent is rewritten, and the rewrite repeats until it leaves the
    node unchanged. With `shorten_tree=False` the associative flattening and
    constant collapsing of `+`/`*` are skipped.
    """
    if not isinstance(expr, Operation):
        return expr
    memo: dict[int, tuple[Expression, Expression]] = {}
    result = _settle(expr, shorten_tree, memo)
    logger.debug("simplify_constants settled %d nodes", len(memo))
    return result


def _settle(root: Expression, shorten_tree: bool, memo: dict) -> Expression:
    # memo maps id(node) -> (node, settled); holding node keeps its id from being reused.
    stack: list[tuple[Expression, bool]] = [(root, False)]
    while stack:
        node, expanded = stack.pop()
        if id(node) in memo:
            continue
        if not isinstance(node, Operation):
            memo[id(node)] = (node, node)
            continue
        if not expanded:
            stack.append((node, True))
            stack.extend((arg, False) for arg in reversed(node.args) if id(arg) not in memo)
            continue
        settled = _fixed_point(node, shorten_tree, memo)
        memo[id(node)] = (node, settled)
        memo.setdefault(id(settled), (settled, settled))
    return memo[id(root)][1]


def _fixed_point(node: Operation, shorten_tree: bool, memo: dict) -> Expression:
    for _ in range(_MAX_SIMPLIFY_PASSES):
        args = tuple(memo[id(arg)][1] for arg in node.args)
        if any(new is not old for new, old in zip(args, node.args)):
            node = Operation(node.op, args)
        rewritten = _rewrite(node, shorten_tree)
        if rewritten == node:
            return node
        if not isinstance(rewritten, Operation):
            return rewritten
        for arg in rewritten.args:
            if id(arg) not in memo:
                _settle(arg, shorten_tree, memo)
        node = rewritten
    raise SimplificationError(f"No fixed point after {_MAX_SIMPLIFY_PASSES} passes for {node}")

def _rebuild(op: str, args: list[Expression], empty: Constant) -> Expression:
    if not args:
        return empty
    if len(args) == 1:
        return args[0]
    return Operation(op, tuple(args))


def _rewrite(expr: Operation, shorten_tree: bool = True) -> Expression:
    """Apply the first matching local rule to `expr` (children untouched)."""
    op = expr.op
    args = expr.args

    if shorten_tree and op in AC_OPERATORS:
        if any(isinstance(arg, Operation) and arg.op == op for arg in args):
            flat: list[Expression] = []
            for arg in args:
                if isinstance(arg, Operation) and arg.op == op:
                    flat.extend(arg.args)
                else:
                    flat.append(arg)
            return Operation(op, tuple(flat))

        constants = [arg for arg in args if isinstance(arg, Constant)]
        if len(constants) > 1:
            folded = Constant(reduce(_FOLD_FUNCTIONS[op], (c.value for c in constants)))
            others = [arg for arg in args if not isinstance(arg, Constant)]
            others.append(folded)
            if len(others) == 1:
                return others[0]
            return Operation(op, tuple(others))

    if op == MUL:
        if any(is_zero(arg) for arg in args):
            return Constant(0)
        if any(is_one(arg) for arg in args):
            return _rebuild(op, [arg for arg in args if not is_one(arg)], Constant(1))
        return expr

    if op == ADD and any(is_zero(arg) for arg in args):
        return _rebuild(op, [arg for arg in args if not is_zero(arg)], Constant(0))

    if op == IDENTITY and len(args) == 1:
        return args[0]

    if op == SUB and len(args) == 1:
        return Operation(MUL, (Constant(-1), args[0]))

    return expr
