from __future__ import annotations

import unittest
from unittest import mock

from eqjax import Constant, Operation, SimplificationError, simplify_constants, variables


def plus(*args):
    return Operation("+", args)


def times(*args):
    return Operation("*", args)


class SimplifyConstantsTests(unittest.TestCase):
    def setUp(self) -> None:
        self.a, self.b, self.c, self.x = variables("a b c x")

    def test_leaves_are_fixed_points(self) -> None:
        k = Constant(3)
        self.assertIs(simplify_constants(k), k)
        self.assertIs(simplify_constants(self.x), self.x)

    def test_multiplication_by_zero(self) -> None:
        self.assertEqual(simplify_constants(times(self.x, Constant(0))), Constant(0))
        nested = times(Operation("sin", (self.x,)), self.a, Constant(0))
        self.assertEqual(simplify_constants(nested), Constant(0))

    def test_multiplication_by_one(self) -> None:
        self.assertEqual(simplify_constants(times(self.x, Constant(1))), self.x)
        self.assertEqual(simplify_constants(times(Constant(1), Constant(1))), Constant(1))
        self.assertEqual(
            simplify_constants(times(self.a, Constant(1), self.b)),
            times(self.a, self.b),
        )

    def test_addition_of_zero(self) -> None:
        self.assertEqual(simplify_constants(plus(self.x, Constant(0))), self.x)
        self.assertEqual(simplify_constants(plus(Constant(0), Constant(0))), Constant(0))

    def test_constant_folding(self) -> None:
        self.assertEqual(simplify_constants(plus(Constant(2), Constant(3))), Constant(5))
        self.assertEqual(simplify_constants(times(Constant(2), Constant(3))), Constant(6))

    def test_constants_collapse_next_to_symbols(self) -> None:
        expr = 2 * self.x * 3
        self.assertEqual(simplify_constants(expr), times(self.x, Constant(6)))

    def test_flattening_commutes_with_folding(self) -> None:
        a, b, c = self.a, self.b, self.c
        left = simplify_constants(plus(plus(a, b), plus(c, Constant(0))))
        right = simplify_constants(plus(a, b, c))
        self.assertEqual(left, right)
        self.assertEqual(right, plus(a, b, c))

    def test_flattening_splices_in_place(self) -> None:
        a, b, c = self.a, self.b, self.c
        self.assertEqual(simplify_constants(times(a, times(b, c))), times(a, b, c))

    def test_unary_negation_becomes_multiplication(self) -> None:
        x = self.x
        self.assertEqual(simplify_constants(-x), simplify_constants(times(Constant(-1), x)))
        self.assertEqual(simplify_constants(-x), times(Constant(-1), x))

    def test_double_negation_cancels(self) -> None:
        self.assertEqual(simplify_constants(-(-self.x)), self.x)

    def test_identity_collapses(self) -> None:
        self.assertEqual(simplify_constants(Operation("identity", (self.x,))), self.x)

    def test_unknown_operators_keep_shape_but_simplify_children(self) -> None:
        expr = Operation("sin", (plus(self.x, Constant(0)),))
        self.assertEqual(simplify_constants(expr), Operation("sin", (self.x,)))
        binary = self.a - times(self.b, Constant(1))
        self.assertEqual(simplify_constants(binary), Operation("-", (self.a, self.b)))

    def test_idempotence(self) -> None:
        a, b, x = self.a, self.b, self.x
        samples = [
            plus(plus(a, Constant(1)), plus(b, Constant(2))),
            times(-x, times(Constant(2), a), Constant(1)),
            Operation("exp", (plus(times(a, Constant(0)), x),)),
            (a + b) * (x - 1) / (a * 1),
        ]
        for expr in samples:
            with self.subTest(expr=str(expr)):
                once = simplify_constants(expr)
                self.assertEqual(simplify_constants(once), once)

    def test_without_tree_shortening(self) -> None:
        a, b, c = self.a, self.b, self.c
        expr = plus(plus(a, b), c)
        self.assertEqual(simplify_constants(expr, shorten_tree=False), expr)
        self.assertEqual(simplify_constants(times(a, Constant(1)), shorten_tree=False), a)

    def test_pass_limit_is_enforced(self) -> None:
        with mock.patch("eqjax.simplify._MAX_SIMPLIFY_PASSES", 1):
            with self.assertRaises(SimplificationError):
                simplify_constants(-(-self.x))

    def test_deep_sums_flatten_without_recursion(self) -> None:
        xs = variables(" ".join(f"v{i}" for i in range(1200)))
        total = sum(xs)
        self.assertEqual(simplify_constants(total), plus(*xs))

        chained = xs[0]
        for var in xs[1:]:
            chained = (chained + var) * 1
        self.assertEqual(simplify_constants(chained), plus(*xs))

    def test_shared_subtrees_are_simplified_once(self) -> None:
        shared = plus(self.x, Constant(0))
        expr = times(shared, shared, Constant(1))
        self.assertEqual(simplify_constants(expr), times(self.x, self.x))


if __name__ == "__main__":
    unittest.main()
