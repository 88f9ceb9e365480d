from __future__ import annotations

import importlib.util
import math
import unittest

from eqjax import (
    BindingError,
    Constant,
    Differential,
    EqShapeError,
    Operation,
    UnsupportedOperatorError,
    ValidationError,
    Variable,
    gradient,
    jacobian,
    named_constant,
    parameters,
    simplify_constants,
    sparsejacobian,
    variables,
)

JAX_AVAILABLE = importlib.util.find_spec("jax") is not None


def sin(arg):
    return Operation("sin", (arg,))


@unittest.skipUnless(JAX_AVAILABLE, "jax is not installed")
class BuildFunctionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.x, self.y = variables("x y")
        self.a, self.b = parameters("a b")

    def assertVectorAlmostEqual(self, actual, expected, places: int = 4) -> None:
        self.assertEqual(len(actual), len(expected))
        for got, want in zip(actual, expected):
            self.assertAlmostEqual(float(got), want, places=places)

    def test_scalar_round_trip(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        f = (x + y) * (x * 2 + 3) + sin(x * y) - x / y
        fn = build_function(f, (x, y))
        xv, yv = 1.5, 2.0
        expected = (xv + yv) * (xv * 2 + 3) + math.sin(xv * yv) - xv / yv
        self.assertAlmostEqual(float(fn([xv, yv])), expected, places=4)

        simplified = build_function(simplify_constants(f), (x, y))
        self.assertAlmostEqual(float(simplified([xv, yv])), expected, places=4)

    def test_parameters_and_independent_variable(self) -> None:
        from eqjax import build_function

        x, a, b = self.x, self.a, self.b
        t = Variable("t")
        fn = build_function(a * x + b, (x,), (a, b))
        self.assertEqual(fn.arg_names, ("u", "p"))
        self.assertAlmostEqual(float(fn([2.0], [3.0, 1.0])), 7.0, places=5)

        timed = build_function(t * x, (x,), (), iv=t)
        self.assertEqual(timed.arg_names, ("u", "p", "t"))
        self.assertAlmostEqual(float(timed([2.0], [], 3.0)), 6.0, places=5)

        grouped = build_function(a * x - b, (x,), (a,), (b,))
        self.assertEqual(grouped.arg_names, ("u", "p1", "p2"))
        self.assertAlmostEqual(float(grouped([2.0], [3.0], [1.0])), 5.0, places=5)

    def test_vector_and_matrix_targets(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        vec = build_function([x + y, x * y], (x, y))([1.0, 2.0])
        self.assertEqual(vec.shape, (2,))
        self.assertVectorAlmostEqual(vec, [3.0, 2.0])

        mat = build_function(jacobian([x * y, x + y], (x, y)), (x, y))([1.0, 2.0])
        self.assertEqual(mat.shape, (2, 2))
        self.assertVectorAlmostEqual(mat.reshape(-1), [2.0, 1.0, 1.0, 1.0])

        empty = build_function([], (x,))([1.0])
        self.assertEqual(empty.shape, (0,))

    def test_sparse_target_matches_dense(self) -> None:
        from jax.experimental import sparse

        from eqjax import build_function

        x, y = self.x, self.y
        exprs = [x * y, y * y]
        sp = build_function(sparsejacobian(exprs, (x, y)), (x, y))([3.0, 2.0])
        self.assertIsInstance(sp, sparse.BCOO)
        self.assertEqual(sp.shape, (2, 2))
        self.assertEqual(sp.nse, 3)
        dense = build_function(jacobian(exprs, (x, y)), (x, y))([3.0, 2.0])
        self.assertVectorAlmostEqual(sp.todense().reshape(-1), [float(v) for v in dense.reshape(-1)])

    def test_derivative_round_trip_matches_autodiff(self) -> None:
        import jax.numpy as jnp

        from eqjax import build_function

        x, y = self.x, self.y
        f = x * x * y + sin(y)
        point = jnp.asarray([1.5, 0.5])
        symbolic = build_function(list(gradient(f, (x, y))), (x, y))(point)
        autodiff = build_function(f, (x, y)).grad()(point)
        self.assertVectorAlmostEqual(symbolic, [float(v) for v in autodiff])
        self.assertVectorAlmostEqual(symbolic, [2 * 1.5 * 0.5, 1.5**2 + math.cos(0.5)])

    def test_jit_and_trace(self) -> None:
        import jax.numpy as jnp

        from eqjax import build_function

        x, y = self.x, self.y
        fn = build_function([sin(x), x * y], (x, y))
        point = jnp.asarray([0.25, 4.0])
        jitted = fn.jit()
        self.assertVectorAlmostEqual(jitted(point), [float(v) for v in fn(point)])
        fn.jit()
        self.assertEqual(fn.transform_cache_stats()["jit_hits"], 1)
        self.assertIn("sin", str(fn.trace(point)))

    def test_grad_needs_scalar_target(self) -> None:
        from eqjax import build_function

        with self.assertRaises(EqShapeError):
            build_function([self.x], (self.x,)).grad()

    def test_named_constants_are_substituted(self) -> None:
        from eqjax import build_function

        g = named_constant("g", 9.81)
        self.assertAlmostEqual(float(build_function(g * self.x, (self.x,))([2.0])), 19.62, places=4)
        overridden = build_function(g * self.x, (self.x,), defaults={g: 10.0})
        self.assertAlmostEqual(float(overridden([2.0])), 20.0, places=5)
        bound = build_function(g * self.x, (self.x,), (g,))
        self.assertAlmostEqual(float(bound([2.0], [3.0])), 6.0, places=5)

        with self.assertRaises(ValidationError):
            build_function(named_constant("h") * self.x, (self.x,))

    def test_binding_errors(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        with self.assertRaises(BindingError):
            build_function(x * y, (x,))
        with self.assertRaises(BindingError):
            build_function(x, (x,), (x,))
        with self.assertRaises(BindingError):
            build_function(x, (x,), (), iv=x)

    def test_shape_errors(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        with self.assertRaises(EqShapeError):
            build_function([[x, y], [x]], (x, y))
        with self.assertRaises(EqShapeError):
            build_function([x, [y]], (x, y))
        fn = build_function(x + y, (x, y))
        with self.assertRaises(EqShapeError):
            fn([1.0])
        with self.assertRaises(TypeError):
            fn([1.0, 2.0], [])

    def test_unlowerable_operator(self) -> None:
        from eqjax import build_function

        t = Variable("t")
        with self.assertRaises(UnsupportedOperatorError) as ctx:
            build_function(Differential(t)(self.x), (self.x,), iv=t)
        self.assertEqual(ctx.exception.stage, "code generation")
        with self.assertRaises(UnsupportedOperatorError):
            build_function(Operation("mystery", (self.x,)), (self.x,))

    def test_inplace_vector_and_matrix(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        fn = build_function([x + y, x * y], (x, y), inplace=True)
        self.assertEqual(fn.arg_names, ("out", "u"))
        out = [0.0, 0.0]
        self.assertIsNone(fn(out, [1.0, 2.0]))
        self.assertVectorAlmostEqual(out, [3.0, 2.0])

        jac = build_function(jacobian([x * y, x + y], (x, y)), (x, y), inplace=True)
        buf = [[0.0, 0.0], [0.0, 0.0]]
        jac.jit()(buf, [1.0, 2.0])
        self.assertVectorAlmostEqual(buf[0] + buf[1], [2.0, 1.0, 1.0, 1.0])

        with self.assertRaises(EqShapeError):
            fn([0.0], [1.0, 2.0])
        with self.assertRaises(EqShapeError):
            build_function(x, (x,), inplace=True)

    def test_common_subexpressions_are_shared(self) -> None:
        from eqjax import lower_to_ir

        x, y = self.x, self.y
        ir = lower_to_ir(x * y + x * y, (x, y), use_cache=False)
        self.assertEqual(sum(1 for node in ir.nodes if node.op == "op:*"), 1)
        self.assertEqual(sum(1 for node in ir.nodes if node.op == "arg"), 2)

    def test_lowering_cache(self) -> None:
        from eqjax import lower_to_ir, lowering_cache_stats

        lowering_cache_stats(reset=True)
        x, y = self.x, self.y
        first = lower_to_ir(x - y * 7, (x, y))
        second = lower_to_ir(x - y * 7, (x, y))
        stats = lowering_cache_stats()
        if stats["enabled"]:
            self.assertIs(first, second)
            self.assertEqual(stats["hits"], 1)
            self.assertEqual(stats["misses"], 1)
        lowering_cache_stats(reset=True)

    def test_custom_operator(self) -> None:
        import jax
        import jax.numpy as jnp

        from eqjax import build_function, derivative
        from eqjax.operators import register_operator, unregister_operator

        register_operator(
            "softplus",
            arities=(1,),
            impl=jax.nn.softplus,
            partial=lambda args, i: 1 / (1 + Operation("exp", (-args[0],))),
        )
        self.addCleanup(unregister_operator, "softplus")

        x = self.x
        f = Operation("softplus", (2 * x,))
        fn = build_function(f, (x,), use_cache=False)
        self.assertAlmostEqual(float(fn([0.5])), math.log1p(math.exp(1.0)), places=4)

        df = build_function(derivative(f, x), (x,), use_cache=False)
        point = jnp.asarray([0.5])
        self.assertAlmostEqual(float(df(point)), float(fn.grad()(point)[0]), places=4)

        gen = build_function(f, (x,), expression=True, use_cache=False)
        self.assertIn("_op_softplus_", gen.source)
        self.assertAlmostEqual(float(gen.compile()([0.5])), float(fn([0.5])), places=5)

    def test_custom_operators_with_similar_tags(self) -> None:
        from eqjax import build_function
        from eqjax.operators import register_operator, unregister_operator

        register_operator("a-b", arities=(1,), impl=lambda v: v + 1.0)
        self.addCleanup(unregister_operator, "a-b")
        register_operator("a_b", arities=(1,), impl=lambda v: v * 10.0)
        self.addCleanup(unregister_operator, "a_b")

        x = self.x
        f = Operation("a-b", (x,)) + Operation("a_b", (x,))
        self.assertAlmostEqual(float(build_function(f, (x,), use_cache=False)([2.0])), 23.0, places=5)
        gen = build_function(f, (x,), expression=True, use_cache=False)
        self.assertAlmostEqual(float(gen.compile()([2.0])), 23.0, places=5)

    def test_constant_types_stay_distinct(self) -> None:
        import jax.numpy as jnp

        from eqjax import build_function, lower_to_ir

        x = self.x
        real = build_function(x * Constant(2), (x,))
        cplx = build_function(x * Constant(2 + 0j), (x,))
        self.assertIsNot(real.ir, cplx.ir)
        self.assertFalse(jnp.iscomplexobj(real([1.5])))
        self.assertTrue(jnp.iscomplexobj(cplx([1.5])))
        self.assertAlmostEqual(complex(cplx([1.5])), 3 + 0j, places=5)

        ir = lower_to_ir(x * Constant(2) + x * Constant(2.0), (x,), use_cache=False)
        self.assertEqual(sum(1 for node in ir.nodes if node.op == "const"), 2)

    def test_symbolic_constant_defaults(self) -> None:
        from eqjax import build_function

        g, h = named_constant("g"), named_constant("h", 3.0)
        fn = build_function(g * self.x, (self.x,), defaults={g: 2 * h})
        self.assertAlmostEqual(float(fn([2.0])), 12.0, places=5)
        bound = build_function(g * self.x, (self.x,), (h,), defaults={g: 2 * h})
        self.assertAlmostEqual(float(bound([2.0], [5.0])), 20.0, places=5)

        with self.assertRaises(ValidationError):
            build_function(g * self.x, (self.x,), defaults={g: "fast"})
        with self.assertRaises(ValidationError):
            build_function(g * self.x, (self.x,), defaults={g: h, h: g})

    def test_scalar_arguments(self) -> None:
        from eqjax import build_function

        x, a = self.x, self.a
        gam = Variable("gam", kind="parameter")
        t = Variable("t")
        f = gam * x + a * t
        fn = build_function(f, (x,), (a,), iv=t, scalars=(gam,))
        self.assertEqual(fn.arg_names, ("u", "p", "gam", "t"))
        self.assertAlmostEqual(float(fn([2.0], [3.0], 0.5, 1.0)), 4.0, places=5)

        gen = build_function(f, (x,), (a,), iv=t, scalars=(gam,), expression=True)
        self.assertIn("def generated_function(u, p, gam, t):", gen.source)
        self.assertAlmostEqual(float(gen.compile()([2.0], [3.0], 0.5, 1.0)), 4.0, places=5)

        with self.assertRaises(BindingError):
            build_function(x, (x,), scalars=(x,))
        with self.assertRaises(BindingError):
            build_function(x, (x,), scalars=(Variable("u"),))
        with self.assertRaises(BindingError):
            build_function(x, (x,), scalars=(Variable("out"),))

    def test_long_sum(self) -> None:
        from eqjax import build_function

        xs = variables(" ".join(f"v{i}" for i in range(1200)))
        total = sum(xs[1:], xs[0])
        values = [1.0] * len(xs)
        self.assertAlmostEqual(float(build_function(total, xs, use_cache=False)(values)), 1200.0, places=3)
        gen = build_function(total, xs, expression=True, use_cache=False)
        self.assertAlmostEqual(float(gen.compile()(values)), 1200.0, places=3)


@unittest.skipUnless(JAX_AVAILABLE, "jax is not installed")
class GeneratedSourceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.x, self.y = variables("x y")
        (self.a,) = parameters("a")

    def test_source_compiles_to_equivalent_function(self) -> None:
        from eqjax import GeneratedFunction, build_function

        x, y, a = self.x, self.y, self.a
        targets = [x + a * y, x * y]
        gen = build_function(targets, (x, y), (a,), expression=True, name="residuals")
        self.assertIsInstance(gen, GeneratedFunction)
        self.assertIn("def residuals(u, p):", gen.source)
        self.assertIn("x = u[0]", gen.source)
        self.assertIn("a = p[0]", gen.source)

        compiled = gen.compile()
        direct = build_function(targets, (x, y), (a,))
        for got, want in zip(compiled([1.0, 2.0], [0.5]), direct([1.0, 2.0], [0.5])):
            self.assertAlmostEqual(float(got), float(want), places=5)

    def test_source_for_timed_function(self) -> None:
        from eqjax import build_function

        t = Variable("t")
        gen = build_function([self.x * t], (self.x,), (self.a,), iv=t, expression=True, name="rhs")
        self.assertTrue(gen.source.startswith("def rhs(u, p, t):"))
        self.assertAlmostEqual(float(gen.compile()([2.0], [0.0], 1.5)[0]), 3.0, places=5)

    def test_inplace_source(self) -> None:
        from eqjax import build_function

        x, y = self.x, self.y
        gen = build_function(jacobian([x * y], (x, y)), (x, y), expression=True, inplace=True, name="jac")
        self.assertIn("def jac(out, u):", gen.source)
        self.assertIn("out[0][1] = ", gen.source)
        buf = [[0.0, 0.0]]
        self.assertIsNone(gen.compile()(buf, [3.0, 4.0]))
        self.assertAlmostEqual(float(buf[0][0]), 4.0, places=5)
        self.assertAlmostEqual(float(buf[0][1]), 3.0, places=5)

    def test_sparse_source(self) -> None:
        from jax.experimental import sparse

        from eqjax import build_function

        x, y = self.x, self.y
        gen = build_function(sparsejacobian([x * y, y], (x, y)), (x, y), expression=True)
        result = gen.compile()([3.0, 4.0])
        self.assertIsInstance(result, sparse.BCOO)
        dense = result.todense()
        self.assertAlmostEqual(float(dense[0, 0]), 4.0, places=5)
        self.assertAlmostEqual(float(dense[0, 1]), 3.0, places=5)
        self.assertAlmostEqual(float(dense[1, 0]), 0.0, places=5)
        self.assertAlmostEqual(float(dense[1, 1]), 1.0, places=5)

    def test_non_finite_literals(self) -> None:
        from eqjax import build_function

        gen = build_function(self.x + Constant(float("inf")), (self.x,), expression=True)
        self.assertIn("float('inf')", gen.source)
        self.assertTrue(math.isinf(float(gen.compile()([1.0]))))

    def test_invalid_function_name(self) -> None:
        from eqjax import build_function

        with self.assertRaises(ValueError):
            build_function(self.x, (self.x,), expression=True, name="not valid")


if __name__ == "__main__":
    unittest.main()
