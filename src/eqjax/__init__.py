"""eqjax public API."""

from .derivatives import (
    SparseMatrix,
    derivative,
    differentiate,
    expand_derivatives,
    gradient,
    hessian,
    hessian_sparsity,
    jacobian,
    jacobian_sparsity,
    sparsehessian,
    sparsejacobian,
)
from .errors import (
    BindingError,
    EqjaxError,
    EqShapeError,
    SimplificationError,
    UnsupportedOperatorError,
    ValidationError,
)
from .expressions import (
    Constant,
    Differential,
    Equation,
    Expression,
    Inequality,
    Operation,
    Variable,
    canonical_form,
    children,
    collect_constants,
    get_variables,
    is_constant,
    is_operation,
    is_variable,
    iter_postorder,
    named_constant,
    parameters,
    subs_constants,
    substitute,
    variables,
)
from .operators import lookup_operator, register_operator
from .simplify import simplify_constants

try:
    from .codegen import (
        CompiledFunction,
        FunctionIR,
        GeneratedFunction,
        build_function,
        evaluate_ir,
        lower_to_ir,
        lowering_cache_stats,
    )
    from .systems import ConstraintsSystem, ODESystem, OptimizationSystem, SystemCounter
except ModuleNotFoundError as exc:
    if exc.name and exc.name.startswith("jax"):
        _jax_import_error = exc

        def build_function(*_args, **_kwargs):
            raise ModuleNotFoundError(
                "jax is required for build_function(). Install runtime deps first."
            ) from _jax_import_error

        def lower_to_ir(*_args, **_kwargs):
            raise ModuleNotFoundError(
                "jax is required for lower_to_ir(). Install runtime deps first."
            ) from _jax_import_error

        def evaluate_ir(*_args, **_kwargs):
            raise ModuleNotFoundError(
                "jax is required for evaluate_ir(). Install runtime deps first."
            ) from _jax_import_error

        def lowering_cache_stats(*_args, **_kwargs):
            raise ModuleNotFoundError(
                "jax is required for lowering_cache_stats(). Install runtime deps first."
            ) from _jax_import_error

        class _RequiresJax:  # pragma: no cover - import-time fallback
            def __init__(self, *_args, **_kwargs) -> None:
                raise ModuleNotFoundError(
                    f"jax is required for {type(self).__name__}(). Install runtime deps first."
                ) from _jax_import_error

        class CompiledFunction(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class FunctionIR(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class GeneratedFunction(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class ConstraintsSystem(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class OptimizationSystem(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class ODESystem(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

        class SystemCounter(_RequiresJax):  # pragma: no cover - import-time fallback
            pass

    else:
        raise

__all__ = [
    "Constant",
    "Variable",
    "Operation",
    "Expression",
    "Equation",
    "Inequality",
    "Differential",
    "variables",
    "parameters",
    "named_constant",
    "is_constant",
    "is_operation",
    "is_variable",
    "children",
    "canonical_form",
    "get_variables",
    "iter_postorder",
    "substitute",
    "collect_constants",
    "subs_constants",
    "register_operator",
    "lookup_operator",
    "simplify_constants",
    "differentiate",
    "derivative",
    "expand_derivatives",
    "gradient",
    "jacobian",
    "sparsejacobian",
    "hessian",
    "sparsehessian",
    "jacobian_sparsity",
    "hessian_sparsity",
    "SparseMatrix",
    "build_function",
    "lower_to_ir",
    "evaluate_ir",
    "lowering_cache_stats",
    "CompiledFunction",
    "FunctionIR",
    "GeneratedFunction",
    "ConstraintsSystem",
    "OptimizationSystem",
    "ODESystem",
    "SystemCounter",
    "EqjaxError",
    "ValidationError",
    "UnsupportedOperatorError",
    "EqShapeError",
    "BindingError",
    "SimplificationError",
]
