"""Structured error types for simplification, differentiation and codegen."""

from __future__ import annotations

from dataclasses import dataclass


class EqjaxError(Exception):
    """Base class for structured eqjax errors."""


class ValidationError(EqjaxError, ValueError):
    """Malformed input rejected when a system or expression is constructed."""


@dataclass(frozen=True)
class UnsupportedOperatorError(EqjaxError):
    """An operator tag has no rule for the requested transformation."""

    op: str
    stage: str
    arity: int | None = None

    def __str__(self) -> str:
        if self.arity is None:
            return f"Unsupported operator {self.op!r} in {self.stage}"
        return f"Unsupported operator {self.op!r} with {self.arity} argument(s) in {self.stage}"


class EqShapeError(EqjaxError):
    """Binding lists and expression dimensions do not agree."""


class BindingError(EqjaxError):
    """A symbol is unbound, or bound more than once, during code generation."""


class SimplificationError(EqjaxError):
    """Rewriting did not reach a fixed point within the configured pass limit."""
