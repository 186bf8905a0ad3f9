from servetest.evals.agentic import agentic_evals
from servetest.evals.base import EvalCase, EvalContext, EvalFailure, Result
from servetest.evals.basic import basic_evals
from servetest.evals.reasoning import reasoning_evals
from servetest.evals.schema import schema_evals
from servetest.evals.tools import tool_evals

__all__ = [
    "EvalCase",
    "EvalContext",
    "EvalFailure",
    "Result",
    "all_evals",
]


def all_evals() -> list[EvalCase]:
    """Return a fresh instance of every registered eval, grouped by category."""
    return [
        *basic_evals(),
        *reasoning_evals(),
        *tool_evals(),
        *schema_evals(),
        *agentic_evals(),
    ]
