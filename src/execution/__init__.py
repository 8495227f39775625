"""Rule action execution."""

from execution.executor import ActionExecutor
from execution.handlers import ActionContext, ActionError, ActionHandlers, extraction_hint
from execution.params import ActionParameterError, parse_action
from execution.results import ActionOutcome, RunResult

__all__ = [
    "ActionContext",
    "ActionError",
    "ActionExecutor",
    "ActionHandlers",
    "ActionOutcome",
    "ActionParameterError",
    "RunResult",
    "extraction_hint",
    "parse_action",
]
