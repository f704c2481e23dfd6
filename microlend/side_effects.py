"""
Advisory side effects.

Notifications, transaction-history rows and milestone checks must never undo
or block the operation that triggered them. run_advisory executes such a step,
wraps a failure in AdvisorySideEffectFailure, logs it at WARNING and reports
it back as a short warning string.
"""

import logging
from typing import Any, Callable, List, Optional

from .errors import AdvisorySideEffectFailure
from .logging_config import log_action


logger = logging.getLogger("microlend.side_effects")


def run_advisory(description: str, func: Callable[..., Any], *args,
                 warnings: Optional[List[str]] = None,
                 loan_id: Optional[str] = None, **kwargs) -> Optional[str]:
    """
    Run an advisory step and swallow its failure.

    Args:
        description: Human readable name of the step, used in the log and warning
        func: Callable to run
        warnings: Optional list the warning string is appended to on failure
        loan_id: Loan the step concerns, for the log record

    Returns:
        None on success, otherwise the warning string
    """
    try:
        func(*args, **kwargs)
        return None
    except Exception as exc:
        failure = AdvisorySideEffectFailure(description, exc)
        failure.__cause__ = exc
        warning = str(failure)
        log_action(
            logger, "warning", warning,
            loan_id=loan_id, action=failure.code,
            extra={"step": description, "error_type": type(exc).__name__},
            exc_info=failure,
        )
        if warnings is not None:
            warnings.append(warning)
        return warning
