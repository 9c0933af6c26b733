# backend/clinic_view/services/degradation.py
"""
How failed, gated and still-loading fetches show up downstream.

Every fetch boundary turns a failure into "empty collection + error flag".
Nothing here raises: the folds always receive a list or a dict.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from clinic_view.core.errors import ClinicApiError
from clinic_view.models.views import FetchStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchOutcome:
    key: str
    status: FetchStatus
    value: Any
    empty: Callable[[], Any]
    has_value: bool = False
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return self.status is FetchStatus.ERROR


def collection(outcome: FetchOutcome) -> Any:
    """The value downstream folds see for this fetch."""
    if outcome.status is FetchStatus.OK or outcome.has_value:
        return outcome.value if outcome.value is not None else outcome.empty()
    # error, disabled, skipped, cancelled and first-load pending all fold as empty
    return outcome.empty()


def report_failure(key: str, exc: Exception) -> None:
    """Log a background fetch failure. These are never shown to the user."""
    if isinstance(exc, ClinicApiError):
        if exc.expected:
            logger.debug("Fetch %s degraded to empty (%s)", key, exc.kind.value)
        else:
            logger.warning("Fetch %s failed, degrading to empty: %s", key, exc)
    else:
        logger.error("Fetch %s raised %s, degrading to empty", key, type(exc).__name__, exc_info=exc)

