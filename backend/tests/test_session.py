import asyncio

from clinic_view.core.errors import ClinicApiError, ErrorKind
from clinic_view.models.views import FetchStatus
from clinic_view.services.degradation import FetchOutcome, collection
from clinic_view.services.session import SessionLifecycle, SessionState


class View:
    def __init__(self):
        self.cancelled = 0

    def cancel(self):
        self.cancelled += 1


def test_logout_cancels_views_and_returns_to_active():
    session = SessionLifecycle()
    view = View()
    session.register(view)
    seen = {}

    async def round_trip():
        seen["state"] = session.state
        seen["can_issue"] = session.can_issue()

    assert asyncio.run(session.logout(round_trip)) is True
    assert seen == {"state": SessionState.LOGGING_OUT, "can_issue": False}
    assert view.cancelled == 1
    assert session.state is SessionState.ACTIVE
    assert session.can_issue()


def test_logout_returns_to_active_when_the_round_trip_fails():
    session = SessionLifecycle()

    async def round_trip():
        raise ClinicApiError(ErrorKind.TRANSPORT, "down", 503)

    assert asyncio.run(session.logout(round_trip)) is True
    assert session.state is SessionState.ACTIVE


def test_only_one_logout_at_a_time():
    session = SessionLifecycle()
    assert session.begin_logout() is True
    assert session.begin_logout() is False

    async def round_trip():
        raise AssertionError("must not run")

    assert asyncio.run(session.logout(round_trip)) is False
    session.end_logout()
    assert session.can_issue()


def test_degraded_outcomes_fold_as_empty():
    for status in (FetchStatus.ERROR, FetchStatus.DISABLED, FetchStatus.SKIPPED, FetchStatus.CANCELLED, FetchStatus.PENDING):
        outcome = FetchOutcome(key="plans", status=status, value=None, empty=list)
        assert collection(outcome) == []
    # A refetch in flight keeps showing the previous value
    refreshing = FetchOutcome(key="plans", status=FetchStatus.PENDING, value=["T1"], empty=list, has_value=True)
    assert collection(refreshing) == ["T1"]
