# backend/clinic_view/services/view_service.py

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

import httpx

from clinic_view.core.config import settings
from clinic_view.core.errors import CapabilityDeniedError, ClinicApiError, SessionClosingError, WriteFailedError
from clinic_view.models.records import Appointment, CostRecord
from clinic_view.models.views import DashboardView, PatientRollup, PatientView, Readiness
from clinic_view.services import aggregation
from clinic_view.services.api_client import ClinicApiClient
from clinic_view.services.capabilities import Capability, CapabilityGate
from clinic_view.services.linker import RecordLinker, phases_for_plans
from clinic_view.services.orchestrator import (
    DependentFetch,
    FetchDescriptor,
    FetchPlan,
    QueryOrchestrator,
    SnapshotMemo,
)
from clinic_view.services.session import SessionLifecycle

logger = logging.getLogger(__name__)

DOCTOR_VIEW = "doctor"


class ViewSession:
    """Everything one bearer token owns: its gate, lifecycle, backend client and open views."""

    def __init__(self, token: str, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.gate = CapabilityGate.from_token(token)
        self.lifecycle = SessionLifecycle()
        self.client = ClinicApiClient(token=token, transport=transport)
        self.views: Dict[str, QueryOrchestrator] = {}
        self.memo = SnapshotMemo()

    def orchestrator(self, name: str, plan_factory: Callable[[], FetchPlan]) -> QueryOrchestrator:
        orchestrator = self.views.get(name)
        if orchestrator is None:
            plan = plan_factory()
            disabled = plan.disabled(self.gate)
            if disabled:
                logger.info("View %s: %s disabled by missing capabilities", name, ", ".join(disabled))
            orchestrator = QueryOrchestrator(plan, self.gate, self.lifecycle)
            self.views[name] = orchestrator
            self.lifecycle.register(orchestrator)
        return orchestrator

    def invalidate(self, *patterns: str) -> List[str]:
        keys = set()
        for orchestrator in self.views.values():
            keys.update(orchestrator.invalidate(*patterns))
        return sorted(keys)

    def teardown(self) -> int:
        count = len(self.views)
        for orchestrator in self.views.values():
            orchestrator.cancel()
            self.lifecycle.unregister(orchestrator)
        self.views.clear()
        self.memo.clear()
        return count

    async def aclose(self) -> None:
        self.teardown()
        await self.client.aclose()


# In-memory store, keyed by bearer token
view_sessions: Dict[str, ViewSession] = {}


def get_or_create_session(token: str, transport: Optional[httpx.AsyncBaseTransport] = None) -> ViewSession:
    session = view_sessions.get(token)
    if session is None:
        session = ViewSession(token, transport=transport)
        view_sessions[token] = session
    return session


async def close_all_sessions() -> None:
    for token in list(view_sessions):
        await view_sessions.pop(token).aclose()


# Fetch plans

def _none() -> None:
    return None


def _plan_ids(snapshots: Mapping[str, Any]) -> List[str]:
    return [plan.id for plan in snapshots["plans"]]


def _examination_ids(snapshots: Mapping[str, Any]) -> List[str]:
    return [exam.id for exam in snapshots["examinations"]]


def _phase_ids(snapshots: Mapping[str, Any]) -> List[str]:
    return [phase.id for phases in snapshots["phases"].values() for phase in phases]


def _appointments(snapshots: Mapping[str, Any]) -> List[Appointment]:
    by_doctor = snapshots.get("appointments.by_doctor") or {}
    return aggregation.merge_appointments(
        snapshots.get("appointments.all") or [],
        snapshots.get("appointments.scheduled") or [],
        *(by_doctor[doctor_id] for doctor_id in sorted(by_doctor)),
    )


def _linker(snapshots: Mapping[str, Any]) -> RecordLinker:
    return RecordLinker(
        _appointments(snapshots),
        snapshots.get("examinations") or [],
        snapshots.get("plans") or [],
        heuristic=settings.ENABLE_HEURISTIC_LINKING,
    )


def _shared_fetches(client: ClinicApiClient) -> List[Any]:
    retries = settings.PRIMARY_RETRIES
    return [
        FetchDescriptor("appointments.all", lambda: client.list_appointments("all"), primary=True, retries=retries),
        FetchDescriptor(
            "appointments.scheduled", lambda: client.list_appointments("scheduled"), primary=True, retries=retries
        ),
        FetchDescriptor("examinations", client.list_examinations, primary=True, retries=retries),
        FetchDescriptor("plans", client.list_treatment_plans, primary=True),
        DependentFetch(
            "phases",
            parent="plans",
            loader=client.list_treatment_phases,
            select_ids=_plan_ids,
            capability=Capability.GET_ALL_TREATMENT_PHASES,
        ),
        DependentFetch(
            "costs.examinations", parent="examinations", loader=client.get_cost, select_ids=_examination_ids
        ),
        DependentFetch("costs.phases", parent="phases", loader=client.get_cost, select_ids=_phase_ids),
    ]


def _doctor_ids(snapshots: Mapping[str, Any]) -> List[str]:
    return [doctor.id for doctor in snapshots["doctors"]]


def _unlisted_doctor_ids(snapshots: Mapping[str, Any]) -> List[str]:
    listed = {doctor.id for doctor in snapshots["doctors"]}
    return [a.doctor_id for a in snapshots["appointments.all"] if a.doctor_id and a.doctor_id not in listed]


def _plan_nurse_ids(snapshots: Mapping[str, Any]) -> List[str]:
    return [plan.nurse_id for plan in snapshots["plans"] if plan.nurse_id]


def doctor_plan(client: ClinicApiClient) -> FetchPlan:
    return FetchPlan(
        [FetchDescriptor("profile", client.get_my_profile, empty=_none)]
        + _shared_fetches(client)
        + [
            FetchDescriptor("doctors", client.list_doctors, capability=Capability.GET_INFO_DOCTOR),
            FetchDescriptor("nurses", client.list_nurses, capability=Capability.PICK_NURSE),
            # Staff accounts see the appointments of every doctor they can pick
            DependentFetch(
                "appointments.by_doctor",
                parent="doctors",
                loader=client.list_appointments_by_doctor,
                select_ids=_doctor_ids,
                capability=Capability.PICK_DOCTOR,
            ),
            DependentFetch(
                "staff.doctors",
                parent="appointments.all",
                after=("doctors",),
                loader=client.get_doctor,
                select_ids=_unlisted_doctor_ids,
                capability=Capability.GET_INFO_DOCTOR,
            ),
            DependentFetch(
                "staff.nurses",
                parent="plans",
                loader=client.get_nurse,
                select_ids=_plan_nurse_ids,
                capability=Capability.GET_INFO_NURSE,
            ),
        ]
    )


def patient_plan(client: ClinicApiClient, patient_id: str) -> FetchPlan:
    def uncovered_appointments(snapshots: Mapping[str, Any]) -> List[str]:
        return _linker(snapshots).uncovered_appointment_ids(patient_id)

    def linked_examinations(snapshots: Mapping[str, Any]) -> List[str]:
        return _linker(snapshots).link_examinations(patient_id).examination_ids

    return FetchPlan(
        [
            FetchDescriptor(
                "patient",
                lambda: client.get_patient(patient_id),
                capability=Capability.GET_BASIC_INFO,
                empty=_none,
            )
        ]
        + _shared_fetches(client)
        + [
            DependentFetch(
                "examinations.by_appointment",
                parent="appointments.all",
                after=("appointments.scheduled", "examinations"),
                loader=client.get_examination_by_appointment,
                select_ids=uncovered_appointments,
                capability=Capability.GET_EXAMINATION_DETAIL,
            ),
            DependentFetch(
                "examinations.detail",
                parent="examinations",
                after=("appointments.all", "appointments.scheduled"),
                loader=client.get_examination,
                select_ids=linked_examinations,
                capability=Capability.GET_EXAMINATION_DETAIL,
            ),
        ]
    )


# Views

def _costs(snapshots: Mapping[str, Any]) -> Dict[str, Optional[CostRecord]]:
    return {**snapshots["costs.examinations"], **snapshots["costs.phases"]}


def compute_dashboard(snapshots: Mapping[str, Any], now: datetime) -> DashboardView:
    """Doctor dashboard from already degraded snapshots. Pure."""
    linker = _linker(snapshots)
    appointments = list(linker.appointments.values())
    examinations = snapshots["examinations"]
    plans = snapshots["plans"]
    phases_by_plan = phases_for_plans(plans, snapshots["phases"])
    costs = _costs(snapshots)

    exam_owners = [(linker.resolve_examination(exam)[0], exam) for exam in examinations]
    plan_owners = [(linker.resolve_plan(plan), plan) for plan in plans]
    patient_ids = [a.patient_id for a in appointments] + [pid for pid, _ in exam_owners + plan_owners]

    staff = {member.id: member for member in snapshots["doctors"] + snapshots["nurses"]}
    for details in (snapshots["staff.doctors"], snapshots["staff.nurses"]):
        staff.update({staff_id: member for staff_id, member in details.items() if member is not None})

    return DashboardView(
        readiness=Readiness(ready=True),
        profile=snapshots["profile"],
        staff=staff,
        buckets=aggregation.bucket_appointments(appointments),
        next_appointment=aggregation.next_appointment(appointments, now),
        active_phases=aggregation.active_phases(phases_by_plan),
        phases_by_plan=phases_by_plan,
        plan_costs=aggregation.plan_costs(plans, phases_by_plan),
        examination_costs={key: cost for key, cost in snapshots["costs.examinations"].items() if cost is not None},
        insights=aggregation.insights(
            appointments, examinations, plans, phases_by_plan, costs.values(), patient_ids
        ),
        patients=aggregation.patient_rollups(exam_owners, plan_owners, appointments, phases_by_plan, now),
        ledger=aggregation.payment_ledger(plans, phases_by_plan, examinations, costs),
    )


def compute_patient_view(snapshots: Mapping[str, Any], patient_id: str, now: datetime) -> PatientView:
    """Patient-centric view from already degraded snapshots. Pure."""
    linker = _linker(snapshots)
    link = linker.link_examinations(
        patient_id,
        reverse_lookups=snapshots["examinations.by_appointment"],
        details=snapshots["examinations.detail"],
    )
    examinations = link.examinations()
    plans = linker.link_plans(patient_id, link.examination_ids)
    phases_by_plan = phases_for_plans(plans, snapshots["phases"])
    appointments = sorted(
        linker.patient_appointments(patient_id),
        key=lambda a: (a.scheduled_at or datetime.min, a.id),
        reverse=True,
    )
    upcoming = aggregation.next_appointment(appointments, now)

    rollups = aggregation.patient_rollups(
        [(patient_id, exam) for exam in examinations],
        [(patient_id, plan) for plan in plans],
        appointments,
        phases_by_plan,
        now,
    )
    rollup = rollups[0] if rollups else PatientRollup(patient_id=patient_id, next_appointment=upcoming)
    patient = snapshots["patient"]
    if patient is not None and not rollup.patient_name:
        rollup.patient_name = patient.full_name

    return PatientView(
        patient_id=patient_id,
        readiness=Readiness(ready=True),
        patient=patient,
        examinations=link.exact,
        low_confidence_examinations=link.low_confidence,
        treatment_plans=plans,
        phases_by_plan=phases_by_plan,
        plan_costs=aggregation.plan_costs(plans, phases_by_plan),
        appointments=appointments,
        next_appointment=upcoming,
        rollup=rollup,
        ledger=aggregation.payment_ledger(plans, phases_by_plan, examinations, _costs(snapshots)),
    )


async def _render(session: ViewSession, name: str, plan_factory: Callable[[], FetchPlan], compute, now):
    if not session.lifecycle.can_issue():
        raise SessionClosingError(name)
    orchestrator = session.orchestrator(name, plan_factory)
    readiness = await orchestrator.wait_ready()
    if not readiness.timed_out:
        # Dependents (phases, costs, lookups) get the same budget once the page is unblocked
        await orchestrator.settle(timeout=orchestrator.ready_timeout)
    readiness = orchestrator.readiness()

    # Derived values depend on "now" through the next appointment; minute resolution
    identity = (orchestrator.versions(), now.replace(second=0, microsecond=0))
    view = session.memo.get_or_compute(name, identity, lambda: compute(orchestrator.snapshots()))
    return view.model_copy(update={"readiness": readiness, "fetches": orchestrator.states()})


async def build_doctor_dashboard(token: str, now: Optional[datetime] = None) -> DashboardView:
    session = get_or_create_session(token)
    now = now or datetime.now()
    return await _render(
        session,
        DOCTOR_VIEW,
        lambda: doctor_plan(session.client),
        lambda snapshots: compute_dashboard(snapshots, now),
        now,
    )


async def build_patient_view(token: str, patient_id: str, now: Optional[datetime] = None) -> PatientView:
    session = get_or_create_session(token)
    now = now or datetime.now()
    return await _render(
        session,
        f"patient:{patient_id}",
        lambda: patient_plan(session.client, patient_id),
        lambda snapshots: compute_patient_view(snapshots, patient_id, now),
        now,
    )


# Writes

async def _write(session: ViewSession, action: Callable[[], Awaitable[Any]], user_message: str) -> Any:
    if not session.lifecycle.can_issue():
        raise SessionClosingError(user_message)
    try:
        return await action()
    except ClinicApiError as exc:
        logger.warning("%s: %s", user_message, exc)
        raise WriteFailedError(user_message, exc) from exc


def _require(session: ViewSession, capability: Capability) -> None:
    if not session.gate.is_allowed(capability):
        raise CapabilityDeniedError(capability.value)


async def mark_appointment_notified(token: str, appointment_id: str) -> List[str]:
    """Flag the appointment as notified and mark every appointment collection stale."""
    session = get_or_create_session(token)
    _require(session, Capability.NOTIFICATION_APPOINTMENT)
    await _write(
        session,
        lambda: session.client.mark_appointment_notified(appointment_id),
        "Failed to mark the appointment as notified",
    )
    return session.invalidate("appointments.*")


async def update_payment(token: str, cost_id: str, payment_method: str, status: str) -> Optional[CostRecord]:
    session = get_or_create_session(token)
    _require(session, Capability.UPDATE_PAYMENT_COST)
    cost = await _write(
        session,
        lambda: session.client.update_payment(cost_id, payment_method, status),
        "Failed to update payment",
    )
    session.invalidate("costs.*")
    return cost


# Lifecycle

def teardown_views(token: str) -> int:
    session = view_sessions.get(token)
    if session is None:
        return 0
    count = session.teardown()
    logger.info("Tore down %d view(s)", count)
    return count


async def logout(token: str) -> None:
    """Cancel the session's views, log out at the backend and forget the session."""
    session = get_or_create_session(token)
    if not await session.lifecycle.logout(session.client.logout):
        raise SessionClosingError("logout already in progress")
    session.teardown()
    if view_sessions.get(token) is session:
        del view_sessions[token]
    await session.client.aclose()
