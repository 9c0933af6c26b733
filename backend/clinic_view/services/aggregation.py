# backend/clinic_view/services/aggregation.py
"""
Folds over linked snapshots.

Every function here is pure and recomputes from scratch; nothing is cached
or accumulated between calls.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from clinic_view.models.records import (
    APPOINTMENT_CANCELLED,
    APPOINTMENT_DONE,
    APPOINTMENT_SCHEDULED,
    COST_PAID,
    COST_WAIT,
    PHASE_IN_PROGRESS,
    PLAN_IN_PROGRESS,
    Appointment,
    CostRecord,
    Examination,
    LineItem,
    TreatmentPhase,
    TreatmentPlan,
)
from clinic_view.models.views import AppointmentBuckets, Insights, LedgerEntry, PatientRollup

PAID_STATUSES = frozenset({COST_PAID, "done"})
CANCELLED_STATUSES = frozenset({"cancel", APPOINTMENT_CANCELLED.lower(), "canceled"})


# Costs

def line_item_cost(item: LineItem) -> float:
    """Trust an explicit non-zero stored cost, otherwise recompute."""
    if item.cost is not None and item.cost > 0:
        return item.cost
    return item.quantity * item.unit_price


def _line_items(record) -> List[LineItem]:
    return list(record.services) + list(record.prescriptions)


def phase_cost(phase: TreatmentPhase) -> float:
    items = _line_items(phase)
    if items:
        return sum(line_item_cost(item) for item in items)
    return phase.cost


def examination_cost(exam: Examination) -> float:
    items = _line_items(exam)
    if items:
        return sum(line_item_cost(item) for item in items)
    return exam.total_cost


def plan_total_cost(plan: TreatmentPlan, phases: Sequence[TreatmentPhase]) -> float:
    if phases:
        return sum(phase_cost(phase) for phase in phases)
    return plan.total_cost


def plan_costs(
    plans: Iterable[TreatmentPlan], phases_by_plan: Mapping[str, Sequence[TreatmentPhase]]
) -> Dict[str, float]:
    return {plan.id: plan_total_cost(plan, phases_by_plan.get(plan.id) or []) for plan in plans}


# Revenue and phases

def is_paid(status: Optional[str]) -> bool:
    return bool(status) and status.strip().lower() in PAID_STATUSES


def paid_revenue(costs: Iterable[Optional[CostRecord]]) -> float:
    return sum(cost.total_cost for cost in costs if cost is not None and is_paid(cost.status))


def active_phases(phases_by_plan: Mapping[str, Sequence[TreatmentPhase]]) -> List[TreatmentPhase]:
    # Case-sensitive: only the canonical spelling counts
    return [phase for phases in phases_by_plan.values() for phase in phases if phase.status == PHASE_IN_PROGRESS]


def active_phase_count(phases_by_plan: Mapping[str, Sequence[TreatmentPhase]]) -> int:
    return len(active_phases(phases_by_plan))


# Appointments

def _status(value: Optional[str]) -> str:
    return (value or "").strip().lower()


def is_scheduled(appointment: Appointment) -> bool:
    return _status(appointment.status) == APPOINTMENT_SCHEDULED.lower()


def bucket_appointments(appointments: Iterable[Appointment]) -> AppointmentBuckets:
    buckets = AppointmentBuckets()
    for appointment in appointments:
        status = _status(appointment.status)
        if status == APPOINTMENT_SCHEDULED.lower():
            buckets.scheduled.append(appointment)
        elif status == APPOINTMENT_DONE.lower():
            buckets.done.append(appointment)
        elif status in CANCELLED_STATUSES:
            buckets.cancelled.append(appointment)
    for bucket in (buckets.scheduled, buckets.done, buckets.cancelled):
        bucket.sort(key=lambda a: (a.scheduled_at or datetime.min, a.id), reverse=True)
    return buckets


def next_appointment(appointments: Iterable[Appointment], now: datetime) -> Optional[Appointment]:
    """Earliest still-scheduled appointment strictly after ``now``."""
    future = [
        a for a in appointments
        if is_scheduled(a) and a.scheduled_at is not None and a.scheduled_at > now
    ]
    if not future:
        return None
    return min(future, key=lambda a: (a.scheduled_at, a.id))


def merge_appointments(*collections: Iterable[Appointment]) -> List[Appointment]:
    """Concatenate appointment lists fetched per doctor, keeping the first copy of each id."""
    seen = set()
    merged = []
    for appointments in collections:
        for appointment in appointments:
            if appointment.id not in seen:
                seen.add(appointment.id)
                merged.append(appointment)
    return merged


# Per-patient rollup

def patient_rollups(
    examinations: Iterable[Tuple[Optional[str], Examination]],
    plans: Iterable[Tuple[Optional[str], TreatmentPlan]],
    appointments: Iterable[Appointment],
    phases_by_plan: Mapping[str, Sequence[TreatmentPhase]],
    now: datetime,
) -> List[PatientRollup]:
    """
    Roll examinations and plans up per patient.

    ``examinations`` and ``plans`` are ``(patient_id, record)`` pairs as
    resolved by the linker; records without a patient are left out. Patients
    are ordered by most recent examination first.
    """
    rollups: Dict[str, PatientRollup] = {}

    def rollup_for(patient_id: str, name: Optional[str]) -> PatientRollup:
        rollup = rollups.get(patient_id)
        if rollup is None:
            rollup = rollups[patient_id] = PatientRollup(patient_id=patient_id)
        if name and not rollup.patient_name:
            rollup.patient_name = name
        return rollup

    for patient_id, exam in examinations:
        if not patient_id:
            continue
        rollup = rollup_for(patient_id, exam.patient_name)
        rollup.total_examinations += 1
        rollup.total_cost += examination_cost(exam)
        if exam.created_at is not None and (
            rollup.last_examination_at is None
            or (exam.created_at, exam.id) > (rollup.last_examination_at, rollup.last_examination.id)
        ):
            rollup.last_examination = exam
            rollup.last_examination_at = exam.created_at
        elif rollup.last_examination is None:
            rollup.last_examination = exam

    for patient_id, plan in plans:
        if not patient_id:
            continue
        rollup = rollup_for(patient_id, plan.patient_name)
        rollup.total_plans += 1
        rollup.total_cost += plan_total_cost(plan, phases_by_plan.get(plan.id) or [])
        if _status(plan.status) == PLAN_IN_PROGRESS.lower():
            rollup.active_plans += 1

    by_patient: Dict[str, List[Appointment]] = {}
    for appointment in appointments:
        if appointment.patient_id in rollups:
            by_patient.setdefault(appointment.patient_id, []).append(appointment)
            if appointment.patient_name:
                rollup_for(appointment.patient_id, appointment.patient_name)
    for patient_id, patient_appointments in by_patient.items():
        rollups[patient_id].next_appointment = next_appointment(patient_appointments, now)

    return sorted(
        rollups.values(),
        key=lambda r: (r.last_examination_at or datetime.min, r.patient_id),
        reverse=True,
    )


# Payment ledger

def payment_ledger(
    plans: Iterable[TreatmentPlan],
    phases_by_plan: Mapping[str, Sequence[TreatmentPhase]],
    examinations: Iterable[Examination],
    costs: Mapping[str, Optional[CostRecord]],
) -> List[LedgerEntry]:
    """
    Billable lines: examinations with a cost record, every phase with a positive
    cost, and plans without phases that carry a total of their own.
    """
    entries: List[LedgerEntry] = []

    for exam in examinations:
        cost = costs.get(exam.id)
        if cost is None:
            continue
        entries.append(
            LedgerEntry(
                id=exam.id,
                kind="examination",
                description=exam.diagnosis,
                amount=cost.total_cost or examination_cost(exam),
                status=cost.status or COST_WAIT,
                date=exam.created_at,
            )
        )

    for plan in plans:
        phases = phases_by_plan.get(plan.id) or []
        if phases:
            for index, phase in enumerate(phases, start=1):
                amount = phase_cost(phase)
                if amount <= 0:
                    continue
                cost = costs.get(phase.id)
                entries.append(
                    LedgerEntry(
                        id=phase.id,
                        kind="phase",
                        plan_id=plan.id,
                        description=f"{plan.title or plan.id} - phase {phase.phase_number or index}",
                        amount=amount,
                        status=(cost.status if cost is not None and cost.status else phase.payment_status) or COST_WAIT,
                        date=phase.start_date or plan.created_at,
                    )
                )
        elif plan.total_cost > 0:
            cost = costs.get(plan.id)
            entries.append(
                LedgerEntry(
                    id=plan.id,
                    kind="plan",
                    plan_id=plan.id,
                    description=plan.title,
                    amount=plan.total_cost,
                    status=(cost.status if cost is not None and cost.status else None) or COST_WAIT,
                    date=plan.created_at,
                )
            )
    return entries


def insights(
    appointments: Sequence[Appointment],
    examinations: Sequence[Examination],
    plans: Sequence[TreatmentPlan],
    phases_by_plan: Mapping[str, Sequence[TreatmentPhase]],
    costs: Iterable[Optional[CostRecord]],
    patient_ids: Iterable[Optional[str]],
) -> Insights:
    buckets = bucket_appointments(appointments)
    return Insights(
        total_appointments=len(appointments),
        done_appointments=len(buckets.done),
        cancelled_appointments=len(buckets.cancelled),
        total_examinations=len(examinations),
        total_plans=len(plans),
        active_phases=active_phase_count(phases_by_plan),
        paid_revenue=paid_revenue(costs),
        unique_patients=len({pid for pid in patient_ids if pid}),
    )
