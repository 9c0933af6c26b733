# backend/clinic_view/services/linker.py
"""
Resolves which patient an examination, plan or phase belongs to.

Examinations often lack a patient id and must be linked through their
appointment, or found by asking the backend for the examination of each of
the patient's appointments. Stages, first match wins:

1. direct     the record carries the patient id
2. chain      its appointment belongs to the patient
3. reverse    examination-by-appointment lookups for the patient's
              appointments that no examination references
4. heuristic  only when 1-3 found nothing; returned separately as
              low-confidence matches and logged
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from clinic_view.models.records import Appointment, Examination, TreatmentPhase, TreatmentPlan
from clinic_view.models.views import LinkConfidence, LinkedExamination

logger = logging.getLogger(__name__)

STAGE_DIRECT = "direct"
STAGE_CHAIN = "appointment_chain"
STAGE_REVERSE = "reverse_lookup"
STAGE_SINGLE_UNLINKED = "single_unlinked"
STAGE_UNFILTERED_POOL = "unfiltered_pool"


@dataclass
class LinkResult:
    patient_id: str
    exact: List[LinkedExamination] = field(default_factory=list)
    low_confidence: List[LinkedExamination] = field(default_factory=list)

    @property
    def examination_ids(self) -> List[str]:
        return [linked.examination.id for linked in self.exact]

    def examinations(self, include_low_confidence: bool = False) -> List[Examination]:
        linked = self.exact + (self.low_confidence if include_low_confidence else [])
        return [item.examination for item in linked]


def _merge_appointments(appointments: Iterable[Appointment]) -> Dict[str, Appointment]:
    """Index by id. A copy that knows its patient wins over one that does not."""
    index: Dict[str, Appointment] = {}
    for appointment in appointments:
        current = index.get(appointment.id)
        if current is None or (not current.patient_id and appointment.patient_id):
            index[appointment.id] = appointment
    return index


class RecordLinker:
    def __init__(
        self,
        appointments: Iterable[Appointment],
        examinations: Iterable[Examination],
        plans: Iterable[TreatmentPlan] = (),
        heuristic: bool = True,
    ):
        self.appointments = _merge_appointments(appointments)
        self.examinations: Dict[str, Examination] = {}
        for exam in examinations:
            self.examinations.setdefault(exam.id, exam)
        self.plans: Dict[str, TreatmentPlan] = {}
        for plan in plans:
            self.plans.setdefault(plan.id, plan)
        self.heuristic = heuristic

    # Single-record resolution

    def appointment_patient(self, appointment_id: Optional[str]) -> Optional[str]:
        if not appointment_id:
            return None
        appointment = self.appointments.get(appointment_id)
        return appointment.patient_id if appointment is not None else None

    def resolve_examination(self, exam: Examination) -> Tuple[Optional[str], Optional[str]]:
        """Return ``(patient_id, stage)``; both None when the examination cannot be linked exactly."""
        via_appointment = self.appointment_patient(exam.appointment_id)
        if exam.patient_id:
            if via_appointment and via_appointment != exam.patient_id:
                logger.warning(
                    "Examination %s says patient %s but appointment %s belongs to %s; keeping the direct id",
                    exam.id,
                    exam.patient_id,
                    exam.appointment_id,
                    via_appointment,
                )
            return exam.patient_id, STAGE_DIRECT
        if via_appointment:
            return via_appointment, STAGE_CHAIN
        return None, None

    def resolve_plan(self, plan: TreatmentPlan) -> Optional[str]:
        if plan.patient_id:
            return plan.patient_id
        exam = self.examinations.get(plan.examination_id) if plan.examination_id else None
        if exam is not None:
            return self.resolve_examination(exam)[0]
        return None

    def resolve_phase(self, phase: TreatmentPhase) -> Optional[str]:
        plan = self.plans.get(phase.plan_id) if phase.plan_id else None
        return self.resolve_plan(plan) if plan is not None else None

    # Patient-centric queries

    def patient_appointments(self, patient_id: str) -> List[Appointment]:
        return [a for a in self.appointments.values() if a.patient_id == patient_id]

    def covered_appointment_ids(self) -> Set[str]:
        return {exam.appointment_id for exam in self.examinations.values() if exam.appointment_id}

    def uncovered_appointment_ids(self, patient_id: str) -> List[str]:
        """The patient's appointments that no loaded examination references; reverse-lookup targets."""
        covered = self.covered_appointment_ids()
        return [a.id for a in self.patient_appointments(patient_id) if a.id not in covered]

    def link_examinations(
        self,
        patient_id: str,
        reverse_lookups: Optional[Mapping[str, Optional[Examination]]] = None,
        details: Optional[Mapping[str, Optional[Examination]]] = None,
    ) -> LinkResult:
        """
        Link examinations to ``patient_id``.

        ``reverse_lookups`` maps appointment id to the examination the backend
        returned for it (None or absent when the lookup found nothing or failed).
        ``details`` maps examination id to a detail fetch; a detail replaces the
        summary of the same examination.
        """
        candidates: Dict[str, LinkedExamination] = {}
        matched_anyone = False
        exclusions = 0

        for exam in self.examinations.values():
            owner, stage = self.resolve_examination(exam)
            if owner is None:
                continue
            matched_anyone = True
            if owner == patient_id:
                candidates[exam.id] = LinkedExamination(examination=exam, stage=stage)
            else:
                exclusions += 1

        covered = self.covered_appointment_ids()
        for appointment_id in sorted(reverse_lookups or {}):
            exam = (reverse_lookups or {})[appointment_id]
            if exam is None or appointment_id in covered:
                continue
            if self.appointment_patient(appointment_id) != patient_id:
                continue
            exam = exam.model_copy(
                update={
                    "appointment_id": exam.appointment_id or appointment_id,
                    "patient_id": exam.patient_id or patient_id,
                }
            )
            previous = candidates.get(exam.id)
            candidates[exam.id] = LinkedExamination(
                examination=exam, stage=previous.stage if previous else STAGE_REVERSE
            )
            matched_anyone = True

        for exam_id, detail in sorted((details or {}).items()):
            if detail is None or exam_id not in candidates:
                continue
            previous = candidates[exam_id]
            merged = detail.model_copy(
                update={
                    "appointment_id": detail.appointment_id or previous.examination.appointment_id,
                    "patient_id": detail.patient_id or previous.examination.patient_id,
                }
            )
            candidates[exam_id] = LinkedExamination(examination=merged, stage=previous.stage)

        result = LinkResult(patient_id=patient_id, exact=_ordered(candidates.values()))
        if not result.exact and self.heuristic:
            result.low_confidence = _ordered(self._heuristic_matches(patient_id, matched_anyone, exclusions))
        return result

    def _heuristic_matches(self, patient_id: str, matched_anyone: bool, exclusions: int) -> List[LinkedExamination]:
        unlinked = [exam for exam in self.examinations.values() if self.resolve_examination(exam)[0] is None]

        if self.patient_appointments(patient_id) and len(unlinked) == 1:
            exam = unlinked[0]
            logger.warning(
                "Low-confidence link: examination %s attributed to patient %s as the only unlinkable examination",
                exam.id,
                patient_id,
            )
            return [_low(exam, STAGE_SINGLE_UNLINKED)]

        if not matched_anyone and not exclusions and self.examinations:
            logger.warning(
                "Low-confidence link: no examination could be linked to any patient, "
                "returning all %d for patient %s",
                len(self.examinations),
                patient_id,
            )
            return [_low(exam, STAGE_UNFILTERED_POOL) for exam in self.examinations.values()]

        return []

    def link_plans(self, patient_id: str, examination_ids: Sequence[str] = ()) -> List[TreatmentPlan]:
        linked_exams = set(examination_ids)
        plans = []
        for plan in self.plans.values():
            owner = self.resolve_plan(plan)
            if owner == patient_id or (owner is None and plan.examination_id in linked_exams):
                plans.append(plan)
        return sorted(plans, key=lambda p: (p.created_at or datetime.min, p.id), reverse=True)


def _low(exam: Examination, stage: str) -> LinkedExamination:
    return LinkedExamination(examination=exam, stage=stage, confidence=LinkConfidence.LOW)


def _ordered(linked: Iterable[LinkedExamination]) -> List[LinkedExamination]:
    """Newest first, independent of the order the inputs arrived in."""
    return sorted(
        linked,
        key=lambda item: (item.examination.created_at or datetime.min, item.examination.id),
        reverse=True,
    )


def phases_for_plans(
    plans: Iterable[TreatmentPlan], phases_by_plan: Mapping[str, Sequence[TreatmentPhase]]
) -> Dict[str, List[TreatmentPhase]]:
    """Phases of the given plans, keyed by plan id. Missing or failed plans map to []."""
    return {plan.id: list(phases_by_plan.get(plan.id) or []) for plan in plans}
