"""Pydantic models for the clinic view engine."""

from .records import (
    Appointment,
    CostRecord,
    Examination,
    Patient,
    PrescriptionLineItem,
    ServiceLineItem,
    StaffMember,
    TreatmentPhase,
    TreatmentPlan,
    UserProfile,
)
from .views import (
    DashboardView,
    FetchState,
    FetchStatus,
    LedgerEntry,
    PatientRollup,
    PatientView,
    PaymentUpdate,
    Readiness,
)

__all__ = [
    "Appointment",
    "CostRecord",
    "DashboardView",
    "Examination",
    "FetchState",
    "FetchStatus",
    "LedgerEntry",
    "Patient",
    "PatientRollup",
    "PatientView",
    "PaymentUpdate",
    "PrescriptionLineItem",
    "Readiness",
    "ServiceLineItem",
    "StaffMember",
    "TreatmentPhase",
    "TreatmentPlan",
    "UserProfile",
]
