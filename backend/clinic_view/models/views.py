# backend/clinic_view/models/views.py

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .records import (
    COST_PAID,
    Appointment,
    CostRecord,
    Examination,
    Patient,
    StaffMember,
    TreatmentPhase,
    TreatmentPlan,
    UserProfile,
)


class FetchStatus(str, Enum):
    PENDING = "pending"
    OK = "ok"
    ERROR = "error"
    DISABLED = "disabled"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class FetchState(BaseModel):
    key: str
    status: FetchStatus
    primary: bool = False
    error: Optional[str] = None
    attempts: int = 0


class Readiness(BaseModel):
    ready: bool
    timed_out: bool = False
    blocking: List[str] = []


class LinkConfidence(str, Enum):
    EXACT = "exact"
    LOW = "low"


class LinkedExamination(BaseModel):
    examination: Examination
    stage: str
    confidence: LinkConfidence = LinkConfidence.EXACT


class PatientRollup(BaseModel):
    patient_id: str
    patient_name: Optional[str] = None
    total_examinations: int = 0
    total_plans: int = 0
    active_plans: int = 0
    total_cost: float = 0.0
    last_examination: Optional[Examination] = None
    last_examination_at: Optional[datetime] = None
    next_appointment: Optional[Appointment] = None


class LedgerEntry(BaseModel):
    """One billable line: an examination, a phase, or a plan without phases."""

    id: str
    kind: str
    plan_id: Optional[str] = None
    description: Optional[str] = None
    amount: float = 0.0
    status: str
    date: Optional[datetime] = None


class AppointmentBuckets(BaseModel):
    scheduled: List[Appointment] = []
    done: List[Appointment] = []
    cancelled: List[Appointment] = []


class Insights(BaseModel):
    total_appointments: int = 0
    done_appointments: int = 0
    cancelled_appointments: int = 0
    total_examinations: int = 0
    total_plans: int = 0
    active_phases: int = 0
    paid_revenue: float = 0.0
    unique_patients: int = 0


class DashboardView(BaseModel):
    readiness: Readiness
    fetches: List[FetchState] = []
    profile: Optional[UserProfile] = None
    staff: Dict[str, StaffMember] = {}
    buckets: AppointmentBuckets
    next_appointment: Optional[Appointment] = None
    active_phases: List[TreatmentPhase] = []
    phases_by_plan: Dict[str, List[TreatmentPhase]] = {}
    plan_costs: Dict[str, float] = {}
    examination_costs: Dict[str, CostRecord] = {}
    insights: Insights
    patients: List[PatientRollup] = []
    ledger: List[LedgerEntry] = []


class PatientView(BaseModel):
    patient_id: str
    readiness: Readiness
    fetches: List[FetchState] = []
    patient: Optional[Patient] = None
    examinations: List[LinkedExamination] = []
    low_confidence_examinations: List[LinkedExamination] = []
    treatment_plans: List[TreatmentPlan] = []
    phases_by_plan: Dict[str, List[TreatmentPhase]] = {}
    plan_costs: Dict[str, float] = {}
    appointments: List[Appointment] = []
    next_appointment: Optional[Appointment] = None
    rollup: PatientRollup
    ledger: List[LedgerEntry] = []


class PaymentUpdate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    payment_method: str = Field(validation_alias=AliasChoices("paymentMethod", "payment_method"))
    status: str = COST_PAID
