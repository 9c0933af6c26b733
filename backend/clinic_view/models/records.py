# backend/clinic_view/models/records.py
"""
Canonical record shapes.

The clinic backend is inconsistent about field names (``patientId`` vs
``patient_id`` vs a nested ``patient.id``) and about number and date formats.
Every variant is accepted here, so the linker and the folds only ever read
the snake_case attributes below.
"""

from datetime import datetime
from typing import Annotated, Any, List, Optional

from pydantic import AliasChoices, AliasPath, BaseModel, BeforeValidator, ConfigDict, Field

# Canonical status values as the backend spells them
APPOINTMENT_SCHEDULED = "Scheduled"
APPOINTMENT_DONE = "Done"
APPOINTMENT_CANCELLED = "Cancelled"

PLAN_IN_PROGRESS = "Inprogress"

PHASE_IN_PROGRESS = "Inprogress"

COST_WAIT = "wait"
COST_PAID = "paid"

_DATE_FORMATS = (
    "%d/%m/%Y",
    "%H:%M %d/%m/%Y",
    "%H:%M:%S %d/%m/%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse ISO 8601, ``dd/MM/yyyy`` and ``HH:mm dd/MM/yyyy`` into a naive local datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        text = value.strip()
        parsed = None
        if "T" in text:
            try:
                parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            except ValueError:
                parsed = None
        if parsed is None:
            for fmt in _DATE_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            return None
    else:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone().replace(tzinfo=None)
    return parsed


def to_number(value: Any) -> float:
    if value is None or value == "":
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def to_optional_number(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    return to_number(value)


def to_quantity(value: Any) -> float:
    if value is None or value == "":
        return 1.0
    return to_number(value)


def none_to_list(value: Any) -> Any:
    return [] if value is None else value


def to_notified(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("done", "true", "sent", "yes")
    return bool(value)


Money = Annotated[float, BeforeValidator(to_number)]
OptionalMoney = Annotated[Optional[float], BeforeValidator(to_optional_number)]
Quantity = Annotated[float, BeforeValidator(to_quantity)]
Timestamp = Annotated[Optional[datetime], BeforeValidator(parse_timestamp)]


def _ref(*names: str, nested: Optional[str] = None, nested_field: str = "id") -> AliasChoices:
    choices: List[Any] = list(names)
    if nested:
        choices.append(AliasPath(nested, nested_field))
    return AliasChoices(*choices)


class Record(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    id: str


class ImageAsset(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    public_id: Optional[str] = Field(None, validation_alias=AliasChoices("publicId", "public_id"))
    url: Optional[str] = None
    type: Optional[str] = None


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore", coerce_numbers_to_str=True)

    name: Optional[str] = None
    quantity: Quantity = 1.0
    unit_price: Money = Field(0.0, validation_alias=AliasChoices("unitPrice", "unit_price", "price"))
    # Pre-computed by the backend; 0 or absent means "recompute"
    cost: OptionalMoney = None


class ServiceLineItem(LineItem):
    unit: Optional[str] = None


class PrescriptionLineItem(LineItem):
    dosage: Optional[str] = None
    frequency: Optional[str] = None
    duration: Optional[str] = None
    notes: Optional[str] = None


ServiceLines = Annotated[List[ServiceLineItem], BeforeValidator(none_to_list)]
PrescriptionLines = Annotated[List[PrescriptionLineItem], BeforeValidator(none_to_list)]
Images = Annotated[List[ImageAsset], BeforeValidator(none_to_list)]

_SERVICES = AliasChoices("listDentalServicesEntityOrder", "services", "service_items")
_PRESCRIPTIONS = AliasChoices("listPrescriptionOrder", "prescriptions", "prescription_items")
_IMAGES = AliasChoices("listImage", "images")


class Patient(Record):
    full_name: Optional[str] = Field(None, validation_alias=AliasChoices("fullName", "full_name", "name"))
    allergy: Optional[str] = None
    blood_group: Optional[str] = Field(None, validation_alias=AliasChoices("bloodGroup", "blood_group"))
    medical_history: Optional[str] = Field(
        None, validation_alias=AliasChoices("medicalHistory", "medical_history", "history")
    )


class StaffMember(Record):
    full_name: Optional[str] = Field(None, validation_alias=AliasChoices("fullName", "full_name", "name"))
    specialization: Optional[str] = None


class UserProfile(Record):
    username: Optional[str] = None
    full_name: Optional[str] = Field(None, validation_alias=AliasChoices("fullName", "full_name"))


class Appointment(Record):
    patient_id: Optional[str] = Field(None, validation_alias=_ref("patientId", "patient_id", nested="patient"))
    patient_name: Optional[str] = Field(
        None, validation_alias=_ref("patientName", "patient_name", nested="patient", nested_field="fullName")
    )
    doctor_id: Optional[str] = Field(None, validation_alias=_ref("doctorId", "doctor_id", nested="doctor"))
    doctor_name: Optional[str] = Field(None, validation_alias=AliasChoices("doctorFullName", "doctor_name"))
    scheduled_at: Timestamp = Field(None, validation_alias=AliasChoices("dateTime", "date_time", "scheduled_at"))
    status: Optional[str] = None
    type: Optional[str] = None
    notified: Annotated[bool, BeforeValidator(to_notified)] = Field(
        False, validation_alias=AliasChoices("notified", "notification")
    )


class Examination(Record):
    appointment_id: Optional[str] = Field(
        None, validation_alias=_ref("appointmentId", "appointment_id", nested="appointment")
    )
    patient_id: Optional[str] = Field(None, validation_alias=_ref("patientId", "patient_id", nested="patient"))
    patient_name: Optional[str] = Field(
        None, validation_alias=_ref("patientName", "patient_name", nested="patient", nested_field="fullName")
    )
    doctor_id: Optional[str] = Field(None, validation_alias=_ref("doctorId", "doctor_id", nested="doctor"))
    symptoms: Optional[str] = None
    diagnosis: Optional[str] = None
    treatment: Optional[str] = None
    notes: Optional[str] = None
    total_cost: Money = Field(0.0, validation_alias=AliasChoices("totalCost", "total_cost", "total"))
    services: ServiceLines = Field(default_factory=list, validation_alias=_SERVICES)
    prescriptions: PrescriptionLines = Field(default_factory=list, validation_alias=_PRESCRIPTIONS)
    images: Images = Field(default_factory=list, validation_alias=_IMAGES)
    created_at: Timestamp = Field(
        None, validation_alias=AliasChoices("createAt", "created_at", "examined_at", "examinedAt")
    )


class TreatmentPlan(Record):
    patient_id: Optional[str] = Field(None, validation_alias=_ref("patientId", "patient_id", nested="patient"))
    patient_name: Optional[str] = Field(
        None, validation_alias=_ref("patientName", "patient_name", nested="patient", nested_field="fullName")
    )
    doctor_id: Optional[str] = Field(None, validation_alias=_ref("doctorId", "doctor_id", nested="doctor"))
    nurse_id: Optional[str] = Field(None, validation_alias=_ref("nurseId", "nurse_id", nested="nurse"))
    examination_id: Optional[str] = Field(
        None, validation_alias=_ref("examinationId", "examination_id", nested="examination")
    )
    title: Optional[str] = None
    status: Optional[str] = None
    total_cost: Money = Field(0.0, validation_alias=AliasChoices("totalCost", "total_cost", "total"))
    created_at: Timestamp = Field(None, validation_alias=AliasChoices("createAt", "created_at"))


class TreatmentPhase(Record):
    plan_id: Optional[str] = Field(
        None,
        validation_alias=_ref("planId", "plan_id", "treatmentPlansId", "treatmentPlanId", nested="plan"),
    )
    phase_number: Optional[str] = Field(None, validation_alias=AliasChoices("phaseNumber", "phase_number"))
    description: Optional[str] = None
    start_date: Timestamp = Field(None, validation_alias=AliasChoices("startDate", "start_date"))
    end_date: Timestamp = Field(None, validation_alias=AliasChoices("endDate", "end_date"))
    next_appointment: Timestamp = Field(None, validation_alias=AliasChoices("nextAppointment", "next_appointment"))
    status: Optional[str] = None
    cost: Money = 0.0
    payment_status: Optional[str] = Field(None, validation_alias=AliasChoices("paymentStatus", "payment_status"))
    services: ServiceLines = Field(default_factory=list, validation_alias=_SERVICES)
    prescriptions: PrescriptionLines = Field(default_factory=list, validation_alias=_PRESCRIPTIONS)
    images: Images = Field(default_factory=list, validation_alias=_IMAGES)


class CostRecord(Record):
    """Billing record; ``id`` is the id of the examination or phase it bills."""

    total_cost: Money = Field(0.0, validation_alias=AliasChoices("totalCost", "total_cost", "total", "amount"))
    status: Optional[str] = None
    payment_method: Optional[str] = Field(None, validation_alias=AliasChoices("paymentMethod", "payment_method"))
