# backend/clinic_view/services/api_client.py

import json
import logging
from typing import Any, Dict, List, Optional, Type, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from clinic_view.core.config import settings
from clinic_view.core.errors import ClinicApiError, ErrorKind
from clinic_view.models.records import (
    Appointment,
    CostRecord,
    Examination,
    Patient,
    StaffMember,
    TreatmentPhase,
    TreatmentPlan,
    UserProfile,
)

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

# Paths of the collaborating backend
ENDPOINTS: Dict[str, str] = {
    "profile": "/api/v1/users/myInfo",
    "appointments": "/api/v1/doctor/myAppointment",
    "appointments_scheduled": "/api/v1/doctor/myAppointment/scheduled",
    "appointments_by_doctor": "/api/v1/nurse/appointment/all/{doctor_id}",
    "examinations": "/api/v1/doctor/myExamination",
    "examination_detail": "/api/v1/doctor/examination/{examination_id}",
    "examination_by_appointment": "/api/v1/doctor/{appointment_id}/examination",
    "treatment_plans": "/api/v1/doctor/myTreatmentPlans",
    "treatment_phases": "/api/v1/doctor/treatmentPhases/{plan_id}",
    "cost": "/api/v1/cost/{cost_id}",
    "update_payment": "/api/v1/cost/{cost_id}",
    "doctors": "/api/v1/doctor/doctors",
    "doctor_detail": "/api/v1/nurse/doctors/{doctor_id}",
    "nurses": "/api/v1/nurse/pick",
    "nurse_detail": "/api/v1/nurse/getInfo/{nurse_id}",
    "patient": "/api/v1/nurse/{patient_id}",
    "appointment_notified": "/api/v1/appointment/notification/{appointment_id}",
    "logout": "/api/v1/auth/logout",
}


def _decode_text(text: str) -> Any:
    """Decode a JSON body that may carry trailing garbage after the first value."""
    stripped = text.strip()
    if not stripped:
        return None
    try:
        value, _ = json.JSONDecoder().raw_decode(stripped)
    except ValueError:
        return stripped
    return value


def unwrap(payload: Any) -> Any:
    """Strip the ``{code, result}`` envelope and decode JSON sent as a string."""
    if isinstance(payload, str):
        decoded = _decode_text(payload)
        if isinstance(decoded, str):
            # A JSON string literal may itself hold an encoded document
            return decoded if decoded == payload.strip() else unwrap(decoded)
        return unwrap(decoded)
    if isinstance(payload, dict) and "result" in payload:
        result = payload["result"]
        return payload if result is None else unwrap(result)
    return payload


def parse_one(model: Type[ModelT], payload: Any) -> Optional[ModelT]:
    if not isinstance(payload, dict):
        return None
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        logger.warning("Dropping malformed %s record: %s", model.__name__, exc.errors()[:1])
        return None


def parse_many(model: Type[ModelT], payload: Any) -> List[ModelT]:
    if not isinstance(payload, list):
        if payload not in (None, "", {}):
            logger.warning("Expected a list of %s, got %s", model.__name__, type(payload).__name__)
        return []
    records = []
    for item in payload:
        record = parse_one(model, item)
        if record is not None:
            records.append(record)
    return records


class ClinicApiClient:
    """Read and write operations against the clinic backend, returning canonical models."""

    def __init__(
        self,
        token: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        headers = {"Accept": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.API_BASE_URL,
            headers=headers,
            timeout=settings.http_timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ClinicApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.TimeoutException as exc:
            raise ClinicApiError(ErrorKind.TIMEOUT, f"{method} {path} timed out") from exc
        except httpx.HTTPError as exc:
            raise ClinicApiError(ErrorKind.TRANSPORT, f"{method} {path} failed: {exc}") from exc

        if response.status_code >= 400:
            raise ClinicApiError.from_status(response.status_code, _error_message(response))
        if not response.content:
            return None
        return unwrap(response.text)

    async def _get(self, name: str, **params: str) -> Any:
        return await self._request("GET", ENDPOINTS[name].format(**params))

    # Reads

    async def get_my_profile(self) -> Optional[UserProfile]:
        return parse_one(UserProfile, await self._get("profile"))

    async def list_appointments(self, scope: str = "all") -> List[Appointment]:
        name = "appointments_scheduled" if scope == "scheduled" else "appointments"
        return parse_many(Appointment, await self._get(name))

    async def list_appointments_by_doctor(self, doctor_id: str) -> List[Appointment]:
        appointments = parse_many(Appointment, await self._get("appointments_by_doctor", doctor_id=doctor_id))
        return [
            a if a.doctor_id else a.model_copy(update={"doctor_id": doctor_id})
            for a in appointments
        ]

    async def list_examinations(self) -> List[Examination]:
        return parse_many(Examination, await self._get("examinations"))

    async def get_examination(self, examination_id: str) -> Optional[Examination]:
        return parse_one(Examination, await self._get("examination_detail", examination_id=examination_id))

    async def get_examination_by_appointment(self, appointment_id: str) -> Optional[Examination]:
        """Reverse lookup. ``None`` when the appointment has no examination yet."""
        try:
            payload = await self._get("examination_by_appointment", appointment_id=appointment_id)
        except ClinicApiError as exc:
            # The backend answers 400 for appointments it has no examination for
            if exc.kind == ErrorKind.NOT_FOUND or exc.status_code == 400:
                return None
            raise
        examination = parse_one(Examination, payload)
        if examination is not None and not examination.appointment_id:
            examination = examination.model_copy(update={"appointment_id": appointment_id})
        return examination

    async def list_treatment_plans(self) -> List[TreatmentPlan]:
        return parse_many(TreatmentPlan, await self._get("treatment_plans"))

    async def list_treatment_phases(self, plan_id: str) -> List[TreatmentPhase]:
        phases = parse_many(TreatmentPhase, await self._get("treatment_phases", plan_id=plan_id))
        return [p if p.plan_id else p.model_copy(update={"plan_id": plan_id}) for p in phases]

    async def get_cost(self, cost_id: str) -> Optional[CostRecord]:
        """Billing record of an examination or phase. ``None`` when nothing was billed yet."""
        try:
            payload = await self._get("cost", cost_id=cost_id)
        except ClinicApiError as exc:
            if exc.kind == ErrorKind.NOT_FOUND:
                return None
            raise
        if isinstance(payload, dict) and not payload.get("id"):
            payload = {**payload, "id": cost_id}
        return parse_one(CostRecord, payload)

    async def list_doctors(self) -> List[StaffMember]:
        return parse_many(StaffMember, await self._get("doctors"))

    async def get_doctor(self, doctor_id: str) -> Optional[StaffMember]:
        return parse_one(StaffMember, await self._get("doctor_detail", doctor_id=doctor_id))

    async def list_nurses(self) -> List[StaffMember]:
        return parse_many(StaffMember, await self._get("nurses"))

    async def get_nurse(self, nurse_id: str) -> Optional[StaffMember]:
        return parse_one(StaffMember, await self._get("nurse_detail", nurse_id=nurse_id))

    async def get_patient(self, patient_id: str) -> Optional[Patient]:
        return parse_one(Patient, await self._get("patient", patient_id=patient_id))

    # Writes

    async def mark_appointment_notified(self, appointment_id: str) -> None:
        await self._request("PUT", ENDPOINTS["appointment_notified"].format(appointment_id=appointment_id))

    async def update_payment(self, cost_id: str, payment_method: str, status: str) -> Optional[CostRecord]:
        payload = await self._request(
            "PUT",
            ENDPOINTS["update_payment"].format(cost_id=cost_id),
            json={"paymentMethod": payment_method, "status": status},
        )
        return parse_one(CostRecord, payload)

    async def logout(self) -> None:
        await self._request("POST", ENDPOINTS["logout"], json={})


def _error_message(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text[:200] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("message") or body.get("detail") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"
