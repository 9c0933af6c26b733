import asyncio

import httpx
import pytest

from clinic_view.core.errors import ClinicApiError, ErrorKind
from clinic_view.services.api_client import ClinicApiClient, unwrap
from conftest import FakeBackend, envelope, json_string_response


def run_with(backend, call):
    async def scenario():
        async with ClinicApiClient(token="tok", base_url="http://clinic", transport=backend.transport()) as client:
            return await call(client)

    return asyncio.run(scenario())


def test_unwrap_envelope_and_encoded_strings():
    assert unwrap({"code": 1000, "result": [1, 2]}) == [1, 2]
    assert unwrap('{"code": 1000, "result": {"id": "x"}}') == {"id": "x"}
    assert unwrap('"{\\"result\\": [3]}"') == [3]
    assert unwrap('[1] trailing') == [1]
    assert unwrap("plain text") == "plain text"
    assert unwrap({"id": "x"}) == {"id": "x"}


def test_list_appointments_sends_bearer_and_unwraps():
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("Authorization")
        return envelope([{"id": 1, "patientId": "P1", "status": "Scheduled"}])

    backend = FakeBackend({"/api/v1/doctor/myAppointment": handler})
    appointments = run_with(backend, lambda c: c.list_appointments())

    assert seen["auth"] == "Bearer tok"
    assert [a.id for a in appointments] == ["1"]
    assert appointments[0].patient_id == "P1"


def test_scheduled_scope_uses_its_own_path():
    backend = FakeBackend({"/api/v1/doctor/myAppointment/scheduled": []})
    assert run_with(backend, lambda c: c.list_appointments("scheduled")) == []
    assert backend.paths() == ["/api/v1/doctor/myAppointment/scheduled"]


def test_json_string_body_is_decoded():
    backend = FakeBackend({"/api/v1/doctor/myExamination": json_string_response([{"id": "E1", "appointmentId": "A1"}])})
    exams = run_with(backend, lambda c: c.list_examinations())
    assert exams[0].appointment_id == "A1"


def test_malformed_items_are_dropped():
    backend = FakeBackend({"/api/v1/doctor/myTreatmentPlans": [{"id": "P1"}, {"title": "no id"}, "junk"]})
    plans = run_with(backend, lambda c: c.list_treatment_plans())
    assert [p.id for p in plans] == ["P1"]


@pytest.mark.parametrize("status", [400, 404])
def test_reverse_lookup_without_examination_is_none(status):
    backend = FakeBackend({"/api/v1/doctor/A9/examination": httpx.Response(status, json={"message": "none"})})
    assert run_with(backend, lambda c: c.get_examination_by_appointment("A9")) is None


def test_reverse_lookup_fills_appointment_id():
    backend = FakeBackend({"/api/v1/doctor/A1/examination": {"id": "E1"}})
    exam = run_with(backend, lambda c: c.get_examination_by_appointment("A1"))
    assert exam.id == "E1"
    assert exam.appointment_id == "A1"


def test_phases_and_costs_fill_parent_ids():
    backend = FakeBackend(
        {
            "/api/v1/doctor/treatmentPhases/P1": [{"id": "PH1", "cost": 10}],
            "/api/v1/cost/PH1": {"totalCost": 10, "status": "paid"},
        }
    )
    phases = run_with(backend, lambda c: c.list_treatment_phases("P1"))
    cost = run_with(backend, lambda c: c.get_cost("PH1"))
    assert phases[0].plan_id == "P1"
    assert cost.id == "PH1"
    assert cost.status == "paid"


def test_missing_cost_is_none():
    assert run_with(FakeBackend(), lambda c: c.get_cost("nothing")) is None


@pytest.mark.parametrize(
    "status, kind, expected, retryable",
    [
        (401, ErrorKind.UNAUTHORIZED, True, False),
        (403, ErrorKind.FORBIDDEN, True, False),
        (404, ErrorKind.NOT_FOUND, True, False),
        (500, ErrorKind.TRANSPORT, False, True),
        (422, ErrorKind.TRANSPORT, False, False),
        (429, ErrorKind.TRANSPORT, False, True),
    ],
)
def test_http_errors_are_classified(status, kind, expected, retryable):
    backend = FakeBackend({"/api/v1/doctor/myExamination": httpx.Response(status, json={"message": "boom"})})
    with pytest.raises(ClinicApiError) as info:
        run_with(backend, lambda c: c.list_examinations())
    assert info.value.kind is kind
    assert info.value.status_code == status
    assert info.value.expected is expected
    assert info.value.retryable is retryable


def test_timeouts_are_classified():
    def handler(request):
        raise httpx.ReadTimeout("slow", request=request)

    backend = FakeBackend({"/api/v1/doctor/myExamination": handler})
    with pytest.raises(ClinicApiError) as info:
        run_with(backend, lambda c: c.list_examinations())
    assert info.value.kind is ErrorKind.TIMEOUT
    assert info.value.retryable


def test_update_payment_puts_method_and_status():
    seen = {}

    def handler(request):
        seen["method"] = request.method
        seen["body"] = request.read()
        return envelope({"id": "E1", "totalCost": 100, "status": "paid", "paymentMethod": "cash"})

    backend = FakeBackend({"/api/v1/cost/E1": handler})
    cost = run_with(backend, lambda c: c.update_payment("E1", "cash", "paid"))

    assert seen["method"] == "PUT"
    assert b'"paymentMethod":"cash"' in seen["body"].replace(b" ", b"")
    assert cost.payment_method == "cash"
