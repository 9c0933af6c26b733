import json

import httpx
import jwt
import pytest

from clinic_view.services import view_service

SIGNING_KEY = "clinic-view-test-signing-key-0123456789"

ALL_SCOPES = (
    "ROLE_DOCTOR GET_ALL_TREATMENT_PHASES GET_BASIC_INFO GET_EXAMINATION_DETAIL GET_INFO_DOCTOR "
    "NOTIFICATION_APPOINMENT PICK_NURSE UPDATE_PAYMENT_COST"
)


def make_token(scope: str = ALL_SCOPES, sub: str = "doctor1") -> str:
    return jwt.encode({"sub": sub, "scope": scope}, SIGNING_KEY, algorithm="HS256")


def envelope(result, code: int = 1000) -> httpx.Response:
    return httpx.Response(200, json={"code": code, "result": result})


class FakeBackend:
    """Routes requests by path to canned responses and records what was called."""

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append((request.method, request.url.path))
        handler = self.routes.get((request.method, request.url.path)) or self.routes.get(request.url.path)
        if handler is None:
            return httpx.Response(404, json={"message": "not found"})
        if callable(handler):
            return handler(request)
        if isinstance(handler, httpx.Response):
            return httpx.Response(handler.status_code, content=handler.content, headers=handler.headers)
        return envelope(handler)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)

    def paths(self, method: str = "GET"):
        return [path for m, path in self.calls if m == method]


def json_string_response(result) -> httpx.Response:
    # Some endpoints answer with the JSON document encoded as a string
    return httpx.Response(200, text=json.dumps(json.dumps({"code": 1000, "result": result})))


@pytest.fixture(autouse=True)
def clear_sessions():
    view_service.view_sessions.clear()
    yield
    view_service.view_sessions.clear()


def clinic_routes():
    """A small but complete doctor workload: two patients, one plan with phases, one without."""
    return {
        "/api/v1/users/myInfo": {"id": "D1", "username": "dr.minh", "fullName": "Minh Tran"},
        "/api/v1/doctor/myAppointment": [
            {"id": "A1", "patientId": "P1", "patientName": "Lan", "status": "Done", "dateTime": "09:00 01/03/2024"},
            {"id": "A2", "patientId": "P1", "patientName": "Lan", "status": "Scheduled", "dateTime": "09:00 01/03/2099"},
            {"id": "A3", "patient": {"id": "P2", "fullName": "Hoa"}, "status": "Cancel", "dateTime": "10:00 02/03/2024"},
        ],
        "/api/v1/doctor/myAppointment/scheduled": [
            {"id": "A2", "patientId": "P1", "status": "Scheduled", "dateTime": "09:00 01/03/2099"},
        ],
        "/api/v1/doctor/myExamination": [
            {"id": "E1", "appointmentId": "A1", "diagnosis": "Caries", "totalCost": 150, "createAt": "2024-03-01T09:30:00"},
            {"id": "E2", "patientId": "P2", "diagnosis": "Gingivitis", "totalCost": 80, "createAt": "2024-03-02T10:30:00"},
        ],
        "/api/v1/doctor/myTreatmentPlans": [
            {"id": "T1", "examinationId": "E1", "title": "Fillings", "status": "Inprogress", "totalCost": 1},
            {"id": "T2", "patientId": "P2", "title": "Cleaning", "status": "Done", "totalCost": 300},
        ],
        "/api/v1/doctor/treatmentPhases/T1": [
            {
                "id": "PH1",
                "phaseNumber": 1,
                "status": "Inprogress",
                "cost": 0,
                "listDentalServicesEntityOrder": [{"name": "Filling", "quantity": 2, "unitPrice": 100, "cost": 0}],
            },
        ],
        "/api/v1/doctor/treatmentPhases/T2": [],
        "/api/v1/cost/E1": {"totalCost": 150, "status": "paid"},
        "/api/v1/cost/E2": {"totalCost": 80, "status": "wait"},
        "/api/v1/cost/PH1": {"totalCost": 200, "status": "Done"},
        "/api/v1/doctor/examination/E1": {"id": "E1", "appointmentId": "A1", "diagnosis": "Deep caries", "totalCost": 150},
        "/api/v1/doctor/doctors": [{"id": "D1", "fullName": "Minh Tran"}],
        "/api/v1/nurse/pick": [{"id": "N1", "fullName": "Thu"}],
        "/api/v1/nurse/P1": {"id": "P1", "fullName": "Lan", "bloodGroup": "O"},
    }
