# backend/clinic_view/api/routes/view_routes.py

from typing import Optional

from fastapi import APIRouter, Header, HTTPException
from fastapi.responses import JSONResponse

from clinic_view.core.errors import CapabilityDeniedError, SessionClosingError, WriteFailedError
from clinic_view.models.views import DashboardView, PatientView, PaymentUpdate
from clinic_view.services.view_service import (
    build_doctor_dashboard,
    build_patient_view,
    logout,
    mark_appointment_notified,
    teardown_views,
    update_payment,
)

router = APIRouter(tags=["views"])


def _bearer(authorization: Optional[str]) -> str:
    """Pull the bearer token that is forwarded to the clinic backend and keys the session."""
    if not authorization or not authorization.lower().startswith("bearer "):
        raise HTTPException(status_code=401, detail="Missing bearer token")
    token = authorization[len("bearer "):].strip()
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    return token


@router.get("/views/doctor", response_model=DashboardView)
async def get_doctor_dashboard(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        return await build_doctor_dashboard(token)
    except SessionClosingError:
        raise HTTPException(status_code=409, detail="Logout in progress")


@router.get("/views/patients/{patient_id}", response_model=PatientView)
async def get_patient_view(patient_id: str, authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        return await build_patient_view(token, patient_id)
    except SessionClosingError:
        raise HTTPException(status_code=409, detail="Logout in progress")


@router.post("/appointments/{appointment_id}/notified")
async def post_appointment_notified(appointment_id: str, authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        invalidated = await mark_appointment_notified(token, appointment_id)
    except CapabilityDeniedError as e:
        raise HTTPException(status_code=403, detail=f"Not allowed: {e.capability}")
    except WriteFailedError as e:
        raise HTTPException(status_code=502, detail=e.user_message)
    except SessionClosingError:
        raise HTTPException(status_code=409, detail="Logout in progress")
    return JSONResponse({"appointment_id": appointment_id, "invalidated": invalidated})


@router.post("/costs/{cost_id}/payment")
async def post_payment(cost_id: str, body: PaymentUpdate, authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        cost = await update_payment(token, cost_id, body.payment_method, body.status)
    except CapabilityDeniedError as e:
        raise HTTPException(status_code=403, detail=f"Not allowed: {e.capability}")
    except WriteFailedError as e:
        raise HTTPException(status_code=502, detail=e.user_message)
    except SessionClosingError:
        raise HTTPException(status_code=409, detail="Logout in progress")
    return JSONResponse(
        {
            "cost_id": cost_id,
            "cost": cost.model_dump(mode="json") if cost is not None else None,
        }
    )


@router.delete("/views")
async def delete_views(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    return JSONResponse({"torn_down": teardown_views(token)})


@router.post("/session/logout")
async def post_logout(authorization: Optional[str] = Header(None)):
    token = _bearer(authorization)
    try:
        await logout(token)
    except SessionClosingError:
        raise HTTPException(status_code=409, detail="Logout already in progress")
    return JSONResponse({"logged_out": True})
