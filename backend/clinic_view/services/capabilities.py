# backend/clinic_view/services/capabilities.py

import logging
from enum import Enum
from typing import FrozenSet, Iterable, Optional

import jwt

logger = logging.getLogger(__name__)


class Capability(str, Enum):
    CREATE_EXAMINATION = "CREATE_EXAMINATION"
    CREATE_TOOTH_STATUS = "CREATE_TOOTH_STATUS"
    CREATE_TREATMENT_PHASES = "CREATE_TREATMENT_PHASES"
    CREATE_TREATMENT_PLANS = "CREATE_TREATMENT_PLANS"
    GET_ALL_TREATMENT_PHASES = "GET_ALL_TREATMENT_PHASES"
    GET_BASIC_INFO = "GET_BASIC_INFO"
    GET_EXAMINATION_DETAIL = "GET_EXAMINATION_DETAIL"
    GET_INFO_DOCTOR = "GET_INFO_DOCTOR"
    GET_INFO_NURSE = "GET_INFO_NURSE"
    GET_TOOTH_STATUS = "GET_TOOTH_STATUS"
    # Spelled the way the backend issues it
    NOTIFICATION_APPOINTMENT = "NOTIFICATION_APPOINMENT"
    PICK_DOCTOR = "PICK_DOCTOR"
    PICK_NURSE = "PICK_NURSE"
    UPDATE_EXAMINATION = "UPDATE_EXAMINATION"
    UPDATE_PAYMENT_COST = "UPDATE_PAYMENT_COST"
    UPDATE_TOOTH_STATUS = "UPDATE_TOOTH_STATUS"
    UPDATE_TREATMENT_PHASES = "UPDATE_TREATMENT_PHASES"
    UPDATE_TREATMENT_PLANS = "UPDATE_TREATMENT_PLANS"


_KNOWN = {c.value: c for c in Capability}


def capabilities_from_scope(scope: Optional[str]) -> FrozenSet[Capability]:
    """Parse a space separated scope claim; ``ROLE_*`` entries and unknown names are dropped."""
    if not scope:
        return frozenset()
    granted = set()
    for entry in scope.split():
        if entry.startswith("ROLE_"):
            continue
        capability = _KNOWN.get(entry)
        if capability is not None:
            granted.add(capability)
    return frozenset(granted)


class CapabilityGate:
    """Answers whether a fetch may be issued at all. Evaluated once per session."""

    def __init__(self, granted: Iterable[Capability] = ()):
        self._granted = frozenset(granted)

    @classmethod
    def from_token(cls, token: Optional[str]) -> "CapabilityGate":
        # Signature is the backend's job; only the scope claim is read here
        if not token:
            return cls()
        try:
            payload = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError as exc:
            logger.debug("Unreadable bearer token, no capabilities granted: %s", exc)
            return cls()
        scope = payload.get("scope")
        return cls(capabilities_from_scope(scope))

    @property
    def granted(self) -> FrozenSet[Capability]:
        return self._granted

    def is_allowed(self, capability: Optional[Capability]) -> bool:
        if capability is None:
            return True
        return capability in self._granted
