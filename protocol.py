"""
Validator <-> hub wire protocol: JSON frames {"type": ..., "data": {...}}.
Defines frame types, canonical signed texts, codecs and frame validation.
"""

import enum
import json
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from errors import ProtocolError

MAX_FRAME_SIZE = 64 * 1024  # bytes
ENCODING = "utf-8"

STATUS_GOOD = "Good"
STATUS_BAD = "Bad"

# Fixed value, matches the hub's credit per validation
COST_PER_VALIDATION = 100


class MsgType(str, enum.Enum):
    SIGNUP = "signup"
    VALIDATE = "validate"


def registration_message(callback_id: str, public_key_b64: str) -> str:
    return f"Signed message for {callback_id}, {public_key_b64}"


def reply_message(callback_id: str) -> str:
    return f"Replying to {callback_id}"


@dataclass
class ValidationRequest:
    callback_id: str
    url: str

    def to_dict(self) -> dict:
        return {"url": self.url, "callbackId": self.callback_id}

    @staticmethod
    def from_dict(data: dict) -> "ValidationRequest":
        return ValidationRequest(callback_id=data["callbackId"], url=data["url"])


@dataclass
class ValidationResult:
    callback_id: str
    status: str
    latency: float
    validator_id: Optional[str]
    signed_message: str
    location: str
    ip_address: str

    def to_dict(self) -> dict:
        return {
            "callbackId": self.callback_id,
            "status": self.status,
            "latency": self.latency,
            "validatorId": self.validator_id,
            "signedMessage": self.signed_message,
            "location": self.location,
            "ipAddress": self.ip_address,
        }

    @staticmethod
    def from_dict(data: dict) -> "ValidationResult":
        return ValidationResult(
            callback_id=data["callbackId"],
            status=data["status"],
            latency=data.get("latency", 0),
            validator_id=data.get("validatorId"),
            signed_message=data.get("signedMessage", ""),
            location=data.get("location", "Unknown"),
            ip_address=data.get("ipAddress", "Unknown"),
        )


@dataclass
class Registration:
    callback_id: str
    ip: str
    public_key: str
    signed_message: str
    location: str

    def to_dict(self) -> dict:
        return {
            "callbackId": self.callback_id,
            "ip": self.ip,
            "publicKey": self.public_key,
            "signedMessage": self.signed_message,
            "location": self.location,
        }


def build_frame(msg_type: MsgType, data: Dict[str, Any]) -> Dict[str, Any]:
    return {"type": msg_type.value, "data": data}


def encode_frame(frame: Dict[str, Any]) -> bytes:
    data = json.dumps(frame, separators=(",", ":")).encode(ENCODING)
    if len(data) > MAX_FRAME_SIZE:
        raise ProtocolError("frame too large")
    return data


def decode_frame(raw: bytes) -> Dict[str, Any]:
    if len(raw) > MAX_FRAME_SIZE:
        raise ProtocolError("frame too large")
    try:
        frame = json.loads(raw.decode(ENCODING))
    except (UnicodeDecodeError, ValueError) as exc:
        raise ProtocolError(f"undecodable frame: {exc}") from exc
    if not isinstance(frame, dict):
        raise ProtocolError("frame is not an object")
    return frame


def frame_type(frame: Dict[str, Any]) -> Optional[MsgType]:
    try:
        return MsgType(frame.get("type"))
    except ValueError:
        return None


def _require_str(data: dict, *fields: str) -> Tuple[bool, str]:
    for name in fields:
        value = data.get(name)
        if not isinstance(value, str) or not value:
            return False, f"bad_{name}"
    return True, ""


def validate_incoming(frame: Dict[str, Any], from_hub: bool) -> Tuple[bool, str]:
    """
    Shape check of a decoded frame. from_hub selects the direction:
    frames a validator receives (ack, request) vs frames the hub receives.
    """
    mtype = frame_type(frame)
    if mtype is None:
        return False, "unknown_type"
    data = frame.get("data")
    if not isinstance(data, dict):
        return False, "bad_data"

    if mtype == MsgType.SIGNUP:
        if from_hub:
            ok, reason = _require_str(data, "validatorId")
            if not ok:
                return ok, reason
            payouts = data.get("pendingPayouts")
            if payouts is not None and (isinstance(payouts, bool) or not isinstance(payouts, (int, float))):
                return False, "bad_pendingPayouts"
            return True, ""
        return _require_str(data, "callbackId", "publicKey", "signedMessage")

    if from_hub:
        return _require_str(data, "url", "callbackId")
    ok, reason = _require_str(data, "callbackId", "validatorId", "signedMessage")
    if not ok:
        return ok, reason
    if data.get("status") not in (STATUS_GOOD, STATUS_BAD):
        return False, "bad_status"
    latency = data.get("latency", 0)
    if isinstance(latency, bool) or not isinstance(latency, (int, float)):
        return False, "bad_latency"
    return True, ""


def signup_frame(registration: Registration) -> Dict[str, Any]:
    return build_frame(MsgType.SIGNUP, registration.to_dict())


def signup_ack_frame(validator_id: str, pending_payouts: Optional[int] = None) -> Dict[str, Any]:
    data: Dict[str, Any] = {"validatorId": validator_id}
    if pending_payouts is not None:
        data["pendingPayouts"] = pending_payouts
    return build_frame(MsgType.SIGNUP, data)


def validate_request_frame(request: ValidationRequest) -> Dict[str, Any]:
    return build_frame(MsgType.VALIDATE, request.to_dict())


def validate_result_frame(result: ValidationResult) -> Dict[str, Any]:
    return build_frame(MsgType.VALIDATE, result.to_dict())
