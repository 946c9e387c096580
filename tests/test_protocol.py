import pytest

from errors import ProtocolError
from protocol import (
    MAX_FRAME_SIZE,
    MsgType,
    ValidationRequest,
    ValidationResult,
    decode_frame,
    encode_frame,
    frame_type,
    registration_message,
    reply_message,
    signup_ack_frame,
    validate_incoming,
    validate_request_frame,
)


def test_canonical_texts():
    assert registration_message("cb-1", "PUBKEY==") == "Signed message for cb-1, PUBKEY=="
    assert reply_message("cb-1") == "Replying to cb-1"


def test_frame_shapes_match_wire_names():
    frame = validate_request_frame(ValidationRequest(callback_id="cb", url="https://example.com"))
    assert frame == {"type": "validate", "data": {"url": "https://example.com", "callbackId": "cb"}}
    assert signup_ack_frame("validator-1") == {"type": "signup", "data": {"validatorId": "validator-1"}}
    assert signup_ack_frame("validator-1", 300)["data"]["pendingPayouts"] == 300

    result = ValidationResult("cb", "Good", 12.5, "validator-1", "[1]", "Oslo, Oslo", "1.2.3.4")
    assert set(result.to_dict()) == {
        "callbackId", "status", "latency", "validatorId", "signedMessage", "location", "ipAddress",
    }
    assert ValidationResult.from_dict(result.to_dict()) == result


def test_decode_rejects_garbage():
    with pytest.raises(ProtocolError):
        decode_frame(b"{not json")
    with pytest.raises(ProtocolError):
        decode_frame(b"[1, 2]")
    with pytest.raises(ProtocolError):
        decode_frame(b"\xff\xfe")
    with pytest.raises(ProtocolError):
        encode_frame({"type": "validate", "data": {"url": "x" * MAX_FRAME_SIZE}})


def test_frame_type():
    assert frame_type({"type": "signup"}) == MsgType.SIGNUP
    assert frame_type({"type": "bogus"}) is None
    assert frame_type({}) is None


class TestValidateIncoming:
    def test_hub_bound_frames(self):
        good_signup = {"type": "signup", "data": {"callbackId": "c", "publicKey": "k", "signedMessage": "s"}}
        assert validate_incoming(good_signup, from_hub=False) == (True, "")
        bad_signup = {"type": "signup", "data": {"callbackId": "c", "publicKey": ""}}
        assert validate_incoming(bad_signup, from_hub=False) == (False, "bad_publicKey")

        report = {"type": "validate", "data": {
            "callbackId": "c", "validatorId": "v", "signedMessage": "s", "status": "Good", "latency": 10,
        }}
        assert validate_incoming(report, from_hub=False) == (True, "")
        report["data"]["status"] = "Meh"
        assert validate_incoming(report, from_hub=False) == (False, "bad_status")
        report["data"]["status"] = "Bad"
        report["data"]["latency"] = "fast"
        assert validate_incoming(report, from_hub=False) == (False, "bad_latency")

    def test_validator_bound_frames(self):
        assert validate_incoming({"type": "signup", "data": {"validatorId": "v-1"}}, from_hub=True) == (True, "")
        assert validate_incoming(
            {"type": "signup", "data": {"validatorId": "v-1", "pendingPayouts": "lots"}}, from_hub=True
        ) == (False, "bad_pendingPayouts")
        assert validate_incoming(
            {"type": "validate", "data": {"url": "http://x", "callbackId": "c"}}, from_hub=True
        ) == (True, "")
        assert validate_incoming({"type": "validate", "data": {"url": "http://x"}}, from_hub=True) == (
            False, "bad_callbackId",
        )

    def test_envelope(self):
        assert validate_incoming({"type": "hello", "data": {}}, from_hub=True) == (False, "unknown_type")
        assert validate_incoming({"type": "signup", "data": []}, from_hub=True) == (False, "bad_data")
