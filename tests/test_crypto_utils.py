import base64
import json

import pytest

from crypto_utils import (
    Signer,
    decode_signature,
    encode_signature,
    generate_ed25519_keypair,
    keypair_from_secret,
    load_keypair,
    sign,
    verify,
    verify_text,
)
from errors import FatalConfigError

# RFC 8032, section 7.1, test 1
RFC_SEED = bytes.fromhex("9d61b19deffd5a60ba844af492ec2cc44449c5697b326919703bac031cae7f60")
RFC_PUBLIC = bytes.fromhex("d75a980182b10ab7d54bfed3c964073a0ee172f3daa62325af021a68f707511a")
RFC_SIGNATURE = bytes.fromhex(
    "e5564300c360ac729086e2cc806e828a84877f1eb8e5d974d873e06522490155"
    "5fb8821590a33bacc61e39701cf9b46bd25bf5f0595bbe24655141438e7a100b"
)


class TestSigning:
    def test_known_vector(self):
        kp = keypair_from_secret(RFC_SEED)
        assert kp.public_key == RFC_PUBLIC
        assert kp.secret_key == RFC_SEED + RFC_PUBLIC
        assert sign("", kp) == RFC_SIGNATURE

    def test_signature_is_deterministic_and_verifies(self, keypair):
        msg = "Replying to abc-123"
        sig = sign(msg, keypair)
        assert sig == sign(msg, keypair)
        assert len(sig) == 64
        assert verify(msg, sig, keypair.public_key)

    def test_tampered_message_or_foreign_key_rejected(self, keypair):
        sig = sign("Replying to abc", keypair)
        assert not verify("Replying to abd", sig, keypair.public_key)
        other = generate_ed25519_keypair()
        assert not verify("Replying to abc", sig, other.public_key)

    def test_verify_never_raises_on_garbage(self, keypair):
        assert not verify("x", b"short", keypair.public_key)
        assert not verify("x", sign("x", keypair), b"not-a-key")


class TestKeyMaterial:
    def test_nacl_secret_key_round_trip(self, keypair):
        loaded = load_keypair(keypair.secret_key_b64)
        assert loaded == keypair

    def test_bare_seed_accepted(self):
        kp = load_keypair(base64.b64encode(RFC_SEED).decode())
        assert kp.public_key == RFC_PUBLIC

    def test_not_base64_is_fatal(self):
        with pytest.raises(FatalConfigError):
            load_keypair("%%% definitely not base64 %%%")

    def test_wrong_length_is_fatal(self):
        with pytest.raises(FatalConfigError):
            load_keypair(base64.b64encode(b"\x01" * 40).decode())

    def test_mismatched_embedded_public_key_is_fatal(self):
        with pytest.raises(FatalConfigError):
            keypair_from_secret(RFC_SEED + b"\x00" * 32)


class TestWireEncoding:
    def test_signature_is_json_byte_array(self, keypair):
        sig = sign("hello", keypair)
        text = encode_signature(sig)
        assert json.loads(text) == list(sig)
        assert decode_signature(text) == sig

    def test_base64_signature_accepted(self, keypair):
        sig = sign("hello", keypair)
        assert decode_signature(base64.b64encode(sig).decode()) == sig

    def test_verify_text(self, keypair):
        signer = Signer(keypair)
        text = signer.sign_text("Replying to cb-1")
        assert verify_text("Replying to cb-1", text, signer.public_key_b64)
        assert not verify_text("Replying to cb-2", text, signer.public_key_b64)
        assert not verify_text("Replying to cb-1", "[1,2,999]", signer.public_key_b64)
        assert not verify_text("Replying to cb-1", text, "not base64!")
        assert not verify_text("Replying to cb-1", "{}", signer.public_key_b64)


class TestSigner:
    def test_verifies_own_signatures_only(self, keypair):
        signer = Signer(keypair)
        other = Signer(generate_ed25519_keypair())
        sig = signer.sign("Signed message for cb, key")
        assert signer.verify("Signed message for cb, key", sig)
        assert not signer.verify("Signed message for cb, other", sig)
        assert not other.verify("Signed message for cb, key", sig)

    def test_sign_text_round_trips_through_verify(self, keypair):
        signer = Signer(keypair)
        text = signer.sign_text("Replying to cb-9")
        assert signer.verify("Replying to cb-9", decode_signature(text))
