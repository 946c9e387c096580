import base64
import binascii
import json
from dataclasses import dataclass

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PrivateFormat, NoEncryption, PublicFormat

from errors import FatalConfigError

SEED_SIZE = 32
PUBLIC_KEY_SIZE = 32
# NaCl-style secret key: seed followed by the public key
SECRET_KEY_SIZE = SEED_SIZE + PUBLIC_KEY_SIZE
SIGNATURE_SIZE = 64


@dataclass(frozen=True)
class KeyPair:
    public_key: bytes
    secret_key: bytes  # 64 bytes, seed + public key

    @property
    def public_key_b64(self) -> str:
        return base64.b64encode(self.public_key).decode("ascii")

    @property
    def secret_key_b64(self) -> str:
        return base64.b64encode(self.secret_key).decode("ascii")


def generate_ed25519_keypair() -> KeyPair:
    priv = Ed25519PrivateKey.generate()
    seed = priv.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
    pub = priv.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    return KeyPair(public_key=pub, secret_key=seed + pub)


def keypair_from_secret(secret: bytes) -> KeyPair:
    """
    Accepts a 64-byte secret key (seed + public) or a bare 32-byte seed.
    """
    if len(secret) not in (SEED_SIZE, SECRET_KEY_SIZE):
        raise FatalConfigError(f"bad secret key size: {len(secret)} bytes")
    seed = secret[:SEED_SIZE]
    priv = Ed25519PrivateKey.from_private_bytes(seed)
    pub = priv.public_key().public_bytes(Encoding.Raw, PublicFormat.Raw)
    if len(secret) == SECRET_KEY_SIZE and secret[SEED_SIZE:] != pub:
        raise FatalConfigError("secret key does not match its embedded public key")
    return KeyPair(public_key=pub, secret_key=seed + pub)


def load_keypair(secret_b64: str) -> KeyPair:
    try:
        secret = base64.b64decode(secret_b64.strip(), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise FatalConfigError(f"secret key is not valid base64: {exc}") from exc
    return keypair_from_secret(secret)


def sign(message: str, keypair: KeyPair) -> bytes:
    priv = Ed25519PrivateKey.from_private_bytes(keypair.secret_key[:SEED_SIZE])
    return priv.sign(message.encode("utf-8"))


def verify(message: str, signature: bytes, public_key: bytes) -> bool:
    try:
        pub = Ed25519PublicKey.from_public_bytes(public_key)
        pub.verify(signature, message.encode("utf-8"))
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def encode_signature(signature: bytes) -> str:
    """
    Wire form of a signature: JSON array of byte values, e.g. "[12,200,...]".
    """
    return json.dumps(list(signature), separators=(",", ":"))


def decode_signature(text: str) -> bytes:
    """
    Inverse of encode_signature. Base64 is accepted too. Raises ValueError.
    """
    text = text.strip()
    if text.startswith("["):
        values = json.loads(text)
        if not isinstance(values, list):
            raise ValueError("signature must be a list of byte values")
        return bytes(values)
    try:
        return base64.b64decode(text, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"undecodable signature: {exc}") from exc


def decode_public_key(public_b64: str) -> bytes:
    try:
        raw = base64.b64decode(public_b64, validate=True)
    except (binascii.Error, ValueError, TypeError) as exc:
        raise ValueError(f"public key is not valid base64: {exc}") from exc
    if len(raw) != PUBLIC_KEY_SIZE:
        raise ValueError(f"bad public key size: {len(raw)} bytes")
    return raw


def verify_text(message: str, signature_text: str, public_b64: str) -> bool:
    """
    Verifies wire-encoded signature and public key; never raises.
    """
    try:
        signature = decode_signature(signature_text)
        public_key = decode_public_key(public_b64)
    except (ValueError, TypeError):
        return False
    return verify(message, signature, public_key)


class Signer:
    """
    Holds the process keypair and signs short protocol messages.
    """

    def __init__(self, keypair: KeyPair):
        self.keypair = keypair

    @property
    def public_key_b64(self) -> str:
        return self.keypair.public_key_b64

    def sign(self, message: str) -> bytes:
        return sign(message, self.keypair)

    def sign_text(self, message: str) -> str:
        return encode_signature(self.sign(message))

    def verify(self, message: str, signature: bytes) -> bool:
        return verify(message, signature, self.keypair.public_key)
