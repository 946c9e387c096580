"""
Key provider: validator keypairs stored as base64 text files.
privateKey.txt holds the 64-byte secret key, publicKey.txt the 32-byte public key.

Run as uptime-keygen (or python keys.py) to create the keypair at the configured
PRIVATE_KEY_PATH before the first validator start.
"""

import logging
import os
import sys

from crypto_utils import KeyPair, generate_ed25519_keypair, load_keypair
from errors import FatalConfigError
from settings import load_validator_settings

PRIVATE_KEY_FILE = "privateKey.txt"
PUBLIC_KEY_FILE = "publicKey.txt"
DEFAULT_KEY_DIR = "config"

logger = logging.getLogger("uptime-keys")


def generate_keypair() -> KeyPair:
    return generate_ed25519_keypair()


def save_keypair(keypair: KeyPair, private_path: str = os.path.join(DEFAULT_KEY_DIR, PRIVATE_KEY_FILE)) -> str:
    """
    Write the secret key to private_path and the public key to publicKey.txt beside it.
    """
    directory = os.path.dirname(os.path.abspath(private_path))
    public_path = os.path.join(directory, PUBLIC_KEY_FILE)
    try:
        os.makedirs(directory, exist_ok=True)
        with open(private_path, "w", encoding="utf-8") as f:
            f.write(keypair.secret_key_b64)
        with open(public_path, "w", encoding="utf-8") as f:
            f.write(keypair.public_key_b64)
    except OSError as exc:
        raise FatalConfigError(f"Failed to save keypair to {directory}: {exc}") from exc
    logger.info(f"Saved keypair to {directory}")
    return private_path


def load_keypair_file(path: str) -> KeyPair:
    path = os.path.abspath(path)
    if not os.path.exists(path):
        raise FatalConfigError(f"Private key file not found: {path} (create one with uptime-keygen)")
    try:
        with open(path, "r", encoding="utf-8") as f:
            secret_b64 = f.read().strip()
    except OSError as exc:
        raise FatalConfigError(f"Failed to read private key {path}: {exc}") from exc
    if not secret_b64:
        raise FatalConfigError(f"Private key file is empty: {path}")
    keypair = load_keypair(secret_b64)
    logger.info("Private key loaded successfully")
    return keypair


def get_or_create_keypair(private_path: str) -> KeyPair:
    if os.path.exists(private_path):
        return load_keypair_file(private_path)
    logger.info("No keypair found, generating a new one")
    keypair = generate_keypair()
    save_keypair(keypair, private_path)
    return keypair


def main():
    logging.basicConfig(level=logging.INFO, format="%(asctime)s [%(levelname)s] %(message)s")
    try:
        settings = load_validator_settings()
        keypair = get_or_create_keypair(settings.private_key_path)
    except FatalConfigError as exc:
        logger.error(f"Cannot create keypair: {exc}")
        sys.exit(1)
    print(f"Private key: {os.path.abspath(settings.private_key_path)}")
    print(f"Public key:  {keypair.public_key_b64}")


if __name__ == "__main__":
    main()
