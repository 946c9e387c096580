import logging
import os
import sys
import time

from crypto_utils import Signer
from errors import FatalConfigError
from geo import GeoLookup
from keys import load_keypair_file
from latency import format_latency
from protocol import STATUS_GOOD
from session import ValidatorSession
from settings import load_validator_settings

DEBUG = os.environ.get("DEBUG", "0") == "1"

logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
)
logger = logging.getLogger("uptime-validator")


def print_result(result, measurement):
    url = measurement.url if measurement else "?"
    latency = format_latency(result.latency) if result.status == STATUS_GOOD else "n/a"
    print(f"[{result.status}] {url} {latency} callback={result.callback_id}")


def build_session() -> ValidatorSession:
    settings = load_validator_settings()
    keypair = load_keypair_file(settings.private_key_path)
    logger.info(f"Hub server: {settings.hub_server}")
    logger.info(f"Key path: {settings.private_key_path}")
    return ValidatorSession(
        Signer(keypair),
        settings.hub_server,
        geo_lookup=GeoLookup(settings.geo_url),
        reconnect_delay=settings.reconnect_delay,
        status_interval=settings.status_interval,
    )


def main():
    try:
        session = build_session()
    except FatalConfigError as exc:
        logger.error(f"Cannot start validator: {exc}")
        sys.exit(1)

    session.on_result = print_result
    session.start()
    print("\nValidating... stop with Ctrl+C\n")
    try:
        while session.running:
            time.sleep(1)
    except KeyboardInterrupt:
        print("\nStopping validator...")
    finally:
        session.stop()
        status = session.status()
        print(f"Validations: {status.validations}  Rewards: {status.pending_payouts} lamports")


if __name__ == "__main__":
    main()
