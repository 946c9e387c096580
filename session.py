"""
Validator side of the hub protocol.

ValidatorSession owns one persistent hub connection and walks the states
DISCONNECTED -> CONNECTING -> AWAITING_ACK -> ACTIVE -> RECONNECTING -> CONNECTING ...
until stop() moves it to STOPPED. Every validation request is measured on its
own worker thread and answered with exactly one signed result frame.
"""

import enum
import logging
import threading
import time
import uuid
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from crypto_utils import Signer
from errors import HubConnectionError, ProtocolError
from geo import GeoInfo, UNKNOWN
from latency import LatencyMeasurement, ProbeConfig, format_latency, measure
from protocol import (
    MsgType,
    Registration,
    STATUS_BAD,
    STATUS_GOOD,
    ValidationRequest,
    ValidationResult,
    frame_type,
    registration_message,
    reply_message,
    signup_frame,
    validate_incoming,
    validate_result_frame,
)
from rewards import RewardCounter
from settings import RECONNECT_DELAY
from transport import FrameConnection, open_connection

DEFAULT_STATUS_INTERVAL = 10.0
STOP_JOIN_TIMEOUT = 5.0

logger = logging.getLogger("uptime-session")


class SessionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_ACK = "awaiting_ack"
    ACTIVE = "active"
    RECONNECTING = "reconnecting"
    STOPPED = "stopped"


@dataclass
class SessionStatus:
    state: str
    connected: bool
    validator_id: Optional[str]
    location: str
    ip_address: str
    last_ping_time: Optional[float]
    pending_payouts: int
    validations: int

    def to_dict(self) -> dict:
        return asdict(self)


def is_good_status(status: int) -> bool:
    return 200 <= status <= 399


def classify(measurement: Optional[LatencyMeasurement]) -> str:
    if measurement is None or measurement.error is not None:
        return STATUS_BAD
    return STATUS_GOOD if is_good_status(measurement.status) else STATUS_BAD


def reported_latency(measurement: LatencyMeasurement) -> float:
    if measurement.best_latency is not None:
        return measurement.best_latency
    if measurement.tcp_time is not None:
        return measurement.tcp_time
    return 0


class ValidatorSession:
    def __init__(
        self,
        signer: Signer,
        hub_server: str,
        geo_lookup: Optional[Callable[[], GeoInfo]] = None,
        probe: Callable[..., LatencyMeasurement] = measure,
        probe_config: Optional[ProbeConfig] = None,
        connector: Callable[[str], FrameConnection] = open_connection,
        reconnect_delay: float = RECONNECT_DELAY,
        status_interval: float = DEFAULT_STATUS_INTERVAL,
        wait: Optional[Callable[[float], bool]] = None,
    ):
        self.signer = signer
        self.hub_server = hub_server
        self.geo_lookup = geo_lookup
        self.probe = probe
        self.probe_config = probe_config or ProbeConfig()
        self.connector = connector
        self.reconnect_delay = reconnect_delay
        self.status_interval = status_interval

        self.state = SessionState.DISCONNECTED
        self.validator_id: Optional[str] = None
        self.location = UNKNOWN
        self.ip_address = UNKNOWN
        self.last_ping_time: Optional[float] = None
        self.registration_callback_id: Optional[str] = None
        self.rewards = RewardCounter()
        self.connect_attempts = 0
        # callable(ValidationResult, LatencyMeasurement) after each reply is sent
        self.on_result: Optional[Callable] = None

        self._conn: Optional[FrameConnection] = None
        self._conn_lock = threading.Lock()
        self._state_changed = threading.Condition()
        self._stop = threading.Event()
        self._wait = wait or self._stop.wait
        self._thread: Optional[threading.Thread] = None
        self._status_thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------ lifecycle

    def start(self):
        if self.state == SessionState.STOPPED:
            raise RuntimeError("a stopped session cannot be restarted")
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self.refresh_location()
        logger.info(f"Hub server: {self.hub_server}")
        self._thread = threading.Thread(target=self._run_loop, name="validator-session", daemon=True)
        self._thread.start()
        self._status_thread = threading.Thread(target=self._status_loop, name="validator-status", daemon=True)
        self._status_thread.start()

    def stop(self):
        self._stop.set()
        with self._conn_lock:
            conn = self._conn
        if conn:
            conn.close()
        if self._thread and self._thread is not threading.current_thread():
            self._thread.join(STOP_JOIN_TIMEOUT)
        self._set_state(SessionState.STOPPED)

    def join(self, timeout: Optional[float] = None):
        if self._thread:
            self._thread.join(timeout)

    @property
    def running(self) -> bool:
        return not self._stop.is_set() and self._thread is not None and self._thread.is_alive()

    @property
    def connected(self) -> bool:
        with self._conn_lock:
            return self._conn is not None and not self._conn.closed

    def status(self) -> SessionStatus:
        return SessionStatus(
            state=self.state.value,
            connected=self.connected,
            validator_id=self.validator_id,
            location=self.location,
            ip_address=self.ip_address,
            last_ping_time=self.last_ping_time,
            pending_payouts=self.rewards.pending_payouts,
            validations=self.rewards.validations,
        )

    def wait_for_state(self, state: SessionState, timeout: float) -> bool:
        with self._state_changed:
            return self._state_changed.wait_for(lambda: self.state == state, timeout)

    def _set_state(self, state: SessionState):
        with self._state_changed:
            if self.state == SessionState.STOPPED:
                return
            self.state = state
            self._state_changed.notify_all()

    # ------------------------------------------------------------ location

    def refresh_location(self) -> bool:
        if self.geo_lookup is None:
            return False
        try:
            info = self.geo_lookup()
        except Exception as exc:
            logger.warning(f"Could not determine location: {exc}")
            return False
        self.ip_address = info.ip
        self.location = info.location
        logger.info(f"IP Address: {self.ip_address} | Location: {self.location}")
        return True

    def _fresh_short_location(self) -> str:
        if self.geo_lookup is None:
            return self.location
        try:
            return self.geo_lookup().short_location
        except Exception as exc:
            logger.warning(f"Could not update location: {exc}")
            return self.location

    # ------------------------------------------------------------ connection loop

    def _run_loop(self):
        while not self._stop.is_set():
            self._set_state(SessionState.CONNECTING)
            self.connect_attempts += 1
            logger.info(f"Connecting to {self.hub_server}")
            try:
                conn = self.connector(self.hub_server)
            except ConnectionError as exc:
                logger.error(f"Failed to connect: {exc}")
            else:
                self._serve(conn)
            if self._stop.is_set():
                break
            self._set_state(SessionState.RECONNECTING)
            logger.warning(f"Reconnecting in {self.reconnect_delay:g} seconds...")
            self._wait(self.reconnect_delay)
        self._set_state(SessionState.STOPPED)

    def _serve(self, conn: FrameConnection):
        with self._conn_lock:
            self._conn = conn
        if self._stop.is_set():
            conn.close()
            return
        logger.info("Connected to hub")
        try:
            self._set_state(SessionState.AWAITING_ACK)
            self._send_registration(conn)
            while True:
                try:
                    frame = conn.recv()
                except ProtocolError as exc:
                    logger.error(f"Error processing message: {exc}")
                    continue
                if frame is None:
                    break
                self._handle_frame(conn, frame)
        except HubConnectionError as exc:
            logger.error(f"Connection error: {exc}")
        finally:
            conn.close()
            with self._conn_lock:
                if self._conn is conn:
                    self._conn = None
            if not self._stop.is_set():
                logger.warning("Connection interrupted")

    def _send_registration(self, conn: FrameConnection):
        callback_id = str(uuid.uuid4())
        public_key = self.signer.public_key_b64
        signed = self.signer.sign_text(registration_message(callback_id, public_key))
        self.registration_callback_id = callback_id
        conn.send(signup_frame(Registration(
            callback_id=callback_id,
            ip=self.ip_address,
            public_key=public_key,
            signed_message=signed,
            location=self.location,
        )))
        logger.info(f"Registering validator, public key {public_key[:12]}...{public_key[-8:]}")

    # ------------------------------------------------------------ frames

    def _handle_frame(self, conn: FrameConnection, frame: dict):
        ok, reason = validate_incoming(frame, from_hub=True)
        if not ok:
            logger.warning(f"Dropping malformed frame from hub: {reason}")
            return
        data = frame["data"]
        mtype = frame_type(frame)
        if mtype == MsgType.SIGNUP:
            self._on_signup_ack(data)
        elif mtype == MsgType.VALIDATE:
            if self.state != SessionState.ACTIVE:
                logger.warning(f"Ignoring validation request {data['callbackId']} before registration")
                return
            request = ValidationRequest.from_dict(data)
            threading.Thread(
                target=self.handle_validation,
                args=(conn, request),
                name=f"validate-{request.callback_id[:8]}",
                daemon=True,
            ).start()

    def _on_signup_ack(self, data: dict):
        self.validator_id = data["validatorId"]
        if data.get("pendingPayouts") is not None:
            self.rewards.seed(data["pendingPayouts"])
            logger.info(f"Current rewards: {self.rewards.pending_payouts} lamports")
        self._set_state(SessionState.ACTIVE)
        logger.info(f"Validator registered: {self.validator_id}; ACTIVE and ready for validation requests")

    def handle_validation(self, conn: FrameConnection, request: ValidationRequest) -> ValidationResult:
        logger.info(f"Validating URL: {request.url}")
        signature = self.signer.sign_text(reply_message(request.callback_id))
        try:
            measurement = self.probe(request.url, self.probe_config)
        except Exception as exc:
            logger.error(f"Website check failed: {exc}")
            measurement = None
        self.last_ping_time = time.time()

        status = classify(measurement)
        total = self.rewards.credit()
        logger.info(f"Rewards: +{self.rewards.credit_per_validation} lamports (Total: {total})")

        if status == STATUS_GOOD:
            latency = reported_latency(measurement)
            location = self.location
            logger.info(
                f"Response status: {measurement.status} latency: {format_latency(latency)} "
                f"(ping={measurement.network_ping} tcp={measurement.tcp_time} http={measurement.http_latency})"
            )
        else:
            latency = 0
            location = self._fresh_short_location()
            logger.info(f"Response status: {measurement.status if measurement else 'unknown'} -> {STATUS_BAD}")

        result = ValidationResult(
            callback_id=request.callback_id,
            status=status,
            latency=latency,
            validator_id=self.validator_id,
            signed_message=signature,
            location=location,
            ip_address=self.ip_address,
        )
        try:
            conn.send(validate_result_frame(result))
        except HubConnectionError as exc:
            logger.error(f"Could not report result for {request.callback_id}: {exc}")
        if self.on_result:
            self.on_result(result, measurement)
        return result

    # ------------------------------------------------------------ status

    def _status_loop(self):
        while not self._stop.wait(self.status_interval):
            if not self.connected:
                continue
            last = time.strftime("%H:%M:%S", time.localtime(self.last_ping_time)) if self.last_ping_time else "N/A"
            logger.info(
                f"Validator active | id={self.validator_id} | Latest ping: {last} | "
                f"rewards={self.rewards.pending_payouts}"
            )
