"""
Hub side of the validator protocol.

HubRegistry tracks live validators and ingests their signed reports.
HubServer accepts validator connections (one reader thread each) and feeds the registry.
"""

import itertools
import logging
import os
import socket
import sys
import threading
import time
import uuid
from dataclasses import dataclass, field, replace
from typing import Callable, Dict, List, Optional, Tuple

from crypto_utils import verify_text
from errors import HubConnectionError, ProtocolError, SignatureError
from geo import UNKNOWN
from protocol import (
    MsgType,
    ValidationRequest,
    frame_type,
    registration_message,
    reply_message,
    signup_ack_frame,
    validate_incoming,
    validate_request_frame,
)
from settings import HubSettings, load_hub_settings
from transport import FrameConnection

MAX_ID_ATTEMPTS = 100
ACCEPT_POLL = 0.5

DEBUG = os.environ.get("DEBUG", "0") == "1"

logger = logging.getLogger("uptime-hub")


@dataclass
class ValidatorRecord:
    validator_id: str
    public_key: str
    location: str
    ip: str
    client_ip: str
    conn: object  # connection handle captured at accept time
    connection_time: float
    last_active: float
    pending: Dict[str, str] = field(default_factory=dict)  # callbackId -> url


@dataclass
class ReportEvent:
    validator_id: str
    ip: str
    url: str
    status: str
    latency: float


class HubRegistry:
    """
    Live validator records keyed by validatorId. All access goes through one lock.

    id_factory may be any callable producing candidate ids; candidates already in
    use are rejected and, after MAX_ID_ATTEMPTS, the internal counter takes over.
    """

    def __init__(self, id_factory: Optional[Callable[[], str]] = None,
                 on_event: Optional[Callable[[ReportEvent], None]] = None):
        self._records: Dict[str, ValidatorRecord] = {}
        self._lock = threading.Lock()
        self._counter = itertools.count(1)
        self.id_factory = id_factory or self._counter_id
        self.on_event = on_event

    def __len__(self):
        with self._lock:
            return len(self._records)

    def _counter_id(self) -> str:
        return f"validator-{next(self._counter)}"

    def _allocate_id(self) -> str:
        for _ in range(MAX_ID_ATTEMPTS):
            candidate = self.id_factory()
            if candidate and candidate not in self._records:
                return candidate
        logger.warning("validator id generator keeps colliding, using counter ids")
        while True:
            candidate = self._counter_id()
            if candidate not in self._records:
                return candidate

    def on_register(self, conn, data: dict, client_ip: str = UNKNOWN) -> str:
        callback_id = data.get("callbackId", "")
        public_key = data.get("publicKey", "")
        signed = data.get("signedMessage", "")
        if not verify_text(registration_message(callback_id, public_key), signed, public_key):
            raise SignatureError(f"registration signature does not verify for key {public_key[:16]}...")

        ip = data.get("ip")
        if not ip or ip == UNKNOWN:
            ip = client_ip
        now = time.time()
        with self._lock:
            validator_id = self._allocate_id()
            self._records[validator_id] = ValidatorRecord(
                validator_id=validator_id,
                public_key=public_key,
                location=data.get("location") or UNKNOWN,
                ip=ip,
                client_ip=client_ip,
                conn=conn,
                connection_time=now,
                last_active=now,
            )
            active = len(self._records)
        logger.info(f"Validator signed up with ID: {validator_id} key={public_key[:16]}... ip={ip}")
        logger.info(f"Active validators: {active}")
        return validator_id

    def get(self, validator_id: str) -> Optional[ValidatorRecord]:
        with self._lock:
            record = self._records.get(validator_id)
            return replace(record, pending=dict(record.pending)) if record else None

    def dispatch(self, validator_id: str, url: str) -> ValidationRequest:
        """
        Send one validation request; the minted callbackId stays outstanding until reported.
        """
        callback_id = str(uuid.uuid4())
        with self._lock:
            record = self._records.get(validator_id)
            if record is None:
                raise KeyError(validator_id)
            record.pending[callback_id] = url
            conn = record.conn
        request = ValidationRequest(callback_id=callback_id, url=url)
        try:
            conn.send(validate_request_frame(request))
        except HubConnectionError:
            with self._lock:
                record.pending.pop(callback_id, None)
            raise
        logger.debug(f"dispatched {url} to {validator_id} callback={callback_id}")
        return request

    def dispatch_all(self, url: str) -> List[ValidationRequest]:
        with self._lock:
            ids = list(self._records)
        sent = []
        for validator_id in ids:
            try:
                sent.append(self.dispatch(validator_id, url))
            except (KeyError, HubConnectionError) as exc:
                logger.debug(f"dispatch to {validator_id} failed: {exc}")
        return sent

    def on_report(self, validator_id: str, data: dict, conn=None) -> Optional[ReportEvent]:
        callback_id = data.get("callbackId", "")
        with self._lock:
            record = self._records.get(validator_id)
            if record is None:
                logger.warning(f"Report from unknown validator {validator_id}")
                return None
            if conn is not None and record.conn is not conn:
                logger.warning(f"Report for {validator_id} arrived on a foreign connection")
                return None
            if not verify_text(reply_message(callback_id), data.get("signedMessage", ""), record.public_key):
                logger.warning(f"Bad report signature from {validator_id} callback={callback_id}")
                return None
            url = record.pending.pop(callback_id, None)
            if url is None:
                logger.warning(f"Report from {validator_id} for unknown callback {callback_id}")
                return None
            record.last_active = time.time()
            record.ip = data.get("ipAddress") or record.ip
            event = ReportEvent(
                validator_id=validator_id,
                ip=record.ip,
                url=url,
                status=data.get("status"),
                latency=data.get("latency", 0),
            )
        logger.info(
            f"Validator {event.validator_id} ({event.ip}) checked {event.url}: "
            f"{event.status} with network ping: {event.latency}ms"
        )
        if self.on_event:
            self.on_event(event)
        return event

    def on_disconnect(self, conn) -> List[str]:
        with self._lock:
            gone = [vid for vid, rec in self._records.items() if rec.conn is conn]
            for vid in gone:
                del self._records[vid]
            active = len(self._records)
        for vid in gone:
            logger.warning(f"Validator {vid} disconnected")
        logger.info(f"Active validators: {active}")
        return gone

    def snapshot(self) -> List[ValidatorRecord]:
        with self._lock:
            return [replace(r, pending=dict(r.pending)) for r in self._records.values()]


class HubServer:
    def __init__(self, registry: Optional[HubRegistry] = None, host: str = "0.0.0.0", port: int = 8081,
                 stats_interval: float = 30):
        self.registry = registry or HubRegistry()
        self.host = host
        self.port = port
        self.stats_interval = stats_interval
        self.sock: Optional[socket.socket] = None
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []
        self._conns: Dict[int, FrameConnection] = {}
        self._conns_lock = threading.Lock()

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()[:2]

    def start(self):
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind((self.host, self.port))
        self.sock.listen()
        self.sock.settimeout(ACCEPT_POLL)
        self._threads = [
            threading.Thread(target=self._accept_loop, name="hub-accept", daemon=True),
            threading.Thread(target=self._stats_loop, name="hub-stats", daemon=True),
        ]
        for th in self._threads:
            th.start()
        host, port = self.address
        logger.info(f"Hub server running on tcp://{host}:{port}")
        logger.info("Waiting for validators to connect...")

    def stop(self):
        self._stop.set()
        if self.sock:
            self.sock.close()
        with self._conns_lock:
            conns = list(self._conns.values())
        for conn in conns:
            conn.close()
        for th in self._threads:
            th.join(ACCEPT_POLL * 4)

    def dispatch(self, validator_id: str, url: str) -> ValidationRequest:
        return self.registry.dispatch(validator_id, url)

    def _accept_loop(self):
        while not self._stop.is_set():
            try:
                client, addr = self.sock.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if not self._stop.is_set():
                    logger.error(f"accept failed: {exc}")
                break
            client.settimeout(None)
            conn = FrameConnection(client, peer=addr)
            with self._conns_lock:
                self._conns[conn.conn_id] = conn
            logger.info(f"New connection from {conn.peer_ip}")
            threading.Thread(target=self._serve_conn, args=(conn,), name=f"hub-conn-{conn.conn_id}",
                             daemon=True).start()

    def _serve_conn(self, conn: FrameConnection):
        try:
            while not self._stop.is_set():
                try:
                    frame = conn.recv()
                except ProtocolError as exc:
                    logger.error(f"Failed to process message from {conn.peer_ip}: {exc}")
                    continue
                if frame is None:
                    break
                self.handle_frame(conn, frame)
        except HubConnectionError as exc:
            logger.debug(f"connection {conn.conn_id} error: {exc}")
        finally:
            self.registry.on_disconnect(conn)
            conn.close()
            with self._conns_lock:
                self._conns.pop(conn.conn_id, None)

    def handle_frame(self, conn: FrameConnection, frame: dict):
        ok, reason = validate_incoming(frame, from_hub=False)
        if not ok:
            logger.warning(f"Dropping malformed frame from {conn.peer_ip}: {reason}")
            return
        data = frame["data"]
        mtype = frame_type(frame)
        if mtype == MsgType.SIGNUP:
            try:
                validator_id = self.registry.on_register(conn, data, client_ip=conn.peer_ip)
            except SignatureError as exc:
                logger.warning(f"Rejected signup from {conn.peer_ip}: {exc}")
                return
            conn.send(signup_ack_frame(validator_id))
        elif mtype == MsgType.VALIDATE:
            self.registry.on_report(data["validatorId"], data, conn=conn)

    def _stats_loop(self):
        while not self._stop.wait(self.stats_interval):
            records = self.registry.snapshot()
            if not records:
                continue
            now = time.time()
            logger.info(f"--- Hub statistics --- active validators: {len(records)}")
            for r in records:
                logger.info(
                    f"  - {r.validator_id} ({r.location}): IP: {r.ip}, "
                    f"last active {round(now - r.last_active)}s ago, pending={len(r.pending)}"
                )


def _dispatch_loop(server: HubServer, settings: HubSettings, stop: threading.Event):
    while not stop.wait(settings.dispatch_interval):
        for url in settings.targets:
            server.registry.dispatch_all(url)


def main():
    logging.basicConfig(
        level=logging.DEBUG if DEBUG else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )
    settings = load_hub_settings()
    server = HubServer(host=settings.host, port=settings.port, stats_interval=settings.stats_interval)
    try:
        server.start()
    except OSError as exc:
        logger.error(f"Could not start hub on {settings.host}:{settings.port}: {exc}")
        sys.exit(1)

    stop = threading.Event()
    if settings.targets:
        logger.info(f"Dispatching {len(settings.targets)} target(s) every {settings.dispatch_interval}s")
        threading.Thread(target=_dispatch_loop, args=(server, settings, stop), daemon=True).start()
    logger.info("Press Ctrl+C to stop the server")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        logger.info("Stopping hub...")
    finally:
        stop.set()
        server.stop()


if __name__ == "__main__":
    main()
