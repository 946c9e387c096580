"""
Frame transport: one persistent TCP connection carrying newline-delimited JSON frames.
Used by the validator session (client side) and the hub server (accepted side).
"""

import itertools
import logging
import socket
import threading
import urllib.parse
from typing import Any, Dict, Optional, Tuple

from errors import HubConnectionError, ProtocolError
from protocol import MAX_FRAME_SIZE, decode_frame, encode_frame

DEFAULT_HUB_PORT = 8081
CONNECT_TIMEOUT = 10.0
FRAME_DELIMITER = b"\n"

logger = logging.getLogger("uptime-transport")

_conn_ids = itertools.count(1)


def parse_endpoint(url: str, default_port: int = DEFAULT_HUB_PORT) -> Tuple[str, int]:
    """
    tcp://host:port or bare host:port. The hub speaks newline-delimited JSON over
    plain TCP, so WebSocket (ws://, wss://) and other schemes are refused.
    """
    if "://" not in url:
        url = "tcp://" + url
    u = urllib.parse.urlparse(url)
    if u.scheme != "tcp":
        raise ValueError(f"unsupported scheme {u.scheme!r} in hub endpoint {url!r}, use tcp://host:port")
    if not u.hostname:
        raise ValueError(f"no host in hub endpoint {url!r}")
    try:
        port = u.port or default_port
    except ValueError as exc:
        raise ValueError(f"bad port in hub endpoint {url!r}") from exc
    return u.hostname, port


class FrameConnection:
    """
    Thread-safe for send; recv is meant for a single reader thread.
    conn_id identifies the connection for its whole lifetime.
    """

    def __init__(self, sock: socket.socket, peer: Optional[Tuple[str, int]] = None):
        self.sock = sock
        self.peer = peer
        self.conn_id = next(_conn_ids)
        self._reader = sock.makefile("rb")
        self._send_lock = threading.Lock()
        self._closed = threading.Event()

    def __repr__(self):
        return f"FrameConnection(id={self.conn_id}, peer={self.peer})"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    @property
    def peer_ip(self) -> str:
        return self.peer[0] if self.peer else "Unknown"

    def send(self, frame: Dict[str, Any]):
        data = encode_frame(frame) + FRAME_DELIMITER
        with self._send_lock:
            if self.closed:
                raise HubConnectionError("connection is closed")
            try:
                self.sock.sendall(data)
            except OSError as exc:
                raise HubConnectionError(f"send failed: {exc}") from exc

    def _readline(self) -> bytes:
        try:
            return self._reader.readline(MAX_FRAME_SIZE + 1)
        except (OSError, ValueError) as exc:
            if self.closed:
                return b""
            raise HubConnectionError(f"recv failed: {exc}") from exc

    def _discard_rest_of_line(self):
        while True:
            chunk = self._readline()
            if not chunk or chunk.endswith(FRAME_DELIMITER):
                return

    def recv(self) -> Optional[Dict[str, Any]]:
        """
        Next frame, or None once the peer has closed the connection.
        Raises ProtocolError for a malformed frame; the stream stays usable.
        """
        while True:
            line = self._readline()
            if not line:
                return None
            if len(line) > MAX_FRAME_SIZE and not line.endswith(FRAME_DELIMITER):
                self._discard_rest_of_line()
                raise ProtocolError("frame too large")
            line = line.strip()
            if not line:
                continue
            if len(line) > MAX_FRAME_SIZE:
                raise ProtocolError("frame too large")
            return decode_frame(line)

    def close(self):
        if self.closed:
            return
        self._closed.set()
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            self._reader.close()
        except OSError:
            pass
        self.sock.close()


def open_connection(endpoint: str, timeout: float = CONNECT_TIMEOUT) -> FrameConnection:
    try:
        host, port = parse_endpoint(endpoint)
    except ValueError as exc:
        raise HubConnectionError(str(exc)) from exc
    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as exc:
        raise HubConnectionError(f"connect to {host}:{port} failed: {exc}") from exc
    # persistent connection: blocking reads after the connect timeout
    sock.settimeout(None)
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_KEEPALIVE, 1)
    logger.debug(f"connected to {host}:{port}")
    return FrameConnection(sock, peer=(host, port))
