"""
Shared pytest fixtures: local HTTP target server, keypairs, free ports.
"""

import os
import socket
import sys
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

import pytest

# Add repo root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from crypto_utils import Signer, generate_ed25519_keypair


def get_free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


class _TargetHandler(BaseHTTPRequestHandler):
    """
    Serves server.routes: {path: {"status", "headers", "delay", "body"}}.
    A (method, path) key overrides the plain path entry for that method.
    """

    def _respond(self, method: str):
        path = self.path.split("?", 1)[0]
        self.server.hits.append((method, path))
        route = self.server.routes.get((method, path)) or self.server.routes.get(path)
        if route is None:
            route = {"status": 404}
        delay = route.get("delay", 0)
        if delay:
            time.sleep(delay)
        self.send_response(route.get("status", 200))
        for key, value in route.get("headers", {}).items():
            self.send_header(key, value)
        body = route.get("body", b"") if method == "GET" else b""
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_HEAD(self):
        self._respond("HEAD")

    def do_GET(self):
        self._respond("GET")

    def log_message(self, format, *args):
        pass


class TargetServer:
    def __init__(self):
        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _TargetHandler)
        self.httpd.daemon_threads = True
        self.httpd.routes = {}
        self.httpd.hits = []
        self._thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    @property
    def routes(self) -> dict:
        return self.httpd.routes

    @property
    def hits(self) -> list:
        return self.httpd.hits

    @property
    def base_url(self) -> str:
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return self.base_url + path

    def start(self):
        self._thread.start()

    def stop(self):
        self.httpd.shutdown()
        self.httpd.server_close()


@pytest.fixture
def target_server():
    server = TargetServer()
    server.start()
    yield server
    server.stop()


@pytest.fixture
def keypair():
    return generate_ed25519_keypair()


@pytest.fixture
def signer(keypair):
    return Signer(keypair)


@pytest.fixture
def free_port():
    return get_free_port()
