import socket
import threading

import pytest

from errors import HubConnectionError, ProtocolError
from protocol import MAX_FRAME_SIZE
from transport import FrameConnection, open_connection, parse_endpoint


@pytest.fixture
def pair():
    a, b = socket.socketpair()
    left, right = FrameConnection(a), FrameConnection(b)
    yield left, right
    left.close()
    right.close()


def test_parse_endpoint():
    assert parse_endpoint("tcp://hub.example:9000") == ("hub.example", 9000)
    assert parse_endpoint("127.0.0.1:7000") == ("127.0.0.1", 7000)
    assert parse_endpoint("tcp://hub.example") == ("hub.example", 8081)
    with pytest.raises(ValueError):
        parse_endpoint("tcp://:9000")


@pytest.mark.parametrize("url", ["ws://localhost:8081", "wss://hub.example", "http://hub.example:8081"])
def test_parse_endpoint_refuses_non_tcp_schemes(url):
    with pytest.raises(ValueError, match="unsupported scheme"):
        parse_endpoint(url)


def test_frames_round_trip_in_order(pair):
    left, right = pair
    left.send({"type": "signup", "data": {"validatorId": "validator-1"}})
    left.send({"type": "validate", "data": {"url": "http://x", "callbackId": "c"}})
    assert right.recv()["data"]["validatorId"] == "validator-1"
    assert right.recv()["data"]["callbackId"] == "c"


def test_malformed_line_does_not_poison_stream(pair):
    left, right = pair
    left.sock.sendall(b"this is not json\n\n")
    left.send({"type": "signup", "data": {"validatorId": "v"}})
    with pytest.raises(ProtocolError):
        right.recv()
    assert right.recv()["type"] == "signup"


def test_peer_close_yields_none(pair):
    left, right = pair
    left.close()
    assert right.recv() is None
    with pytest.raises(HubConnectionError):
        left.send({"type": "signup", "data": {}})


def test_connection_ids_are_unique(pair):
    left, right = pair
    assert left.conn_id != right.conn_id


def test_open_connection_refused(free_port):
    with pytest.raises(HubConnectionError):
        open_connection(f"tcp://127.0.0.1:{free_port}", timeout=1.0)


def test_oversized_line_is_skipped_whole(pair):
    left, right = pair
    huge = b'{"type":"signup","data":{"pad":"' + b"a" * (MAX_FRAME_SIZE * 2) + b'"}}\n'
    follow_up = {"type": "validate", "data": {"url": "http://x", "callbackId": "after"}}

    def writer():
        left.sock.sendall(huge)
        left.send(follow_up)

    thread = threading.Thread(target=writer, daemon=True)
    thread.start()
    with pytest.raises(ProtocolError, match="too large"):
        right.recv()
    assert right.recv() == follow_up
    thread.join(5)
