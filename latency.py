"""
Latency measurement engine.

measure() combines several independent techniques into one reachability verdict:
  - echo probe (native ICMP where permitted, otherwise the OS ping command)
  - DNS resolution time
  - TCP connect time to the http(s) port
  - HTTP HEAD with bounded manual redirect following, GET fallback for the status

Every sub-probe is best-effort: failures become None fields, never exceptions.
"""

import itertools
import logging
import os
import re
import socket
import struct
import subprocess
import sys
import time
import urllib.parse
from concurrent import futures
from dataclasses import dataclass, asdict
from typing import Optional, Tuple

import requests

from errors import MalformedRedirectError, ProbeError, ProbeTimeout, RedirectError

IS_WINDOWS = sys.platform.startswith("win")

PING_TIMEOUT = 3.0         # seconds, echo probe
TCP_CONNECT_TIMEOUT = 2.0  # seconds
HEAD_TIMEOUT = 3.0         # seconds, per HEAD request
RESULT_GRACE = 0.5         # seconds allowed on top of a sub-probe's own timeout

REDIRECT_STATUSES = (301, 302, 303, 307, 308)
PROBE_HEADERS = {"Cache-Control": "no-cache", "Connection": "close"}

ICMP_ECHO_REQUEST = 8
ICMP_ECHO_REPLY = 0

_echo_seq = itertools.count(1)

logger = logging.getLogger("uptime-latency")


@dataclass
class ProbeConfig:
    timeout_ms: int = 3000
    prefer_network_ping: bool = True
    measure_dns: bool = True
    use_head_request: bool = True
    max_redirects: int = 5

    @property
    def timeout(self) -> float:
        return self.timeout_ms / 1000.0


@dataclass
class LatencyMeasurement:
    url: str
    network_ping: Optional[float] = None
    dns_time: Optional[float] = None
    tcp_time: Optional[float] = None
    http_latency: Optional[float] = None
    status: int = 0
    final_url: Optional[str] = None
    best_latency: Optional[float] = None
    error: Optional[str] = None

    @property
    def reachable(self) -> bool:
        return self.status != 0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class HttpResult:
    time: Optional[float]
    status: int
    final_url: str


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000.0, 3)


def default_port(parsed: urllib.parse.ParseResult) -> int:
    if parsed.port:
        return parsed.port
    return 443 if parsed.scheme == "https" else 80


def parse_target(url: str) -> Tuple[str, int]:
    parsed = urllib.parse.urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.hostname:
        raise ProbeError(f"not an http(s) url: {url!r}")
    return parsed.hostname, default_port(parsed)


# ---------------------------------------------------------------- echo probe

_PING_PATTERNS_WINDOWS = (
    re.compile(r"Average\s*=\s*(\d+)ms"),
    re.compile(r"time[=<](\d+)ms"),
)
_PING_PATTERN_UNIX = re.compile(r"time=(\d+(?:\.\d+)?)\s*ms")
_PING_PATTERN_GENERIC = re.compile(r"[=<](\d+(?:\.\d+)?)\s*ms")


def parse_ping_output(output: str, windows: bool = IS_WINDOWS) -> Optional[float]:
    if windows:
        for pattern in _PING_PATTERNS_WINDOWS:
            m = pattern.search(output)
            if m:
                return float(int(m.group(1)))
    else:
        m = _PING_PATTERN_UNIX.search(output)
        if m:
            return float(m.group(1))
    m = _PING_PATTERN_GENERIC.search(output)
    if m:
        return float(m.group(1))
    return None


def ping_command(hostname: str, windows: bool = IS_WINDOWS) -> list:
    return ["ping", "-n" if windows else "-c", "1", hostname]


def system_ping(hostname: str, timeout: float = PING_TIMEOUT) -> Optional[float]:
    """
    One round trip through the OS ping command. None on timeout, failure or unparsable output.
    """
    try:
        proc = subprocess.run(
            ping_command(hostname),
            capture_output=True,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        logger.debug(f"ping {hostname} timed out")
        return None
    except OSError as exc:
        logger.debug(f"ping {hostname} failed to start: {exc}")
        return None
    if proc.returncode != 0:
        return None
    rtt = parse_ping_output(proc.stdout)
    if rtt is None:
        logger.debug(f"Could not extract ping time from output: {proc.stdout!r}")
    return rtt


def _icmp_checksum(data: bytes) -> int:
    if len(data) % 2:
        data += b"\x00"
    total = sum(struct.unpack(f"!{len(data) // 2}H", data))
    total = (total >> 16) + (total & 0xFFFF)
    total += total >> 16
    return ~total & 0xFFFF


def build_echo_request(ident: int, seq: int, payload: bytes) -> bytes:
    header = struct.pack("!BBHHH", ICMP_ECHO_REQUEST, 0, 0, ident, seq)
    checksum = _icmp_checksum(header + payload)
    return struct.pack("!BBHHH", ICMP_ECHO_REQUEST, 0, checksum, ident, seq) + payload


def icmp_ping(hostname: str, timeout: float = PING_TIMEOUT) -> Optional[float]:
    """
    Native echo over an unprivileged ICMP datagram socket.
    Raises ProbeError when the platform does not allow such sockets;
    returns None when the host does not answer in time.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_ICMP)
    except (OSError, AttributeError) as exc:
        raise ProbeError(f"icmp socket not permitted: {exc}") from exc
    deadline = time.monotonic() + timeout
    try:
        address = socket.gethostbyname(hostname)
        seq = next(_echo_seq) & 0xFFFF
        payload = struct.pack("!d", time.time()) + os.urandom(8)
        start = time.perf_counter()
        sock.settimeout(timeout)
        sock.sendto(build_echo_request(0, seq, payload), (address, 0))
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            sock.settimeout(remaining)
            data, _ = sock.recvfrom(1024)
            if data and data[0] >> 4 == 4:
                # some platforms hand back the IPv4 header too
                data = data[(data[0] & 0x0F) * 4:]
            if len(data) < 8:
                continue
            icmp_type, _, _, _, reply_seq = struct.unpack("!BBHHH", data[:8])
            # replies to concurrent echo requests may reach this socket too
            if icmp_type == ICMP_ECHO_REPLY and reply_seq == seq and data[8:] == payload:
                return _elapsed_ms(start)
    except socket.timeout:
        return None
    except OSError as exc:
        logger.debug(f"icmp echo to {hostname} failed: {exc}")
        return None
    finally:
        sock.close()


def network_latency(hostname: str) -> Optional[float]:
    """
    Echo probe: native ICMP first, the OS ping command where that is not permitted.
    """
    if not hostname or hostname.startswith("-"):
        return None
    try:
        return icmp_ping(hostname, PING_TIMEOUT)
    except ProbeError as exc:
        logger.debug(f"{exc}; falling back to system ping")
    return system_ping(hostname, PING_TIMEOUT)


# ---------------------------------------------------------------- dns / tcp

def dns_resolution_time(hostname: str) -> Optional[float]:
    start = time.perf_counter()
    try:
        socket.getaddrinfo(hostname, None)
    except (OSError, UnicodeError) as exc:
        logger.debug(f"dns lookup of {hostname} failed: {exc}")
        return None
    return _elapsed_ms(start)


def tcp_connection_time(hostname: str, port: int, timeout: float = TCP_CONNECT_TIMEOUT) -> Optional[float]:
    start = time.perf_counter()
    try:
        sock = socket.create_connection((hostname, port), timeout=timeout)
    except (OSError, UnicodeError) as exc:
        logger.debug(f"tcp connect {hostname}:{port} failed: {exc}")
        return None
    elapsed = _elapsed_ms(start)
    sock.close()
    return elapsed


# ---------------------------------------------------------------- http

def _budget(deadline: Optional[float], timeout: float, what: str) -> float:
    """
    Per-request timeout, capped by what is left of the overall HTTP budget.
    """
    if deadline is None:
        return timeout
    remaining = deadline - time.perf_counter()
    if remaining <= 0:
        raise ProbeTimeout(f"{what}: time budget spent")
    return min(timeout, remaining)


def head_request(url: str, timeout: float = HEAD_TIMEOUT, max_redirects: int = 5,
                 session: Optional[requests.Session] = None, deadline: Optional[float] = None) -> HttpResult:
    """
    HEAD with an explicit, bounded redirect loop.

    Raises RedirectError past max_redirects hops, MalformedRedirectError for a
    3xx without Location, ProbeTimeout / ProbeError for transport failures.
    deadline (a perf_counter value) bounds the whole chain, not each hop.
    """
    http = session or requests
    start = time.perf_counter()
    current = url
    redirects = 0
    while True:
        hop_timeout = _budget(deadline, timeout, f"HEAD {current}")
        try:
            resp = http.head(current, timeout=hop_timeout, allow_redirects=False, headers=PROBE_HEADERS)
        except requests.Timeout as exc:
            raise ProbeTimeout(f"HEAD {current} timed out") from exc
        except requests.RequestException as exc:
            raise ProbeError(f"HEAD {current} failed: {exc}") from exc
        resp.close()
        if resp.status_code not in REDIRECT_STATUSES:
            return HttpResult(time=_elapsed_ms(start), status=resp.status_code, final_url=current)
        if redirects >= max_redirects:
            raise RedirectError(f"Too many redirects (>{max_redirects}) starting at {url}")
        location = resp.headers.get("Location")
        if not location:
            raise MalformedRedirectError(f"Redirect location missing at {current}")
        current = urllib.parse.urljoin(current, location)
        redirects += 1


def get_request(url: str, timeout: float = HEAD_TIMEOUT, max_redirects: int = 5,
                deadline: Optional[float] = None) -> HttpResult:
    """
    GET with native redirect following; the body is never read.
    """
    timeout = _budget(deadline, timeout, f"GET {url}")
    start = time.perf_counter()

    def check_budget(resp, *args, **kwargs):
        # runs for every hop of the redirect chain
        if deadline is not None and time.perf_counter() > deadline:
            resp.close()
            raise ProbeTimeout(f"GET {url}: time budget spent at {resp.url}")

    with requests.Session() as session:
        session.max_redirects = max_redirects
        session.hooks["response"].append(check_budget)
        try:
            resp = session.get(url, timeout=timeout, allow_redirects=True,
                               headers={"Cache-Control": "no-cache"}, stream=True)
        except requests.Timeout as exc:
            raise ProbeTimeout(f"GET {url} timed out") from exc
        except requests.RequestException as exc:
            raise ProbeError(f"GET {url} failed: {exc}") from exc
        resp.close()
    return HttpResult(time=_elapsed_ms(start), status=resp.status_code, final_url=resp.url)


def _http_probe(result: LatencyMeasurement, config: ProbeConfig):
    # one budget for the HEAD chain and the GET fallback together
    deadline = time.perf_counter() + config.timeout
    if config.use_head_request:
        try:
            head = head_request(result.url, config.timeout, config.max_redirects, deadline=deadline)
            result.http_latency = head.time
            result.status = head.status
            result.final_url = head.final_url
            return
        except ProbeError as exc:
            logger.debug(f"HEAD path failed for {result.url}: {exc}; falling back to GET")
        # fallback only establishes the status, its timing is discarded
        try:
            get = get_request(result.url, config.timeout, config.max_redirects, deadline=deadline)
            result.status = get.status
            result.final_url = get.final_url
        except ProbeError as exc:
            logger.debug(f"GET fallback failed for {result.url}: {exc}")
            result.status = 0
        return

    try:
        get = get_request(result.url, config.timeout, config.max_redirects, deadline=deadline)
        result.http_latency = get.time
        result.status = get.status
        result.final_url = get.final_url
    except ProbeError as exc:
        logger.debug(f"GET failed for {result.url}: {exc}")
        result.status = 0


# ---------------------------------------------------------------- aggregate

def _result_or_none(future: futures.Future, timeout: float) -> Optional[float]:
    try:
        return future.result(timeout=timeout)
    except futures.TimeoutError:
        future.cancel()
        return None
    except Exception as exc:
        logger.debug(f"sub-probe raised: {exc}")
        return None


def select_best_latency(result: LatencyMeasurement, config: ProbeConfig) -> Optional[float]:
    if config.prefer_network_ping and result.network_ping is not None:
        return result.network_ping
    return result.http_latency


def measure(url: str, config: Optional[ProbeConfig] = None) -> LatencyMeasurement:
    """
    Measure reachability and latency of url. Never raises.

    Echo probe, DNS timing and TCP connect run concurrently; the HTTP probe runs
    after them because its status code decides the verdict; HEAD hops and the
    GET fallback share one timeout_ms budget. status == 0 means the target was
    not reachable at all.
    """
    config = config or ProbeConfig()
    result = LatencyMeasurement(url=url, final_url=url)
    try:
        hostname, port = parse_target(url)

        pool = futures.ThreadPoolExecutor(max_workers=3, thread_name_prefix="probe")
        try:
            ping_f = pool.submit(network_latency, hostname)
            dns_f = pool.submit(dns_resolution_time, hostname) if config.measure_dns else None
            tcp_f = pool.submit(tcp_connection_time, hostname, port, TCP_CONNECT_TIMEOUT)

            result.network_ping = _result_or_none(ping_f, PING_TIMEOUT + RESULT_GRACE)
            if dns_f is not None:
                result.dns_time = _result_or_none(dns_f, config.timeout)
            result.tcp_time = _result_or_none(tcp_f, TCP_CONNECT_TIMEOUT + RESULT_GRACE)
        finally:
            # a stuck resolver thread must not hold up the verdict
            pool.shutdown(wait=False)

        _http_probe(result, config)
        result.best_latency = select_best_latency(result, config)
    except Exception as exc:
        logger.debug(f"measure {url} failed: {exc}")
        result.error = str(exc)
        result.status = 0
    return result


def format_latency(latency: Optional[float]) -> str:
    if latency is None:
        return "n/a"
    if latency < 50:
        label = "excellent"
    elif latency < 100:
        label = "very good"
    elif latency < 200:
        label = "good"
    elif latency < 500:
        label = "fair"
    else:
        label = "poor"
    return f"{latency:.0f}ms ({label})"
