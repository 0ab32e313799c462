"""Shared fixtures: an in-memory virtual interface and a fake HTTP proxy."""

import queue
import socket
import threading
import time

import pytest
from scapy.layers.inet import IP, TCP
from scapy.packet import Raw

from proxytun.codec import decode_ipv4, decode_tcp, tcp_payload
from proxytun.config import ProxyConfig


class FakeInterface:
    """Queue-backed stand-in for the TUN device."""

    def __init__(self):
        self.inbound = queue.Queue()
        self.written = []
        self.closed = False
        self._cond = threading.Condition()

    def read(self, timeout=None):
        try:
            item = self.inbound.get(timeout=timeout)
        except queue.Empty:
            return None
        if isinstance(item, Exception):
            raise item
        return item

    def write(self, packet):
        with self._cond:
            self.written.append(bytes(packet))
            self._cond.notify_all()

    def close(self):
        self.closed = True

    def segments(self):
        """Decoded (ip, tcp, payload) for everything written so far."""
        with self._cond:
            written = list(self.written)
        result = []
        for datagram in written:
            ip = decode_ipv4(datagram)
            tcp = decode_tcp(datagram, ip.header_length)
            result.append((ip, tcp, tcp_payload(datagram, ip, tcp)))
        return result

    def wait_for(self, predicate, timeout=5.0):
        """Wait until predicate(segments) is true; returns the segments."""
        deadline = time.monotonic() + timeout
        while True:
            segments = self.segments()
            if predicate(segments):
                return segments
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise AssertionError(f"timed out waiting for segments, got {len(segments)}")
            with self._cond:
                self._cond.wait(min(remaining, 0.05))


class FakeProxy:
    """Threaded HTTP proxy on loopback.

    mode: "echo" relays bytes back, "silent" records what it is sent but
    never answers after the reply, "close" closes right after the reply,
    "hang" never replies. ``reply`` may be a list of chunks written
    separately.
    """

    def __init__(self, reply=b"HTTP/1.1 200 Connection established\r\n\r\n", mode="echo"):
        self.reply = reply
        self.mode = mode
        self.requests = []
        self.received = []
        self.connections = []
        self._server = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._server.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._server.bind(("127.0.0.1", 0))
        self._server.listen(256)
        self.host, self.port = self._server.getsockname()
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._serve, daemon=True)
        self._thread.start()

    def _serve(self):
        self._server.settimeout(0.1)
        while not self._stop.is_set():
            try:
                conn, _ = self._server.accept()
            except socket.timeout:
                continue
            except OSError:
                return
            self.connections.append(conn)
            threading.Thread(target=self._handle, args=(conn,), daemon=True).start()

    def _handle(self, conn):
        try:
            request = b""
            while b"\r\n\r\n" not in request:
                chunk = conn.recv(4096)
                if not chunk:
                    return
                request += chunk
            self.requests.append(request)
            if self.mode == "hang":
                self._stop.wait()
                return
            chunks = self.reply if isinstance(self.reply, list) else [self.reply]
            for chunk in chunks:
                conn.sendall(chunk)
                if len(chunks) > 1:
                    time.sleep(0.05)
            if self.mode == "close":
                conn.close()
                return
            while True:
                data = conn.recv(4096)
                if not data:
                    return
                self.received.append(data)
                if self.mode == "echo":
                    conn.sendall(data)
        except OSError:
            return

    def received_bytes(self):
        return b"".join(self.received)

    def config(self, **overrides):
        return ProxyConfig(proxy_host=self.host, proxy_port=self.port, **overrides)

    def close(self):
        self._stop.set()
        self._server.close()
        for conn in self.connections:
            try:
                conn.close()
            except OSError:
                pass


@pytest.fixture
def fake_interface():
    return FakeInterface()


@pytest.fixture
def fake_proxy():
    """Factory for fake proxies; all are closed after the test."""
    proxies = []

    def make(**kwargs):
        proxy = FakeProxy(**kwargs)
        proxies.append(proxy)
        return proxy

    yield make
    for proxy in proxies:
        proxy.close()


@pytest.fixture
def make_datagram():
    """Build a raw device->remote IPv4/TCP datagram with scapy."""

    def make(flags="S", seq=1000, ack=0, payload=b"", src="10.8.0.2", dst="93.184.216.34",
             sport=40000, dport=443, options=None):
        tcp = TCP(sport=sport, dport=dport, seq=seq, ack=ack, flags=flags)
        if options is not None:
            tcp.options = options
        packet = IP(src=src, dst=dst) / tcp
        if payload:
            packet = packet / Raw(load=payload)
        return bytes(packet)

    return make


@pytest.fixture
def wait_until():
    def wait(predicate, timeout=5.0, interval=0.01):
        deadline = time.monotonic() + timeout
        while not predicate():
            if time.monotonic() > deadline:
                raise AssertionError("condition not met in time")
            time.sleep(interval)

    return wait
