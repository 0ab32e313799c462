"""HTTP CONNECT tunnel client."""

import base64
import logging
import socket
import time
from typing import Optional, Tuple

from .config import DEFAULT_CONNECT_TIMEOUT, DEFAULT_READ_TIMEOUT

logger = logging.getLogger("proxytun")

RESPONSE_BUFFER_SIZE = 4096
HEADER_TERMINATOR = b"\r\n\r\n"


class TunnelError(Exception):
    """The proxy could not be reached or refused the CONNECT."""


def build_connect_request(host: str, port: int,
                          credentials: Optional[Tuple[str, str]] = None) -> bytes:
    """Build the CONNECT request for host:port.

    Proxy-Authorization is only sent when both username and password are
    non-empty.
    """
    target = f"{host}:{port}"
    lines = [
        f"CONNECT {target} HTTP/1.1",
        f"Host: {target}",
    ]
    if _has_credentials(credentials):
        token = base64.b64encode(f"{credentials[0]}:{credentials[1]}".encode()).decode("ascii")
        lines.append(f"Proxy-Authorization: Basic {token}")
    lines.append("Connection: keep-alive")
    return ("\r\n".join(lines) + "\r\n\r\n").encode()


def _has_credentials(credentials) -> bool:
    return bool(credentials and credentials[0] and credentials[1])


def is_established(response: bytes) -> bool:
    """True if the proxy answered the CONNECT with a 200 status.

    Proxies phrase this differently, so either a canonical status line or
    the "200 Connection established" reason anywhere is accepted.
    """
    text = response.decode("latin-1")
    return text.startswith("HTTP/1.1 200") or "200 Connection established" in text


def status_line(response: bytes) -> str:
    return response.split(b"\r\n", 1)[0].decode("latin-1", errors="replace")


class ProxyTunnel:
    """An established CONNECT tunnel owned by exactly one flow.

    ``initial`` holds bytes the proxy sent right after its response headers
    (a server-first banner, for instance); recv() hands them out first.
    """

    def __init__(self, sock: socket.socket, target_host: str, target_port: int,
                 authenticated: bool, initial: bytes = b""):
        self.sock = sock
        self.target_host = target_host
        self.target_port = target_port
        self.authenticated = authenticated
        self.closed = False
        self._buffered = initial

    def send(self, data: bytes) -> None:
        self.sock.sendall(data)

    def recv(self, size: int = RESPONSE_BUFFER_SIZE, timeout: Optional[float] = None) -> bytes:
        """Read up to size bytes; raises socket.timeout after ``timeout``."""
        if self._buffered:
            data, self._buffered = self._buffered[:size], self._buffered[size:]
            return data
        self.sock.settimeout(timeout)
        return self.sock.recv(size)

    def close(self) -> None:
        """Shut down and close the proxy socket.

        shutdown() first so a thread blocked in recv() wakes up immediately.
        """
        if self.closed:
            return
        self.closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()

    def __repr__(self):
        return f"<ProxyTunnel {self.target_host}:{self.target_port}>"


def open_tunnel(
    target_host: str,
    target_port: int,
    proxy_host: str,
    proxy_port: int,
    credentials: Optional[Tuple[str, str]] = None,
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
    read_timeout: float = DEFAULT_READ_TIMEOUT,
    socket_mark: Optional[int] = None,
) -> ProxyTunnel:
    """Dial the proxy and CONNECT to target_host:target_port.

    Raises TunnelError on refusal, timeout, an empty read or any non-200
    reply; the proxy socket is closed before raising.
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    except OSError as e:
        raise TunnelError(f"cannot create socket: {e}") from e

    try:
        if socket_mark is not None:
            # keeps the proxy connection itself off the virtual interface
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_MARK, socket_mark)
        sock.settimeout(connect_timeout)
        try:
            sock.connect((proxy_host, proxy_port))
        except socket.timeout as e:
            raise TunnelError(f"connect to proxy {proxy_host}:{proxy_port} timed out") from e
        except OSError as e:
            raise TunnelError(f"connect to proxy {proxy_host}:{proxy_port} failed: {e}") from e

        request = build_connect_request(target_host, target_port, credentials)
        sock.settimeout(read_timeout)
        try:
            sock.sendall(request)
            response = _read_response(sock, time.monotonic() + read_timeout)
        except socket.timeout as e:
            raise TunnelError("timed out waiting for CONNECT response") from e
        except OSError as e:
            raise TunnelError(f"CONNECT exchange failed: {e}") from e

        if not response:
            raise TunnelError("proxy closed the connection during CONNECT")
        head, terminator, initial = response.partition(HEADER_TERMINATOR)
        logger.debug("Proxy response for %s:%s: %s", target_host, target_port, status_line(head))
        if not is_established(head):
            raise TunnelError(f"CONNECT rejected: {status_line(head)}")
        if not terminator:
            raise TunnelError("proxy closed the connection during CONNECT")
    except BaseException:
        sock.close()
        raise

    return ProxyTunnel(sock, target_host, target_port,
                       authenticated=_has_credentials(credentials), initial=initial)


def _read_response(sock: socket.socket, deadline: float) -> bytes:
    """Read until the end of the response headers, EOF or the deadline.

    Bytes following the headers in the same read are returned as well.
    """
    response = b""
    while HEADER_TERMINATOR not in response:
        if len(response) >= RESPONSE_BUFFER_SIZE:
            raise TunnelError("CONNECT response headers too long")
        if response:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise socket.timeout("timed out")
            sock.settimeout(remaining)
        chunk = sock.recv(RESPONSE_BUFFER_SIZE)
        if not chunk:
            break
        response += chunk
    return response
