"""Proxy and engine configuration."""

from dataclasses import dataclass
from typing import Optional, Tuple

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_READ_TIMEOUT = 10.0
DEFAULT_IDLE_TIMEOUT = 30.0
DEFAULT_MAX_FLOW_AGE = 300.0
DEFAULT_MTU = 1500
DEFAULT_PENDING_LIMIT = 64 * 1024

# IPv4 + TCP headers without options
HEADER_OVERHEAD = 40


@dataclass(frozen=True)
class ProxyConfig:
    """Settings captured by each flow when it is created."""
    proxy_host: str
    proxy_port: int
    proxy_username: str = ""
    proxy_password: str = ""
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    read_timeout: float = DEFAULT_READ_TIMEOUT
    idle_timeout: float = DEFAULT_IDLE_TIMEOUT
    max_flow_age: float = DEFAULT_MAX_FLOW_AGE
    mtu: int = DEFAULT_MTU
    pending_limit: int = DEFAULT_PENDING_LIMIT
    socket_mark: Optional[int] = None

    def __post_init__(self):
        if not self.proxy_host:
            raise ValueError("proxy host must not be empty")
        if not 1 <= self.proxy_port <= 65535:
            raise ValueError(f"proxy port out of range: {self.proxy_port}")
        for name in ("connect_timeout", "read_timeout", "idle_timeout", "max_flow_age"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")
        if self.mtu < 576:
            raise ValueError(f"mtu too small: {self.mtu}")
        if self.pending_limit < 0:
            raise ValueError("pending_limit must not be negative")

    @property
    def credentials(self) -> Optional[Tuple[str, str]]:
        """(username, password) when both are set, else None."""
        if self.proxy_username and self.proxy_password:
            return self.proxy_username, self.proxy_password
        return None

    @property
    def max_segment_size(self) -> int:
        return self.mtu - HEADER_OVERHEAD
