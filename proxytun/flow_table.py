"""Flow table for tracking live device flows."""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from .codec import IPHeader, TCPHeader


@dataclass(frozen=True)
class FlowKey:
    """4-tuple of the device-originated connection."""
    src_ip: str
    src_port: int
    dst_ip: str
    dst_port: int

    def __str__(self):
        return f"{self.src_ip}:{self.src_port}->{self.dst_ip}:{self.dst_port}"


class FlowTable:
    """Thread-safe map from FlowKey to its live flow.

    At most one flow exists per key; insertion of a second one is refused.
    """

    def __init__(self):
        self._flows: Dict[FlowKey, object] = {}
        self._lock = threading.Lock()

    def add_flow(self, key: FlowKey, flow) -> bool:
        """Register a flow unless the key is already taken."""
        with self._lock:
            if key in self._flows:
                return False
            self._flows[key] = flow
            return True

    def get_flow(self, key: FlowKey):
        """Get the flow for key, or None."""
        with self._lock:
            return self._flows.get(key)

    def remove_flow(self, key: FlowKey, flow=None) -> bool:
        """Remove the entry for key.

        When ``flow`` is given the entry is only removed if it still maps to
        that flow, so a stale handler can't evict its successor.
        """
        with self._lock:
            current = self._flows.get(key)
            if current is None or (flow is not None and current is not flow):
                return False
            del self._flows[key]
            return True

    def flows(self) -> List[object]:
        """Snapshot of all live flows."""
        with self._lock:
            return list(self._flows.values())

    def __len__(self):
        with self._lock:
            return len(self._flows)

    def __contains__(self, key: FlowKey) -> bool:
        with self._lock:
            return key in self._flows

    @staticmethod
    def extract_key(ip: IPHeader, tcp: TCPHeader) -> FlowKey:
        """Extract the FlowKey of a decoded device datagram."""
        return FlowKey(
            src_ip=ip.src,
            src_port=tcp.src_port,
            dst_ip=ip.dst,
            dst_port=tcp.dst_port,
        )
