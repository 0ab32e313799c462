"""Virtual interface access through scapy's TUN support."""

import select
import threading
from typing import Optional

from scapy.packet import Packet
from scapy.layers.tuntap import TunTapInterface

from .config import DEFAULT_MTU


class TunInterface:
    """Reads and writes whole IPv4 datagrams on a TUN device.

    Many flow threads inject segments concurrently, so writes are
    serialized. Interface setup (addresses, routes) is left to the host.
    """

    def __init__(self, iface: str = "tun0", mtu: int = DEFAULT_MTU):
        self.iface = iface
        self.mtu = mtu
        self._tun = TunTapInterface(iface=iface, mode_tun=True, default_read_size=mtu)
        self._write_lock = threading.Lock()

    def read(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """Return the next datagram, or None if none arrived within timeout."""
        if timeout is not None:
            ready, _, _ = select.select([self._tun.ins], [], [], timeout)
            if not ready:
                return None
        _cls, data, _ts = self._tun.recv_raw(self.mtu)
        return data

    def write(self, packet: Packet) -> None:
        """Inject one synthesized packet back to the device."""
        with self._write_lock:
            self._tun.send(packet)

    def close(self) -> None:
        self._tun.close()
