"""Synthesized IPv4/TCP segments injected back to the device."""

import itertools
import random
import threading
from typing import Optional

from scapy.layers.inet import IP, TCP
from scapy.packet import Packet, Raw

from .codec import ACK, FIN, PSH, RST, SEQ_MOD, SYN
from .flow_table import FlowKey

DEFAULT_TTL = 64
DEFAULT_WINDOW = 65535


class PacketSynthesizer:
    """Builds reply packets for a device flow.

    Replies travel in the opposite direction of the intercepted flow, so the
    flow's destination becomes the source and vice versa. Checksums are left
    unset so scapy fills them in when the packet is serialized.
    """

    def __init__(self, ttl: int = DEFAULT_TTL, window: int = DEFAULT_WINDOW):
        self._ttl = ttl
        self._window = window
        self._ids = itertools.count(random.randint(0, 0xFFFF))
        self._id_lock = threading.Lock()

    def build_segment(self, key: FlowKey, seq: int, ack: int, flags: int,
                      payload: bytes = b"", mss: Optional[int] = None) -> Packet:
        """Build one reply packet with the given numbers and flags."""
        options = [("MSS", mss)] if mss is not None else []
        packet = (
            IP(src=key.dst_ip, dst=key.src_ip, id=self._next_id(), flags="DF", ttl=self._ttl)
            / TCP(
                sport=key.dst_port,
                dport=key.src_port,
                seq=seq % SEQ_MOD,
                ack=ack % SEQ_MOD,
                flags=flags,
                window=self._window,
                options=options,
            )
        )
        if payload:
            packet = packet / Raw(load=payload)
        return packet

    def create_syn_ack(self, key: FlowKey, isn: int, client_isn: int,
                       mss: Optional[int] = None) -> Packet:
        """SYN-ACK answering the device's SYN; acknowledges client_isn + 1."""
        return self.build_segment(key, isn, client_isn + 1, SYN | ACK, mss=mss)

    def create_ack(self, key: FlowKey, seq: int, ack: int) -> Packet:
        return self.build_segment(key, seq, ack, ACK)

    def create_data(self, key: FlowKey, seq: int, ack: int, payload: bytes) -> Packet:
        return self.build_segment(key, seq, ack, PSH | ACK, payload)

    def create_fin(self, key: FlowKey, seq: int, ack: int) -> Packet:
        return self.build_segment(key, seq, ack, FIN | ACK)

    def create_rst(self, key: FlowKey, seq: int, ack: int) -> Packet:
        return self.build_segment(key, seq, ack, RST | ACK)

    def _next_id(self) -> int:
        with self._id_lock:
            return next(self._ids) & 0xFFFF

    @staticmethod
    def generate_random_isn() -> int:
        """Generate a random initial sequence number."""
        return random.randint(0, 0xFFFFFFFF)
