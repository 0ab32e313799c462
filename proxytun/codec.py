"""IPv4 and TCP header codec.

Decoding is fail-soft: malformed input yields ``None`` rather than an
exception, since the virtual interface is trusted and a bad datagram only
means "drop it". No checksum validation is done on input. Field parsing
and checksums come from scapy; only the length checks live here.
"""

from dataclasses import dataclass
from typing import Optional

from scapy.layers.inet import IP, TCP
from scapy.utils import checksum

IPV4_VERSION = 4
IPV4_MIN_HEADER = 20
TCP_MIN_HEADER = 20

PROTO_ICMP = 1
PROTO_TCP = 6
PROTO_UDP = 17

# TCP flags
FIN = 0x01
SYN = 0x02
RST = 0x04
PSH = 0x08
ACK = 0x10

SEQ_MOD = 1 << 32


@dataclass(frozen=True)
class IPHeader:
    """Decoded IPv4 header."""
    version: int
    header_length: int
    protocol: int
    src: str
    dst: str
    total_length: int
    tos: int = 0
    identification: int = 0
    flags_fragment: int = 0
    ttl: int = 64


@dataclass(frozen=True)
class TCPHeader:
    """Decoded TCP header."""
    src_port: int
    dst_port: int
    seq: int
    ack: int
    flags: int
    window: int
    header_length: int = TCP_MIN_HEADER
    mss: Optional[int] = None

    @property
    def is_syn(self) -> bool:
        return bool(self.flags & SYN)

    @property
    def is_ack(self) -> bool:
        return bool(self.flags & ACK)

    @property
    def is_fin(self) -> bool:
        return bool(self.flags & FIN)

    @property
    def is_rst(self) -> bool:
        return bool(self.flags & RST)

    @property
    def is_psh(self) -> bool:
        return bool(self.flags & PSH)

    def flag_names(self) -> str:
        return flag_names(self.flags)


def flag_names(flags: int) -> str:
    """Render TCP flags as e.g. "SYN-ACK" for log lines."""
    parts = []
    if flags & SYN:
        parts.append("SYN")
    if flags & ACK:
        parts.append("ACK")
    if flags & PSH:
        parts.append("PSH")
    if flags & FIN:
        parts.append("FIN")
    if flags & RST:
        parts.append("RST")
    return "-".join(parts) if parts else "NONE"


def decode_ipv4(data: bytes, length: Optional[int] = None) -> Optional[IPHeader]:
    """Decode the IPv4 header at the start of ``data``.

    Returns None when fewer than 20 bytes are available, the version is not
    4, or the declared header length lies outside [20, length].
    """
    if length is None:
        length = len(data)
    length = min(length, len(data))
    if length < IPV4_MIN_HEADER:
        return None

    version = data[0] >> 4
    header_length = (data[0] & 0x0F) * 4
    if version != IPV4_VERSION:
        return None
    if header_length < IPV4_MIN_HEADER or header_length > length:
        return None

    ip = IP(bytes(data[:header_length]))
    return IPHeader(
        version=version,
        header_length=header_length,
        protocol=ip.proto,
        src=ip.src,
        dst=ip.dst,
        total_length=ip.len,
        tos=ip.tos,
        identification=ip.id,
        flags_fragment=(int(ip.flags) << 13) | ip.frag,
        ttl=ip.ttl,
    )


def decode_tcp(data: bytes, ip_header_length: int,
               length: Optional[int] = None) -> Optional[TCPHeader]:
    """Decode the TCP header that follows an IP header of the given length.

    Returns None when fewer than 20 bytes remain at the TCP offset.
    """
    if length is None:
        length = len(data)
    length = min(length, len(data))
    offset = ip_header_length
    if length < offset + TCP_MIN_HEADER:
        return None

    header_length = (data[offset + 12] >> 4) * 4
    end = min(offset + max(header_length, TCP_MIN_HEADER), length)
    tcp = TCP(bytes(data[offset:end]))

    return TCPHeader(
        src_port=tcp.sport,
        dst_port=tcp.dport,
        seq=tcp.seq,
        ack=tcp.ack,
        flags=int(tcp.flags),
        window=tcp.window,
        header_length=header_length,
        mss=_find_mss(tcp.options),
    )


def _find_mss(options) -> Optional[int]:
    for option in options:
        if option[0] == "MSS":
            return option[1]
    return None


def tcp_payload(data: bytes, ip: IPHeader, tcp: TCPHeader,
                length: Optional[int] = None) -> bytes:
    """Return the TCP payload, bounded by the IP total length."""
    if length is None:
        length = len(data)
    end = min(length, len(data))
    if ip.header_length <= ip.total_length < end:
        end = ip.total_length
    start = ip.header_length + tcp.header_length
    if start >= end:
        return b""
    return bytes(data[start:end])


def internet_checksum(data: bytes) -> int:
    """Ones'-complement sum of 16-bit words with carry folding (RFC 1071)."""
    return checksum(bytes(data))
