"""Per-flow connection handling.

A Flow terminates the device's TCP connection locally (it answers the SYN,
acknowledges data and frames proxy bytes as segments) and carries the byte
stream over an HTTP CONNECT tunnel to the original destination.
"""

import enum
import logging
import queue
import socket
import threading
import time

from scapy.packet import Packet

from .codec import SEQ_MOD, TCPHeader
from .config import ProxyConfig
from .flow_table import FlowKey, FlowTable
from .synthesizer import PacketSynthesizer
from .tunnel import ProxyTunnel, TunnelError, open_tunnel

logger = logging.getLogger("proxytun")

RECV_SIZE = 4096
UPLINK_DRAIN_TIMEOUT = 1.0

_EOF = object()


class FlowState(enum.Enum):
    HANDSHAKING = "handshaking"
    PROXYING = "proxying"
    ESTABLISHED = "established"
    CLOSING = "closing"
    CLOSED = "closed"


class Flow:
    """One device TCP connection bridged to one proxy tunnel.

    Lifecycle runs on a handler thread: send the SYN-ACK, dial the proxy,
    then run two relay threads (device->proxy and proxy->device) until one
    side ends, the flow idles out or it reaches its maximum age.

    Device segments are fed in from the dispatcher thread through
    deliver() / handle_fin() / handle_rst(); they never block on proxy I/O.
    """

    def __init__(
        self,
        key: FlowKey,
        syn: TCPHeader,
        config: ProxyConfig,
        interface,
        flow_table: FlowTable,
        synthesizer: PacketSynthesizer,
        opener=open_tunnel,
    ):
        self.key = key
        self.config = config
        self._interface = interface
        self._flow_table = flow_table
        self._synthesizer = synthesizer
        self._opener = opener

        self.client_isn = syn.seq
        self.isn = synthesizer.generate_random_isn()
        # next sequence number we present to the device, and the next one we expect from it
        self._seq = (self.isn + 1) % SEQ_MOD
        self._ack = (self.client_isn + 1) % SEQ_MOD
        self.segment_size = min(config.max_segment_size, syn.mss or config.max_segment_size)

        self.state = FlowState.HANDSHAKING
        self.tunnel = None
        self.close_reason = None
        self.bytes_up = 0
        self.bytes_down = 0
        self.created = time.monotonic()

        self._lock = threading.Lock()
        self._close_lock = threading.Lock()
        self._closed = False
        self._drain = False
        self._uplink_queue = queue.Queue()
        self._pending = 0
        self._relays = []
        self._handler = threading.Thread(target=self._run, name=f"flow-{key.src_port}", daemon=True)

    @property
    def seq(self) -> int:
        with self._lock:
            return self._seq

    @property
    def ack(self) -> int:
        with self._lock:
            return self._ack

    def start(self) -> None:
        self._handler.start()

    def join(self, timeout=None) -> None:
        if self._handler.is_alive():
            self._handler.join(timeout)

    # Device side, called from the dispatcher thread

    def deliver(self, tcp: TCPHeader, payload: bytes) -> None:
        """Accept in-order device payload for relay and acknowledge it.

        Retransmitted or out-of-order segments get a duplicate ACK and are
        dropped. Payload beyond the pending limit is dropped unacknowledged
        so the device sends it again later.
        """
        if not payload:
            return
        with self._lock:
            if self.state in (FlowState.CLOSING, FlowState.CLOSED):
                return
            if tcp.seq != self._ack:
                logger.debug("Flow %s: unexpected seq %d (want %d), re-acking",
                             self.key, tcp.seq, self._ack)
            elif self._pending + len(payload) > self.config.pending_limit:
                logger.debug("Flow %s: pending limit reached, dropping %d bytes",
                             self.key, len(payload))
                return
            else:
                self._ack = (self._ack + len(payload)) % SEQ_MOD
                self._pending += len(payload)
                self._uplink_queue.put(payload)
            seq, ack = self._seq, self._ack
        if not self._inject(self._synthesizer.create_ack(self.key, seq, ack)):
            self.close("interface write failed", notify_device=False)

    def handle_syn(self, tcp: TCPHeader) -> bool:
        """Re-send the SYN-ACK for a retransmitted SYN.

        Returns False when the SYN does not belong to this flow's handshake.
        """
        with self._lock:
            if tcp.seq != self.client_isn or self.state in (FlowState.CLOSING, FlowState.CLOSED):
                return False
        self._send_syn_ack()
        return True

    def handle_fin(self, tcp: TCPHeader, payload: bytes = b"") -> None:
        self.deliver(tcp, payload)
        with self._lock:
            if (tcp.seq + len(payload)) % SEQ_MOD == self._ack:
                self._ack = (self._ack + 1) % SEQ_MOD
        self.close("device fin", drain=True)

    def handle_rst(self) -> None:
        self.close("device rst", notify_device=False)

    # Lifecycle

    def _run(self) -> None:
        if not self._send_syn_ack():
            self.close("interface write failed", notify_device=False)
            return
        self._set_state(FlowState.PROXYING)

        cfg = self.config
        deadline = self.created + cfg.max_flow_age
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            self._send_rst()
            self.close("max age", notify_device=False)
            return
        try:
            # the dial counts against the flow's age
            tunnel = self._opener(
                self.key.dst_ip,
                self.key.dst_port,
                cfg.proxy_host,
                cfg.proxy_port,
                credentials=cfg.credentials,
                connect_timeout=min(cfg.connect_timeout, remaining),
                read_timeout=min(cfg.read_timeout, remaining),
                socket_mark=cfg.socket_mark,
            )
        except (TunnelError, OSError) as e:
            logger.warning("Flow %s: tunnel failed: %s", self.key, e)
            if not self._closed:
                self._send_rst()
            reason = "max age" if time.monotonic() >= deadline else f"tunnel failed: {e}"
            self.close(reason, notify_device=False)
            return

        with self._close_lock:
            if self._closed and not self._drain:
                tunnel.close()
                return
            draining = self._closed
            if not draining:
                self.tunnel = tunnel
                self._set_state(FlowState.ESTABLISHED)
                self._relays = [
                    threading.Thread(target=self._uplink, args=(tunnel,),
                                     name=f"up-{self.key.src_port}", daemon=True),
                    threading.Thread(target=self._downlink, name=f"down-{self.key.src_port}", daemon=True),
                ]
                for relay in self._relays:
                    relay.start()

        if draining:
            # device finished while the dial was outstanding; flush what it sent
            self._uplink(tunnel)
            tunnel.close()
            return
        logger.info("Flow %s: tunnel established via %s:%d", self.key, cfg.proxy_host, cfg.proxy_port)

        for relay in self._relays:
            relay.join(max(0.0, deadline - time.monotonic()))
        if any(relay.is_alive() for relay in self._relays):
            self.close("max age")
            for relay in self._relays:
                relay.join(1.0)

    def _uplink(self, tunnel: ProxyTunnel) -> None:
        while True:
            data = self._uplink_queue.get()
            if data is _EOF:
                return
            with self._lock:
                self._pending -= len(data)
            try:
                tunnel.send(data)
            except OSError as e:
                if not self._closed:
                    logger.warning("Flow %s: proxy write failed: %s", self.key, e)
                self.close("proxy write failed")
                return
            self.bytes_up += len(data)

    def _downlink(self) -> None:
        while not self._closed:
            try:
                data = self.tunnel.recv(RECV_SIZE, timeout=self.config.idle_timeout)
            except socket.timeout:
                self.close("idle timeout")
                return
            except OSError as e:
                self.close(f"proxy read failed: {e}")
                return
            if not data:
                self.close("proxy closed")
                return

            for start in range(0, len(data), self.segment_size):
                chunk = data[start:start + self.segment_size]
                with self._lock:
                    if self.state is not FlowState.ESTABLISHED:
                        return
                    seq, ack = self._seq, self._ack
                    self._seq = (seq + len(chunk)) % SEQ_MOD
                if not self._inject(self._synthesizer.create_data(self.key, seq, ack, chunk)):
                    self.close("interface write failed", notify_device=False)
                    return
                self.bytes_down += len(chunk)

    def close(self, reason: str, notify_device: bool = True, drain: bool = False) -> bool:
        """Tear the flow down once; later calls return False and do nothing.

        Stops both relays, sends a FIN to the device when asked, closes the
        proxy socket and removes the flow from the table. With ``drain`` the
        device data already acknowledged is sent to the proxy first.
        """
        with self._close_lock:
            if self._closed:
                return False
            self._closed = True
            self._drain = drain

        with self._lock:
            self.state = FlowState.CLOSING
            self.close_reason = reason
            seq, ack = self._seq, self._ack
            self._seq = (seq + 1) % SEQ_MOD

        logger.info("Flow %s closing: %s (up %d bytes, down %d bytes)",
                    self.key, reason, self.bytes_up, self.bytes_down)
        self._uplink_queue.put(_EOF)
        if notify_device:
            self._inject(self._synthesizer.create_fin(self.key, seq, ack))
        if self.tunnel is not None:
            uplink = self._relays[0] if self._relays else None
            if drain and uplink is not None and uplink is not threading.current_thread():
                uplink.join(UPLINK_DRAIN_TIMEOUT)
            self.tunnel.close()
        self._flow_table.remove_flow(self.key, self)

        self._set_state(FlowState.CLOSED)
        return True

    # Helpers

    def _set_state(self, state: FlowState) -> None:
        with self._lock:
            if self.state is FlowState.CLOSED:
                return
            if state is not FlowState.CLOSED and self.state is FlowState.CLOSING:
                return
            logger.debug("Flow %s: %s -> %s", self.key, self.state.value, state.value)
            self.state = state

    def _send_syn_ack(self) -> bool:
        packet = self._synthesizer.create_syn_ack(
            self.key, self.isn, self.client_isn, mss=self.config.max_segment_size
        )
        return self._inject(packet)

    def _send_rst(self) -> None:
        with self._lock:
            seq, ack = self._seq, self._ack
        self._inject(self._synthesizer.create_rst(self.key, seq, ack))

    def _inject(self, packet: Packet) -> bool:
        try:
            self._interface.write(packet)
        except OSError as e:
            logger.warning("Flow %s: interface write failed: %s", self.key, e)
            return False
        return True

    def __repr__(self):
        return f"<Flow {self.key} {self.state.value}>"
