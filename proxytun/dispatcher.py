"""Packet dispatch and engine lifecycle."""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .codec import PROTO_TCP, IPHeader, TCPHeader, decode_ipv4, decode_tcp, tcp_payload
from .config import ProxyConfig
from .connection import Flow
from .flow_table import FlowKey, FlowTable
from .synthesizer import PacketSynthesizer
from .tunnel import open_tunnel

logger = logging.getLogger("proxytun")


class Segment(enum.Enum):
    OPEN = "open"
    RESET = "reset"
    FINISH = "finish"
    DATA = "data"


def classify(tcp: TCPHeader) -> Segment:
    """Map a device segment's flags to the flow event it triggers."""
    if tcp.is_syn and not tcp.is_ack:
        return Segment.OPEN
    if tcp.is_rst:
        return Segment.RESET
    if tcp.is_fin:
        return Segment.FINISH
    return Segment.DATA


class PacketDispatcher:
    """Routes device datagrams to their flows.

    Only TCP is tunneled; other protocols are ignored. All per-flow proxy
    work happens on the flows' own threads, so handle() never blocks on it.
    """

    def __init__(
        self,
        interface,
        flow_table: FlowTable,
        config: ProxyConfig,
        synthesizer: Optional[PacketSynthesizer] = None,
        opener=open_tunnel,
    ):
        self._interface = interface
        self._flow_table = flow_table
        self._config = config
        self._synthesizer = synthesizer or PacketSynthesizer()
        self._opener = opener
        self._protocol_handlers = {
            PROTO_TCP: self._handle_tcp,
        }
        self._segment_handlers = {
            Segment.OPEN: self._on_open,
            Segment.RESET: self._on_reset,
            Segment.FINISH: self._on_finish,
            Segment.DATA: self._on_data,
        }

    @property
    def config(self) -> ProxyConfig:
        return self._config

    def update_config(self, config: ProxyConfig) -> None:
        """Use config for flows created from now on."""
        self._config = config
        logger.info("Proxy set to %s:%d for new flows", config.proxy_host, config.proxy_port)

    def handle(self, datagram: bytes) -> None:
        """Process one datagram read from the virtual interface."""
        ip = decode_ipv4(datagram)
        if ip is None:
            logger.debug("Dropping undecodable datagram (%d bytes)", len(datagram))
            return
        handler = self._protocol_handlers.get(ip.protocol, self._ignore)
        handler(datagram, ip)

    def _ignore(self, datagram: bytes, ip: IPHeader) -> None:
        logger.debug("Ignoring protocol %d datagram %s -> %s", ip.protocol, ip.src, ip.dst)

    def _handle_tcp(self, datagram: bytes, ip: IPHeader) -> None:
        tcp = decode_tcp(datagram, ip.header_length)
        if tcp is None:
            logger.debug("Dropping truncated TCP datagram %s -> %s", ip.src, ip.dst)
            return
        key = FlowTable.extract_key(ip, tcp)
        payload = tcp_payload(datagram, ip, tcp)
        logger.debug("%s [%s] %d bytes", key, tcp.flag_names(), len(payload))
        self._segment_handlers[classify(tcp)](key, tcp, payload)

    def _on_open(self, key: FlowKey, tcp: TCPHeader, payload: bytes) -> None:
        existing = self._flow_table.get_flow(key)
        if existing is not None:
            if existing.handle_syn(tcp):
                logger.debug("Retransmitted SYN for %s, SYN-ACK re-sent", key)
            else:
                logger.warning("Duplicate SYN for active flow %s dropped", key)
            return

        flow = Flow(
            key,
            tcp,
            self._config,
            self._interface,
            self._flow_table,
            self._synthesizer,
            opener=self._opener,
        )
        if not self._flow_table.add_flow(key, flow):
            logger.warning("Duplicate SYN for active flow %s dropped", key)
            return
        logger.info("New flow %s", key)
        flow.start()

    def _on_reset(self, key: FlowKey, tcp: TCPHeader, payload: bytes) -> None:
        flow = self._flow_table.get_flow(key)
        if flow is None:
            logger.debug("RST for unknown flow %s dropped", key)
            return
        flow.handle_rst()

    def _on_finish(self, key: FlowKey, tcp: TCPHeader, payload: bytes) -> None:
        flow = self._flow_table.get_flow(key)
        if flow is None:
            logger.debug("FIN for unknown flow %s dropped", key)
            return
        flow.handle_fin(tcp, payload)

    def _on_data(self, key: FlowKey, tcp: TCPHeader, payload: bytes) -> None:
        flow = self._flow_table.get_flow(key)
        if flow is None:
            logger.debug("Unsolicited segment for %s dropped", key)
            return
        flow.deliver(tcp, payload)


@dataclass(frozen=True)
class EngineStatus:
    """Lifecycle event reported to the status sink."""
    connected: bool
    error: Optional[str] = None


def log_status(status: EngineStatus) -> None:
    if status.error:
        logger.error("Engine disconnected: %s", status.error)
    else:
        logger.info("Engine %s", "connected" if status.connected else "disconnected")


class TunnelEngine:
    """Owns the interface read loop, the flow table and shutdown."""

    READ_POLL_INTERVAL = 0.5
    SHUTDOWN_JOIN_TIMEOUT = 5.0

    def __init__(
        self,
        interface,
        config: ProxyConfig,
        status_sink: Callable[[EngineStatus], None] = log_status,
        flow_table: Optional[FlowTable] = None,
        synthesizer: Optional[PacketSynthesizer] = None,
        opener=open_tunnel,
    ):
        self._interface = interface
        self._status_sink = status_sink
        self.flow_table = flow_table if flow_table is not None else FlowTable()
        self.dispatcher = PacketDispatcher(
            interface, self.flow_table, config, synthesizer=synthesizer, opener=opener
        )
        self._running = threading.Event()
        self._stopped = threading.Event()
        self._stop_lock = threading.Lock()
        self._stopping = False
        self._reader = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    def update_config(self, config: ProxyConfig) -> None:
        self.dispatcher.update_config(config)

    def start(self) -> None:
        if self._stopping:
            raise RuntimeError("engine already stopped")
        if self._running.is_set():
            return
        self._running.set()
        self._reader = threading.Thread(target=self._read_loop, name="proxytun-reader", daemon=True)
        self._status_sink(EngineStatus(connected=True))
        self._reader.start()

    def stop(self) -> None:
        """Close every flow, release the interface and stop the read loop."""
        self._shutdown(error=None)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the engine has stopped; True if it has."""
        return self._stopped.wait(timeout)

    def _read_loop(self) -> None:
        while self._running.is_set():
            try:
                datagram = self._interface.read(self.READ_POLL_INTERVAL)
            except (OSError, ValueError) as e:
                if self._running.is_set():
                    logger.error("Virtual interface read failed: %s", e)
                    self._shutdown(error=str(e))
                return
            if datagram:
                self.dispatcher.handle(datagram)

    def _shutdown(self, error: Optional[str]) -> None:
        with self._stop_lock:
            if self._stopping:
                return
            self._stopping = True
            self._running.clear()

        if self._reader is not None and self._reader is not threading.current_thread():
            self._reader.join()

        flows = self.flow_table.flows()
        for flow in flows:
            flow.close("engine shutdown")
        deadline = time.monotonic() + self.SHUTDOWN_JOIN_TIMEOUT
        for flow in flows:
            flow.join(max(0.0, deadline - time.monotonic()))

        try:
            self._interface.close()
        except OSError as e:
            logger.warning("Error closing virtual interface: %s", e)

        self._stopped.set()
        self._status_sink(EngineStatus(connected=False, error=error))
