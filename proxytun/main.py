"""proxytun entry point."""

import argparse
import logging
import os

from .config import (
    DEFAULT_CONNECT_TIMEOUT, DEFAULT_IDLE_TIMEOUT, DEFAULT_MAX_FLOW_AGE,
    DEFAULT_MTU, DEFAULT_READ_TIMEOUT, ProxyConfig,
)
from .dispatcher import TunnelEngine
from .interface import TunInterface
from .logger import setup_logging

PASSWORD_ENV = "PROXYTUN_PROXY_PASSWORD"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="proxytun - tunnel every TCP flow on a TUN device through an HTTP CONNECT proxy"
    )
    parser.add_argument("--iface", default="tun0", help="TUN device to attach to (default: tun0)")
    parser.add_argument("--proxy-host", required=True, help="HTTP proxy host")
    parser.add_argument("--proxy-port", type=int, default=8080, help="HTTP proxy port (default: 8080)")
    parser.add_argument("--proxy-user", default="", help="Proxy username")
    parser.add_argument("--proxy-password", default=None,
                        help=f"Proxy password (default: ${PASSWORD_ENV})")
    parser.add_argument("--mtu", type=int, default=DEFAULT_MTU, help="Interface MTU (default: 1500)")
    parser.add_argument("--connect-timeout", type=float, default=DEFAULT_CONNECT_TIMEOUT,
                        help="Proxy connect timeout in seconds")
    parser.add_argument("--read-timeout", type=float, default=DEFAULT_READ_TIMEOUT,
                        help="CONNECT response timeout in seconds")
    parser.add_argument("--idle-timeout", type=float, default=DEFAULT_IDLE_TIMEOUT,
                        help="Close flows idle for this many seconds")
    parser.add_argument("--max-flow-age", type=float, default=DEFAULT_MAX_FLOW_AGE,
                        help="Close flows older than this many seconds")
    parser.add_argument("--mark", type=lambda v: int(v, 0), default=None,
                        help="SO_MARK for proxy sockets, to route them outside the tunnel")
    parser.add_argument("--verbose", action="store_true", help="Enable DEBUG logging")
    return parser


def config_from_args(args: argparse.Namespace) -> ProxyConfig:
    password = args.proxy_password
    if password is None:
        password = os.environ.get(PASSWORD_ENV, "")
    return ProxyConfig(
        proxy_host=args.proxy_host,
        proxy_port=args.proxy_port,
        proxy_username=args.proxy_user,
        proxy_password=password,
        connect_timeout=args.connect_timeout,
        read_timeout=args.read_timeout,
        idle_timeout=args.idle_timeout,
        max_flow_age=args.max_flow_age,
        mtu=args.mtu,
        socket_mark=args.mark,
    )


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    logger = setup_logging(logging.DEBUG if args.verbose else logging.INFO)
    logger.info("Starting proxytun on %s via %s:%d", args.iface, config.proxy_host, config.proxy_port)

    engine = TunnelEngine(TunInterface(args.iface, mtu=config.mtu), config)
    engine.start()
    try:
        while not engine.wait(1.0):
            pass
    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        engine.stop()


if __name__ == "__main__":
    main()
