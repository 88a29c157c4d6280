import argparse
import logging

from .app_ui import create_app
from .config import load_config
from .events import HealthEventPublisher
from .monitor import NodeMonitor
from .node_connection import build_node_connection

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="CometBFT node health and divergence monitor")
    parser.add_argument("-c", "--config", help="path to a YAML config file")
    parser.add_argument("--node", help="RPC address of the monitored node")
    parser.add_argument("--reference", help="RPC address of the trusted reference node")
    parser.add_argument("--once", action="store_true", help="take one full sample, print it and exit")
    return parser.parse_args(argv)


def build_monitor(config) -> NodeMonitor:
    connection = build_node_connection(config.node_url)
    publisher = HealthEventPublisher.from_url(config.redis_url, config.stream_key, connection.rpc_url)
    return NodeMonitor(config, publisher=publisher)


def main(argv=None):
    args = parse_args(argv)
    config = load_config(args.config)
    if args.node:
        if config.reference_node_address == config.node_url:
            config.reference_node_address = args.node
        config.node_url = args.node
    if args.reference:
        config.reference_node_address = args.reference

    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(message)s"
    )

    monitor = build_monitor(config)
    if args.once:
        monitor.refresh()
        snapshot = monitor.snapshot()
        for message in snapshot.health.error_messages or ["node healthy"]:
            logger.info(message)
        return 0 if snapshot.health.is_online and not snapshot.health.has_errors else 1

    logger.info("--- CometBFT Health Monitor ---")
    logger.info(f"Monitoring {monitor.connection.rpc_url}, reference {monitor.reference.rpc_url}")
    logger.info(f"Serving health API on {config.listen_host}:{config.listen_port}")
    app = create_app(monitor, start_monitor=False)
    monitor.start()
    try:
        app.run(host=config.listen_host, port=config.listen_port)
    finally:
        monitor.stop()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
