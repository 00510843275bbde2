"""Main entry point for the OctoPrint exporter."""
import argparse
import logging
import sys
import threading

from octoprint_exporter import __version__
from octoprint_exporter.client import OctoPrintClient
from octoprint_exporter.collector import Collector, run_collector_thread
from octoprint_exporter.config import ConfigurationError, load_config
from octoprint_exporter.registry import MetricRegistry
from octoprint_exporter.server import MetricsServer


def setup_logging(log_level: str):
    """Setup logging configuration."""
    level = getattr(logging, log_level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    # Reduce noise from some libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="OctoPrint exporter - expose OctoPrint job and temperature status to Prometheus"
    )
    parser.add_argument("--config", "-c", help="Optional YAML configuration file")
    parser.add_argument("--port", "-p", type=int, help="Port to serve metrics on (default 9529)")
    parser.add_argument("--bind", help="Address to bind the metrics server to")
    parser.add_argument("--interval", "-i", type=int, help="Seconds between collections, minimum 2 (default 10)")
    parser.add_argument("--hostip", help="OctoPrint host (default 127.0.0.1)")
    parser.add_argument("--hostport", type=int, help="OctoPrint port (default 80)")
    parser.add_argument("--apikey", help="OctoPrint API key")
    parser.add_argument("--hostssl", action="store_true", help="Use HTTPS on port 443")
    parser.add_argument("--timeout", type=float, help="OctoPrint request timeout in seconds")
    parser.add_argument("--collectdefault", action="store_true", help="Also export process and runtime metrics")
    parser.add_argument("--log-level", dest="log_level", help="DEBUG, INFO, WARNING, ERROR or CRITICAL")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser


def main(argv=None):
    """Main function."""
    args = build_parser().parse_args(argv)

    # Load configuration
    try:
        config = load_config(vars(args))
    except ConfigurationError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(config.logging.level)
    logger = logging.getLogger(__name__)

    logger.info(f"OctoPrint exporter {__version__}")
    logger.info(f"Collection interval: {config.interval_s}s")
    logger.info(
        f"OctoPrint: {config.upstream.host}:{config.upstream.effective_port} "
        f"({'https' if config.upstream.ssl else 'http'})"
    )

    logger.info("Registering Prometheus metrics...")
    registry = MetricRegistry()
    if config.runtime_metrics:
        registry.enable_runtime_metrics()

    client = OctoPrintClient(config.upstream)
    collector = Collector(client, registry, config.interval_s)
    server = MetricsServer(registry, config.server)

    # Collector runs its first cycle immediately on its own thread
    collector_thread = threading.Thread(
        target=run_collector_thread,
        args=(collector,),
        name="octoprint-collector",
        daemon=True
    )
    collector_thread.start()

    logger.info("Starting HTTP server...")
    try:
        server.run()
    except Exception as e:
        logger.error(f"Metrics server error: {e}", exc_info=True)
        sys.exit(1)
    finally:
        # uvicorn handles SIGINT/SIGTERM and returns here
        collector.close()
        client.close()


if __name__ == "__main__":
    main()
