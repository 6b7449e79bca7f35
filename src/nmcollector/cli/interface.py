"""
Command Line Interface Module

This module provides the command-line interface for discovering and
collecting Node Manager metrics.
"""

import argparse
import json
import logging
import signal
import sys
import time
from typing import List, Optional, Sequence

from ..collector import Collector, CollectorConfig, ConfigurationError, Metric, build

logger = logging.getLogger(__name__)

EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2


def setup_logging(debug: bool = False) -> None:
    """Configure logging for the command line tool"""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    # Per-request chatter only in debug mode
    for name in ['nmcollector.ipmi.commander', 'nmcollector.ipmi.formats', 'nmcollector.ipmi.openipmi']:
        logging.getLogger(name).setLevel(logging.DEBUG if debug else logging.WARNING)


class CLI:
    """Command-line interface handler"""

    def __init__(self):
        """Initialize CLI handler"""
        self.parser = self._create_parser()
        self.collector: Optional[Collector] = None
        self._running = False

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create command-line argument parser

        Returns:
            Configured argument parser
        """
        parser = argparse.ArgumentParser(
            description="nmcollector - Intel Node Manager telemetry over IPMI"
        )

        parser.add_argument(
            "-c", "--config",
            help="Path to configuration file",
            default="/etc/nmcollector/config.yaml"
        )

        parser.add_argument(
            "--discover",
            action="store_true",
            help="List all available metrics and exit"
        )

        parser.add_argument(
            "-m", "--metric",
            action="append",
            default=[],
            metavar="PATH",
            help="Metric to collect (repeatable, default: all metrics)"
        )

        parser.add_argument(
            "--interval",
            type=float,
            metavar="SECONDS",
            help="Collect repeatedly at this interval until interrupted"
        )

        parser.add_argument(
            "--json",
            action="store_true",
            help="Print results as JSON"
        )

        parser.add_argument(
            "--debug",
            action="store_true",
            help="Enable debug logging"
        )

        return parser

    def _print_metrics(self, metrics: Sequence[Metric], as_json: bool) -> None:
        """Print metrics as text lines or a JSON document"""
        if as_json:
            print(json.dumps([
                {
                    "namespace": m.path,
                    "source": m.source,
                    "value": m.value,
                    "available": m.is_available,
                    "timestamp": m.timestamp,
                }
                for m in metrics
            ], indent=2))
            return

        for m in metrics:
            if m.value is None:
                print(m.path)
            elif m.is_available:
                print(f"{m.path} {m.value} {m.source}")
            else:
                print(f"{m.path} n/a {m.source}")

    def _collect_loop(self, metrics: List[Metric], interval: float, as_json: bool) -> None:
        """Collect at a fixed interval until interrupted"""
        def signal_handler(signum, frame):
            self._running = False
        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

        self._running = True
        while self._running:
            started = time.monotonic()
            self._print_metrics(self.collector.collect(metrics), as_json)
            sys.stdout.flush()
            remaining = interval - (time.monotonic() - started)
            while self._running and remaining > 0:
                time.sleep(min(remaining, 0.5))
                remaining -= 0.5

    def run(self, argv: Optional[Sequence[str]] = None) -> int:
        """Run CLI

        Returns:
            Process exit status
        """
        args = self.parser.parse_args(argv)
        setup_logging(args.debug)

        try:
            config = CollectorConfig.load(args.config)
            self.collector = build(config)

            if args.discover:
                self._print_metrics(self.collector.discover(), args.json)
                return 0

            metrics = args.metric or self.collector.discover()
            if args.interval:
                self._collect_loop(metrics, args.interval, args.json)
            else:
                self._print_metrics(self.collector.collect(metrics), args.json)
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG_ERROR

        except KeyboardInterrupt:
            print("\nExiting...")
            return 0

        except Exception as e:
            logger.error(f"Error: {e}")
            return EXIT_ERROR

        finally:
            if self.collector is not None:
                self.collector.close()


def main() -> None:
    """Main entry point"""
    cli = CLI()
    sys.exit(cli.run())


if __name__ == "__main__":
    main()
