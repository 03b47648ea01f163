"""
Command-line entry point for the resumable crawler.
"""

import argparse
import json
import signal
import sys
from typing import Any, Dict, List, Optional

from config import ConfigManager, SystemConfig
from resumable_crawler.concurrent.controller import CrawlCoordinator
from resumable_crawler.concurrent.models import CrawlSummary
from resumable_crawler.crawlers.http_client import HTTPClient, RetryConfig
from resumable_crawler.crawlers.web_source import (
    PaginatedWebDiscovery, WebItemProcessor, regex_key_extractor
)
from resumable_crawler.data.writer import JsonlRecordWriter, collect_output_statistics
from resumable_crawler.services.state_manager import StateStore
from resumable_crawler.utils.errors import ResumableCrawlerError, handle_error
from resumable_crawler.utils.logging import get_logger, setup_logging


logger = get_logger(__name__)


class CrawlerApp:
    """Wires configuration, collaborators and the crawl engine together."""

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize the application.

        Args:
            config_path: Optional path to configuration file
        """
        self.config_manager = ConfigManager(config_path or "config.json")
        self.config: Optional[SystemConfig] = None
        self.coordinator: Optional[CrawlCoordinator] = None

    def initialize(self, log_level: Optional[str] = None) -> None:
        """
        Load configuration and set up logging.

        Args:
            log_level: Overrides the configured log level
        """
        self.config = self.config_manager.load_config()
        setup_logging(log_level or self.config.log_level, self.config.log_file)

    def _build_coordinator(self, client: HTTPClient) -> CrawlCoordinator:
        crawler = self.config.crawler
        discovery = PaginatedWebDiscovery(
            client,
            crawler.search_url_template,
            page_size=crawler.page_size,
            key_extractor=regex_key_extractor(crawler.key_pattern),
        )
        processor = WebItemProcessor(client, crawler.item_url_template)
        writer = JsonlRecordWriter(self.config.storage.output_dir)
        state_store = StateStore(self.config.storage.state_dir)

        return CrawlCoordinator(
            self.config_manager.get_engine_config(),
            discovery,
            processor,
            writer,
            state_store=state_store,
        )

    def crawl(self, partitions: Optional[List[str]] = None) -> CrawlSummary:
        """
        Run the pipeline for ``partitions`` (default: the configured ones).

        Returns:
            Summary of the run
        """
        crawler = self.config.crawler
        client = HTTPClient(
            RetryConfig(
                max_attempts=crawler.retry_attempts,
                initial_delay=crawler.retry_delay,
                max_delay=crawler.max_retry_delay,
            ),
            timeout=crawler.request_timeout,
        )
        try:
            self.coordinator = self._build_coordinator(client)
            return self.coordinator.run(partitions or self.config.partitions)
        finally:
            client.close()

    def request_shutdown(self) -> None:
        """Ask a running crawl to stop."""
        if self.coordinator:
            self.coordinator.request_shutdown()

    def get_status(self) -> Dict[str, Any]:
        """Persisted progress per partition and output file statistics."""
        state_store = StateStore(self.config.storage.state_dir)
        return {
            "state_dir": self.config.storage.state_dir,
            "partitions": state_store.get_summary(),
            "output_files": collect_output_statistics(self.config.storage.output_dir),
        }

    def reset(self, partition: str) -> Dict[str, Any]:
        """Clear the persisted state of ``partition``."""
        StateStore(self.config.storage.state_dir).reset(partition)
        return {"partition": partition, "reset": True}


def create_cli_parser() -> argparse.ArgumentParser:
    """Create command-line interface parser."""
    parser = argparse.ArgumentParser(
        description='Resumable crawler - concurrent, rate-limited, resumable crawling',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s crawl                        # Crawl the configured partitions
  %(prog)s crawl -p SPARK -p HADOOP     # Crawl specific partitions
  %(prog)s --config custom.json crawl   # Use custom configuration file
  %(prog)s status                       # Show progress per partition
  %(prog)s reset SPARK                  # Forget all progress for SPARK
        """
    )

    parser.add_argument(
        '--config', '-c',
        type=str,
        help='Path to configuration file (default: config.json)'
    )

    parser.add_argument(
        '--output', '-o',
        type=str,
        choices=['json', 'text'],
        default='text',
        help='Output format for status and results (default: text)'
    )

    parser.add_argument(
        '--log-level',
        type=str,
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
        help='Override log level from configuration'
    )

    subparsers = parser.add_subparsers(dest='command', required=True)

    crawl_parser = subparsers.add_parser('crawl', help='Run the crawl pipeline')
    crawl_parser.add_argument(
        '--partition', '-p',
        type=str,
        action='append',
        help='Partition to crawl (can be used multiple times)'
    )

    subparsers.add_parser('status', help='Show persisted progress and output files')

    reset_parser = subparsers.add_parser('reset', help="Clear a partition's persisted state")
    reset_parser.add_argument('partition', type=str, help='Partition to reset')

    return parser


def format_output(data: Any, format_type: str) -> str:
    """Format output data according to specified format."""
    if format_type == 'json':
        return json.dumps(data, indent=2, default=str, ensure_ascii=False)

    if isinstance(data, dict):
        lines = []
        for key, value in data.items():
            if isinstance(value, dict):
                lines.append(f"{key}:")
                for sub_key, sub_value in value.items():
                    lines.append(f"  {sub_key}: {sub_value}")
            elif isinstance(value, list):
                lines.append(f"{key}: {', '.join(map(str, value))}")
            else:
                lines.append(f"{key}: {value}")
        return '\n'.join(lines)
    return str(data)


def _install_signal_handlers(app: CrawlerApp) -> None:
    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, initiating graceful shutdown")
        app.request_shutdown()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


def main(argv: Optional[List[str]] = None) -> None:
    """Main entry point with command-line interface."""
    parser = create_cli_parser()
    args = parser.parse_args(argv)

    exit_code = 0
    app = CrawlerApp(config_path=args.config)

    try:
        app.initialize(log_level=args.log_level)

        if args.command == 'crawl':
            _install_signal_handlers(app)
            result = app.crawl(args.partition).to_dict()
        elif args.command == 'status':
            result = app.get_status()
        else:
            result = app.reset(args.partition)

        print(format_output(result, args.output))

    except ResumableCrawlerError as e:
        handle_error(e, logger, {"command": args.command}, reraise=False)
        print(format_output({'error': e.message, **e.details}, args.output))
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
        app.request_shutdown()
        exit_code = 130

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
