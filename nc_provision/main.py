"""
Command line entry point and run orchestration for Nextcloud Provisioning.

A run loads the configuration, validates the CSV header, takes a snapshot of
the existing accounts, reconciles every CSV row against it and reports a summary.
Nothing is created unless ``--do`` is given.
"""

import sys
import logging
import argparse
from typing import Callable, Dict, Any, List, Optional

from nc_provision.config import (
    load_config, describe_config, ConfigError, DEFAULT_CONFIG_PATH, STRATEGY_EXTERNAL_ID
)
from nc_provision.csv_reader import CsvReader
from nc_provision.directory_client import (
    DirectoryServiceClient, DirectoryConnectionError, DirectoryProtocolError
)
from nc_provision.engine import ReconciliationEngine
from nc_provision.index import ExistingUserIndex
from nc_provision.logging_setup import setup_logging
from nc_provision.models import RunStatistics, UseridStrategy
from nc_provision.report import log_summary

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_USAGE = 1
EXIT_CONFIG = 2
EXIT_CONNECTION = 3
EXIT_PROTOCOL = 4
EXIT_UNEXPECTED = 5

CONNECTION_ARGUMENTS = ['NC_URL', 'NC_USER', 'NC_PASS', 'NC_GROUP']


class ProvisioningRunner:
    """
    Runs one provisioning pass from configuration to summary.

    Fatal errors are logged and mapped to exit codes; per-user failures are
    counted in the statistics and never abort the run.
    """

    def __init__(self, csv_file: str, overrides: Optional[Dict[str, Any]] = None,
                 config_path: Optional[str] = None, dry_run: bool = True,
                 require_config: bool = False,
                 confirm: Optional[Callable[[Dict[str, Any]], bool]] = None,
                 log_level: Optional[str] = None):
        """
        Initialize provisioning runner.

        Args:
            csv_file: Path to the CSV file with the users to create
            overrides: NC_* values from the command line
            config_path: Path to configuration file
            dry_run: Only report what would be created
            require_config: Fail if the config file does not exist
            confirm: Called with the effective configuration before connecting;
                returning False aborts the run
            log_level: Overrides the configured log level
        """
        self.csv_file = csv_file
        self.overrides = overrides or {}
        self.config_path = config_path
        self.dry_run = dry_run
        self.require_config = require_config
        self.confirm = confirm
        self.log_level = log_level

        self.config = None
        self.client = None
        self.stats: Optional[RunStatistics] = None

    def run(self) -> int:
        """
        Run the complete provisioning process.

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self._load_configuration()
            self._setup_logging()
            self._log_configuration()

            if self.confirm and not self.confirm(self.config):
                logger.error("Aborted, no changes were made")
                return EXIT_USAGE

            strategy = UseridStrategy(self.config['NC_USERID_STRATEGY'])
            reader = CsvReader(self.csv_file, require_external_id=strategy is UseridStrategy.EXTERNAL_ID)

            self.client = DirectoryServiceClient(self.config)
            logger.info(f"Connecting to: {self.client.url}")
            index = ExistingUserIndex.build(self.client)

            engine = ReconciliationEngine(
                self.client,
                index,
                strategy,
                group=self.config['NC_GROUP'],
                userid_suffix=self.config.get('NC_USERID_SUFFIX', ''),
                dry_run=self.dry_run,
                track_created=self.config.get('NC_TRACK_CREATED', False)
            )
            self.stats = engine.run(reader)

            log_summary(self.stats, self.dry_run)

            if self.stats.created_failed:
                logger.warning(f"Provisioning completed with {self.stats.created_failed} failed users")
            return EXIT_OK

        except ConfigError as e:
            logger.error(f"Configuration error: {e}")
            return EXIT_CONFIG
        except DirectoryConnectionError as e:
            logger.error(f"Connection error: {e}")
            return EXIT_CONNECTION
        except DirectoryProtocolError as e:
            logger.error(f"Server error: {e}")
            return EXIT_PROTOCOL
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return EXIT_UNEXPECTED
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        self.config = load_config(self.config_path, overrides=self.overrides,
                                  require_file=self.require_config)
        if not self.csv_file:
            raise ConfigError("CSV file path is required")

    def _setup_logging(self):
        """Configure logging from the config file's logging section."""
        logging_config = dict(self.config.get('logging', {}))
        if self.log_level:
            logging_config['level'] = self.log_level
            logging_config['console_level'] = self.log_level
        setup_logging(logging_config, force=True)

    def _log_configuration(self):
        logger.info("Using configuration:")
        for line in describe_config(self.config):
            logger.info(line)
        logger.info(f"  CSV File: {self.csv_file}")
        logger.info(f"  Mode: {'dry run' if self.dry_run else 'create users'}")

    def _cleanup(self):
        """Clean up resources."""
        if self.client:
            self.client.close()


def prompt_confirmation(config: Dict[str, Any]) -> bool:
    """
    Ask the operator to confirm the settings loaded from the config file.

    Non-interactive runs (stdin is not a terminal) proceed without asking.
    """
    if not sys.stdin.isatty():
        return True

    print("Settings from configuration file:")
    for line in describe_config(config):
        print(line)
    try:
        answer = input("Proceed? [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in ('y', 'yes')


class _ArgumentParser(argparse.ArgumentParser):
    """Argument parser that exits with status 1 on usage errors."""

    def error(self, message):
        self.print_usage(sys.stderr)
        self.exit(EXIT_USAGE, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog='nc-provision',
        usage='%(prog)s [--do] <nextcloud_url> <username> <password> <group> <csv_file>\n'
              '       %(prog)s [--do] <csv_file>',
        description='Create Nextcloud users from a CSV file.',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        add_help=False,
        epilog=f"""
The CSV file must contain the following columns:
    - FIRST NAME
    - LAST NAME
    - EMAIL ADDRESS
    - EXTERNAL ID (only with --external-id)

Configuration can also be provided in {DEFAULT_CONFIG_PATH} (YAML) with:
    NC_URL              Nextcloud URL
    NC_USER             Admin username
    NC_PASS             Admin password
    NC_GROUP            Default group
    NC_USERID_SUFFIX    Suffix appended to the external ID (external ID mode)
    NC_RETRY_COUNT      Retries when the server rate limits requests
    NC_RETRY_INTERVAL   Seconds to wait between retries

With only <csv_file>, all connection settings must come from the config file.

Example:
    %(prog)s --do cloud.example.com admin password "Default Group" users.csv
"""
    )
    parser.add_argument('arguments', nargs='*', metavar='ARG',
                        help='connection settings and CSV file, see usage')
    parser.add_argument('--do', dest='do_create', action='store_true',
                        help='actually create the users (default is a dry run)')
    parser.add_argument('--config', '-c', help='path to configuration file')
    parser.add_argument('--external-id', action='store_true',
                        help='form user IDs from EXTERNAL ID plus NC_USERID_SUFFIX')
    parser.add_argument('--track-created', action='store_true', default=None,
                        help='skip later CSV rows that repeat a user created earlier in the same run')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
                        help='console and file log level')
    parser.add_argument('-h', '--help', action='store_true', help='show this help message')
    return parser


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse the command line.

    Exits with status 1 after printing usage for --help, no arguments, or an
    unsupported number of positional arguments.
    """
    parser = build_parser()
    argv = sys.argv[1:] if argv is None else argv
    args = parser.parse_intermixed_args(argv)

    if args.help or not argv:
        parser.print_help()
        parser.exit(EXIT_USAGE)

    if len(args.arguments) == 1:
        args.csv_file = args.arguments[0]
        args.connection = {}
        args.require_config = True
    elif len(args.arguments) == 5:
        args.csv_file = args.arguments[4]
        args.connection = dict(zip(CONNECTION_ARGUMENTS, args.arguments[:4]))
        args.require_config = False
    else:
        parser.error(f"expected 1 or 5 arguments, got {len(args.arguments)}")

    return args


def main(argv: Optional[List[str]] = None):
    """Main entry point for the application."""
    args = parse_arguments(argv)

    setup_logging({'level': args.log_level or 'INFO'})

    overrides = dict(args.connection)
    if args.external_id:
        overrides['NC_USERID_STRATEGY'] = STRATEGY_EXTERNAL_ID
    overrides['NC_TRACK_CREATED'] = args.track_created

    runner = ProvisioningRunner(
        csv_file=args.csv_file,
        overrides=overrides,
        config_path=args.config,
        dry_run=not args.do_create,
        require_config=args.require_config,
        confirm=prompt_confirmation if args.require_config else None,
        log_level=args.log_level
    )
    sys.exit(runner.run())


if __name__ == "__main__":
    main()
