"""
Logging setup and configuration for Nextcloud Provisioning.

Progress is reported on the console the way the provisioning tool always has
(``[INFO] Creating user: ...``); a rotating log file can be enabled in the
``logging`` section of the config file for an audit trail of what was created.
"""

import os
import re
import glob
import logging
import logging.handlers
from typing import Dict, Any, Optional
from datetime import datetime, timedelta


class SensitiveDataFilter(logging.Filter):
    """Filter to scrub credentials from log messages."""

    SENSITIVE_KEYWORDS = [
        'nc_pass', 'password', 'passwd', 'pass', 'pwd', 'token', 'secret', 'authorization'
    ]

    # user:password@ in URLs
    URL_CREDENTIALS = re.compile(r'(://[^:/@\s]+:)[^@\s]+(@)')
    AUTH_HEADER = re.compile(r'(Authorization:\s*(?:Basic|Bearer)\s+)[^\s,}\]]+', re.IGNORECASE)

    def filter(self, record):
        """Filter out sensitive data from log records."""
        if hasattr(record, 'msg'):
            msg = record.getMessage() if record.args else str(record.msg)

            msg = self.AUTH_HEADER.sub(r'\1****', msg)
            msg = self.URL_CREDENTIALS.sub(r'\1****\2', msg)

            # key=value and key: value
            for keyword in self.SENSITIVE_KEYWORDS:
                pattern = rf'(\b{keyword}\s*[=:]\s*)[^\s,}}\]]+'
                msg = re.sub(pattern, r'\1****', msg, flags=re.IGNORECASE)

            record.msg = msg
            record.args = None

        return True


class LoggingManager:
    """
    Manages logging configuration for a provisioning run.

    Provides console output for progress and an optional rotating log file
    with a retention policy.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]], force: bool = False) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary
            force: Reconfigure even if logging was already set up
        """
        if self.configured and not force:
            return

        logging_config = config if config else {}

        log_level = str(logging_config.get('level', 'INFO')).upper()
        self.log_dir = logging_config.get('log_dir')
        rotation = logging_config.get('rotation', 'daily')
        self.retention_days = logging_config.get('retention_days', 7)
        console_enabled = logging_config.get('console_output', True)
        console_level = str(logging_config.get('console_level', log_level)).upper()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        sensitive_filter = SensitiveDataFilter()

        if self.log_dir:
            self._ensure_log_directory()
            detailed_formatter = logging.Formatter(
                '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            )
            file_handler = self._create_file_handler(rotation)
            file_handler.setLevel(getattr(logging, log_level, logging.INFO))
            file_handler.setFormatter(detailed_formatter)
            file_handler.addFilter(sensitive_filter)
            root_logger.addHandler(file_handler)
            self._cleanup_old_logs()

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.INFO))
            console_handler.setFormatter(logging.Formatter('[%(levelname)s] %(message)s'))
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self.configured = True

        logger = logging.getLogger(__name__)
        logger.debug(f"Logging configured: level={log_level}, dir={self.log_dir}, "
                     f"retention={self.retention_days} days, console={console_enabled}")

    def _ensure_log_directory(self) -> None:
        """Ensure the log directory exists."""
        if not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                print("Falling back to current directory for logs")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        """
        Create appropriate file handler based on rotation setting.

        Args:
            rotation: Rotation setting ('daily', 'midnight', or 'none')

        Returns:
            Configured logging handler
        """
        log_file = os.path.join(self.log_dir, 'provisioning.log')

        if str(rotation).lower() in ['daily', 'midnight']:
            handler = logging.handlers.TimedRotatingFileHandler(
                filename=log_file,
                when='midnight',
                interval=1,
                backupCount=self.retention_days,
                encoding='utf-8'
            )
            handler.suffix = '%Y-%m-%d'
        else:
            handler = logging.FileHandler(log_file, encoding='utf-8')

        return handler

    def _cleanup_old_logs(self) -> None:
        """Clean up log files older than retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff_date = datetime.now() - timedelta(days=self.retention_days)
        log_pattern = os.path.join(self.log_dir, 'provisioning.log.*')

        for log_file in glob.glob(log_pattern):
            try:
                file_time = datetime.fromtimestamp(os.path.getmtime(log_file))
                if file_time < cutoff_date:
                    os.remove(log_file)
            except (OSError, ValueError) as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")


# Global logging manager instance
_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]], force: bool = False) -> None:
    """
    Convenience function to set up logging.

    Args:
        config: Logging configuration dictionary
        force: Reconfigure even if logging was already set up
    """
    _logging_manager.setup_logging(config, force=force)
