"""
Logging setup for the SSO admin client.

Configures file logging with daily rotation and retention, optional console
output, and scrubbing of credentials from log messages. Also provides the
security audit logger used for connection, principal, policy and identity
source events.
"""

import os
import re
import glob
import logging
import logging.handlers
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

LOG_FILE_NAME = 'sso_admin.log'


class SensitiveDataFilter(logging.Filter):
    """Mask passwords, secrets and tokens in log messages."""

    SENSITIVE_KEYWORDS = [
        'password', 'passwd', 'pwd', 'secret', 'token', 'credential',
        'vmwSTSPassword', 'userPassword', 'authorization', 'bearer',
    ]

    def __init__(self, name: str = ''):
        super().__init__(name)
        keywords = '|'.join(re.escape(k) for k in self.SENSITIVE_KEYWORDS)
        self._patterns = [
            # key=value
            (re.compile(rf'((?:{keywords})\w*\s*=\s*)[^\s,}}\])]+', re.IGNORECASE), r'\1****'),
            # "key": "value"
            (re.compile(rf'("\w*(?:{keywords})\w*"\s*:\s*")[^"]*(")', re.IGNORECASE), r'\1****\2'),
            # 'key': 'value'
            (re.compile(rf"('\w*(?:{keywords})\w*'\s*:\s*')[^']*(')", re.IGNORECASE), r'\1****\2'),
            # Authorization: Bearer/Basic <token>
            (re.compile(r'(Authorization:\s*(?:Bearer|Basic)\s+)\S+', re.IGNORECASE), r'\1****'),
        ]

    def scrub(self, message: str) -> str:
        for pattern, replacement in self._patterns:
            message = pattern.sub(replacement, message)
        return message

    def filter(self, record):
        if record.args:
            try:
                record.msg = record.getMessage()
                record.args = None
            except (TypeError, ValueError):
                pass
        record.msg = self.scrub(str(record.msg))
        return True


class LoggingManager:
    """
    Manages logging configuration for the SSO admin client.

    Provides file-based logging with rotation and retention, plus optional
    console output for interactive use.
    """

    def __init__(self):
        self.configured = False
        self.log_dir = None
        self.retention_days = 7

    def setup_logging(self, config: Optional[Dict[str, Any]]) -> None:
        """
        Set up logging based on configuration.

        Args:
            config: Logging configuration dictionary (level, log_dir, rotation,
                retention_days, console_output, console_level)
        """
        if self.configured:
            return

        config = config or {}
        log_level = str(config.get('level', 'INFO')).upper()
        self.log_dir = config.get('log_dir', 'logs')
        rotation = config.get('rotation', 'daily')
        self.retention_days = config.get('retention_days', 7)
        console_enabled = config.get('console_output', True)
        console_level = str(config.get('console_level', 'WARNING')).upper()

        self._ensure_log_directory()

        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, log_level, logging.INFO))
        root_logger.handlers.clear()

        detailed_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )
        console_formatter = logging.Formatter(
            '%(asctime)s [%(levelname)s] %(message)s',
            datefmt='%H:%M:%S'
        )
        sensitive_filter = SensitiveDataFilter()

        file_handler = self._create_file_handler(rotation)
        file_handler.setLevel(getattr(logging, log_level, logging.INFO))
        file_handler.setFormatter(detailed_formatter)
        file_handler.addFilter(sensitive_filter)
        root_logger.addHandler(file_handler)

        if console_enabled:
            console_handler = logging.StreamHandler()
            console_handler.setLevel(getattr(logging, console_level, logging.WARNING))
            console_handler.setFormatter(console_formatter)
            console_handler.addFilter(sensitive_filter)
            root_logger.addHandler(console_handler)

        self._cleanup_old_logs()
        self.configured = True

        logging.getLogger(__name__).info(
            f"Logging configured: level={log_level}, dir={self.log_dir}, "
            f"retention={self.retention_days} days, console={console_enabled}"
        )

    def reset(self) -> None:
        """Drop the handlers installed by setup_logging so it can run again."""
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()
        self.configured = False

    def _ensure_log_directory(self) -> None:
        if self.log_dir and not os.path.exists(self.log_dir):
            try:
                os.makedirs(self.log_dir, exist_ok=True)
            except OSError as e:
                print(f"Warning: Could not create log directory {self.log_dir}: {e}")
                self.log_dir = '.'

    def _create_file_handler(self, rotation: str) -> logging.Handler:
        log_file = os.path.join(self.log_dir, LOG_FILE_NAME)
        if rotation.lower() in ('daily', 'midnight'):
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
        """Remove rotated log files older than the retention period."""
        if not self.log_dir or self.retention_days <= 0:
            return

        cutoff = datetime.now() - timedelta(days=self.retention_days)
        for log_file in glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}.*')):
            try:
                if datetime.fromtimestamp(os.path.getmtime(log_file)) < cutoff:
                    os.remove(log_file)
            except OSError as e:
                print(f"Warning: Could not remove old log file {log_file}: {e}")

    def get_log_files(self) -> List[str]:
        if not self.log_dir:
            return []
        return sorted(glob.glob(os.path.join(self.log_dir, f'{LOG_FILE_NAME}*')))


_logging_manager = LoggingManager()


def setup_logging(config: Optional[Dict[str, Any]]) -> None:
    """Configure process-wide logging from the 'logging' config section."""
    _logging_manager.setup_logging(config)


class SecurityAuditLogger:
    """Audit trail for authentication and administrative changes."""

    def __init__(self):
        self.logger = logging.getLogger('security')

    @staticmethod
    def _status(success: bool) -> str:
        return "SUCCESS" if success else "FAILURE"

    def log_authentication_attempt(self, host: str, username: str, success: bool):
        self.logger.info(f"Authentication {self._status(success)}: host={host} user={username}")

    def log_disconnect(self, host: str, username: str):
        self.logger.info(f"Disconnected: host={host} user={username}")

    def log_principal_operation(self, operation: str, principal: str, server: str, success: bool):
        self.logger.info(f"Principal operation {self._status(success)}: {operation} "
                         f"principal={principal} server={server}")

    def log_policy_change(self, policy: str, server: str):
        self.logger.info(f"Policy updated: {policy} server={server}")

    def log_identity_source_change(self, operation: str, name: str, server: str, success: bool):
        self.logger.info(f"Identity source {self._status(success)}: {operation} "
                         f"source={name} server={server}")

    def log_security_event(self, event: str, details: str = ""):
        message = f"Security event: {event}"
        if details:
            message += f" - {details}"
        self.logger.warning(message)


security_logger = SecurityAuditLogger()
