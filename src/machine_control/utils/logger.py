"""
Logger Utility Module
Provides centralized logging configuration for the IoT Machine Control System
"""

import json
import logging
import logging.handlers
import sys
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import colorlog

# Default configuration
DEFAULT_CONFIG = {
    'level': 'INFO',
    'format': '%(asctime)s - %(name)s - %(levelname)s - [%(machine_id)s] [%(req_id)s] %(message)s',
    'file': 'logs/machine_control.log',
    'max_bytes': 10485760,  # 10MB
    'backup_count': 10,
    'enable_console': True,
    'enable_file': True,
    'enable_color': True,
}

# Thread-local storage for context
context = threading.local()


class ContextFilter(logging.Filter):
    """Add machine/command context to log records"""

    def filter(self, record):
        record.machine_id = getattr(context, 'machine_id', '-')
        record.req_id = getattr(context, 'req_id', '-')
        return True


class LoggerManager:
    """Centralized logger management"""

    _instance = None
    _lock = threading.Lock()

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not hasattr(self, 'initialized'):
            self.initialized = True
            self.config = DEFAULT_CONFIG.copy()
            self.configured = False

    def configure(self, logging_config: Optional[Dict[str, Any]] = None):
        """Merge the `logging` section of the settings into the defaults"""
        logging_config = logging_config or {}

        file_config = logging_config.get('file')
        if isinstance(file_config, dict):
            self.config['file'] = file_config.get('path', self.config['file'])
            self.config['max_bytes'] = file_config.get('max_bytes', self.config['max_bytes'])
            self.config['backup_count'] = file_config.get('backup_count', self.config['backup_count'])

        for key in ['level', 'format', 'enable_console', 'enable_file', 'enable_color']:
            if key in logging_config:
                self.config[key] = logging_config[key]

        self.setup_logging()

    def setup_logging(self):
        """Setup root logger configuration"""
        root_logger = logging.getLogger()
        root_logger.setLevel(getattr(logging, self.config['level']))

        # Remove existing handlers
        for handler in list(root_logger.handlers):
            root_logger.removeHandler(handler)
            handler.close()

        context_filter = ContextFilter()

        if self.config['enable_console']:
            console_handler = self._create_console_handler()
            console_handler.addFilter(context_filter)
            root_logger.addHandler(console_handler)

        if self.config['enable_file']:
            file_handler = self._create_file_handler()
            file_handler.addFilter(context_filter)
            root_logger.addHandler(file_handler)

        self.configured = True

    def _create_console_handler(self) -> logging.Handler:
        """Create console handler with optional color support"""
        console_handler = logging.StreamHandler(sys.stdout)

        if self.config['enable_color']:
            formatter = colorlog.ColoredFormatter(
                '%(log_color)s' + self.config['format'] + '%(reset)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            )
        else:
            formatter = logging.Formatter(self.config['format'], datefmt='%Y-%m-%d %H:%M:%S')

        console_handler.setFormatter(formatter)
        console_handler.setLevel(getattr(logging, self.config['level']))
        return console_handler

    def _create_file_handler(self) -> logging.Handler:
        """Create rotating file handler"""
        log_file = Path(self.config['file'])
        log_file.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=self.config['max_bytes'],
            backupCount=self.config['backup_count']
        )
        file_handler.setFormatter(logging.Formatter(self.config['format'], datefmt='%Y-%m-%d %H:%M:%S'))
        file_handler.setLevel(getattr(logging, self.config['level']))
        return file_handler


# Singleton instance
_logger_manager = LoggerManager()


def setup_logging(logging_config: Optional[Dict[str, Any]] = None):
    """Configure root handlers from the `logging` settings section"""
    _logger_manager.configure(logging_config)


def get_logger(name: str = None) -> logging.Logger:
    """Get a logger instance

    Args:
        name: Logger name (usually __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name or 'machine_control')


class LogContext:
    """Context manager binding machine/command identifiers to log lines of this thread"""

    def __init__(self, machine_id: Optional[str] = None, req_id: Optional[str] = None):
        self.machine_id = machine_id
        self.req_id = req_id
        self._previous = None

    def __enter__(self):
        self._previous = (getattr(context, 'machine_id', '-'), getattr(context, 'req_id', '-'))
        if self.machine_id is not None:
            context.machine_id = self.machine_id
        if self.req_id is not None:
            context.req_id = self.req_id
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        context.machine_id, context.req_id = self._previous
        return False


class AuditLogger:
    """Logger for audit trails"""

    def __init__(self, name: str = 'machine_control.audit'):
        self.logger = get_logger(name)

    def log_action(self, action: str, entity: str, entity_id: str,
                   user: str = None, details: Dict[str, Any] = None,
                   result: str = 'SUCCESS'):
        """Log an audit action

        Args:
            action: Action performed (COMMAND, AUTO_ACTION, REJECT, ...)
            entity: Entity type
            entity_id: Entity identifier
            user: User who performed the action
            details: Additional details
            result: Action result (SUCCESS, REJECTED)
        """
        audit_data = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'action': action,
            'entity': entity,
            'entity_id': entity_id,
            'user': user or 'SYSTEM',
            'result': result
        }

        if details:
            audit_data['details'] = details

        self.logger.info(f"AUDIT: {json.dumps(audit_data, default=str)}")


audit_logger = AuditLogger()
log_audit = audit_logger.log_action
