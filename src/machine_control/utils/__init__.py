from .logger import get_logger, setup_logging, LogContext, log_audit

__all__ = ["get_logger", "setup_logging", "LogContext", "log_audit"]
