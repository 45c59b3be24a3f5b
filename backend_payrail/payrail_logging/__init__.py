"""
Structured logging for Payrail. Import get_logger from here in every module.
"""

from backend_payrail.payrail_logging.logger import bind_merchant, configure_structlog, get_logger

__all__ = ["bind_merchant", "configure_structlog", "get_logger"]
