import logging
import sys
from typing import List, Optional

_installed: List[logging.Handler] = []

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    Setup centralized logging configuration for the Coach application.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional log file path. If None, logs only to console.

    Returns:
        The application logger handed to components at construction time
    """
    # Create formatter
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )

    # Configure root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper()))

    # Clear any existing handlers
    root_logger.handlers.clear()
    _installed.clear()

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)
    _installed.append(console_handler)

    # File handler if specified
    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        _installed.append(file_handler)

    # Set specific loggers to appropriate levels
    logging.getLogger("coach").setLevel(getattr(logging, log_level.upper()))
    logging.getLogger("server").setLevel(getattr(logging, log_level.upper()))

    # Reduce noise from external libraries
    logging.getLogger("openai").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("neo4j").setLevel(logging.WARNING)

    return logging.getLogger("coach")


def shutdown_logging() -> None:
    """Flush and detach the handlers installed by setup_logging."""
    root_logger = logging.getLogger()
    for handler in list(_installed):
        try:
            handler.flush()
            handler.close()
        finally:
            root_logger.removeHandler(handler)
    _installed.clear()


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for the given module name.

    Args:
        name: Usually __name__ of the calling module

    Returns:
        Configured logger instance
    """
    return logging.getLogger(name)
