"""
Enhanced logging configuration for the funnel & cohort analytics engine
Provides detailed logging for debugging backend failover and Polars/Pandas consistency
"""

import logging
import sys
from functools import wraps
from pathlib import Path


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for better readability"""

    # Color codes
    COLORS = {
        "DEBUG": "\033[36m",  # Cyan
        "INFO": "\033[32m",  # Green
        "WARNING": "\033[33m",  # Yellow
        "ERROR": "\033[31m",  # Red
        "CRITICAL": "\033[35m",  # Magenta
        "RESET": "\033[0m",  # Reset
    }

    def format(self, record):
        # Color a copy so file handlers keep the plain level name
        record = logging.makeLogRecord(record.__dict__)
        level_color = self.COLORS.get(record.levelname, self.COLORS["RESET"])
        record.levelname = f"{level_color}{record.levelname}{self.COLORS['RESET']}"
        return super().format(record)


def setup_enhanced_logging(
    level: str = "INFO",
    enable_file_logging: bool = False,
    enable_backend_debug: bool = False,
    log_file_path: str = "funnel_analytics.log",
    stream=None,
):
    """
    Setup enhanced logging configuration

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        enable_file_logging: Whether to log to file
        enable_backend_debug: Whether to log driver internals (clickhouse_connect, SQLAlchemy pool)
        log_file_path: Path to log file
        stream: Console stream, stderr by default so command output stays clean
    """

    # Convert string level to logging constant
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    logger = logging.getLogger()
    logger.setLevel(numeric_level)
    logger.handlers.clear()

    # Console handler with colors
    console_handler = logging.StreamHandler(stream or sys.stderr)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        ColoredFormatter(
            "%(asctime)s | %(levelname)s | %(name)s:%(lineno)d | %(message)s",
            datefmt="%H:%M:%S",
        )
    )
    logger.addHandler(console_handler)

    if enable_file_logging:
        log_path = Path(log_file_path)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s | %(levelname)-8s | %(name)-28s:%(lineno)-4d | %(funcName)-20s | %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)
        logger.info(f"📝 Log file: {log_path.absolute()}")

    if enable_backend_debug:
        logging.getLogger("clickhouse_connect").setLevel(logging.DEBUG)
        logging.getLogger("sqlalchemy.pool").setLevel(logging.DEBUG)
        logger.info("🔍 Backend driver debugging enabled")
    else:
        logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    logger.debug(f"Python: {sys.version.split()[0]}")
    _log_library_versions(logger)

    return logger


def _log_library_versions(logger: logging.Logger) -> None:
    import pandas as pd
    import polars as pl
    import sqlalchemy

    logger.debug(f"Polars: {pl.__version__}")
    logger.debug(f"Pandas: {pd.__version__}")
    logger.debug(f"SQLAlchemy: {sqlalchemy.__version__}")


def log_dataframe_info(df, name: str = "DataFrame", logger=None):
    """
    Log shape and columns of a DataFrame for debugging

    Args:
        df: DataFrame (Polars or Pandas)
        name: Name to identify the DataFrame
        logger: Logger instance (if None, uses this module's logger)
    """
    if logger is None:
        logger = logging.getLogger(__name__)
    if not logger.isEnabledFor(logging.DEBUG):
        return

    if hasattr(df, "estimated_size"):
        memory_mb = df.estimated_size() / 1024 / 1024
    else:
        memory_mb = df.memory_usage(deep=True).sum() / 1024 / 1024

    logger.debug(
        f"📊 {name}: {type(df).__name__} shape={df.shape} "
        f"columns={list(df.columns)} memory={memory_mb:.2f} MB"
    )


def log_backend_operation(operation_name: str):
    """
    Decorator to log backend operations with error context

    Args:
        operation_name: Name of the operation for logging
    """

    def decorator(func):
        @wraps(func)
        def wrapper(*args, **kwargs):
            logger = logging.getLogger(func.__module__)
            logger.debug(f"🔄 Starting backend operation: {operation_name}")

            try:
                result = func(*args, **kwargs)
                logger.debug(f"✅ Backend operation completed: {operation_name}")
                return result
            except Exception as e:
                logger.error(f"❌ Backend operation failed: {operation_name}")
                logger.error(f"   Error type: {type(e).__name__}: {e}")

                # Additional context for common driver errors
                error_msg = str(e).lower()
                if "timeout" in error_msg or "timed out" in error_msg:
                    logger.error("   🔍 The backend did not answer within the request deadline")
                elif "connection" in error_msg or "refused" in error_msg:
                    logger.error("   🔍 The backend is unreachable; check host, port and credentials")
                elif "pool" in error_msg:
                    logger.error("   🔍 The connection pool is exhausted; check pool size limits")

                raise

        return wrapper

    return decorator
