import asyncio
import functools
import json
import logging
import os
import time
from contextlib import contextmanager
from logging.handlers import RotatingFileHandler
from typing import Optional

# =============================================================================
# SECTION: Formatters
# =============================================================================

_RESERVED_ATTRS = set(vars(logging.LogRecord("", 0, "", 0, "", None, None)).keys()) | {"message", "asctime"}

_COLORS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[1;31m",
}
_RESET = "\033[0m"

DEFAULT_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _extras(record: logging.LogRecord) -> dict:
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS and not k.startswith("_")}


class JsonFormatter(logging.Formatter):
    """Render each record as a single JSON line, including ``extra`` fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(_extras(record))
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class ColoredFormatter(logging.Formatter):
    """Console formatter with level colours and a trailing dump of ``extra`` fields."""

    def __init__(self, fmt: str = DEFAULT_FORMAT, use_color: bool = True):
        super().__init__(fmt)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        extras = _extras(record)
        if extras:
            line = f"{line} {extras}"
        if self.use_color and record.levelno in _COLORS:
            line = f"{_COLORS[record.levelno]}{line}{_RESET}"
        return line


# =============================================================================
# SECTION: Logger Factory
# =============================================================================

def get_logger(name: str, level: Optional[int] = None) -> logging.Logger:
    """
    Get a named component logger.

    Records propagate to the root logger, so the console and rotating file
    handlers installed by ``setup_application_logging`` receive them and the
    root level applies. Pass ``level`` only to override that for one logger.

    Args:
        name: Logger name
        level: Optional level for this logger alone

    Returns:
        The named logger
    """
    logger = logging.getLogger(name)
    if level is not None:
        logger.setLevel(level)
    return logger


def setup_application_logging(
        app_name: str,
        log_level: int = logging.INFO,
        log_dir: str = "logs",
        enable_performance_logging: bool = True,
        max_file_size: int = 10 * 1024 * 1024,
        backup_count: int = 5,
) -> logging.Logger:
    """
    Configure the application logger with console and rotating file output.

    Args:
        app_name: Name of the application logger and log file
        log_level: Root logging level
        log_dir: Directory for log files
        enable_performance_logging: Also write a separate performance log
        max_file_size: Bytes before a log file is rotated
        backup_count: Number of rotated files to keep

    Returns:
        The application logger
    """
    os.makedirs(log_dir, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(log_level)

    if not any(isinstance(h, logging.StreamHandler) and not isinstance(h, RotatingFileHandler)
               for h in root.handlers):
        console = logging.StreamHandler()
        console.setFormatter(ColoredFormatter())
        root.addHandler(console)

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, f"{app_name}.log"),
        maxBytes=max_file_size,
        backupCount=backup_count,
        encoding="utf-8",
    )
    file_handler.setFormatter(JsonFormatter())
    root.addHandler(file_handler)

    if enable_performance_logging:
        perf_handler = RotatingFileHandler(
            os.path.join(log_dir, f"{app_name}_performance.log"),
            maxBytes=max_file_size,
            backupCount=backup_count,
            encoding="utf-8",
        )
        perf_handler.setFormatter(JsonFormatter())
        perf_logger = logging.getLogger("performance")
        perf_logger.setLevel(logging.DEBUG)
        perf_logger.addHandler(perf_handler)

    logger = logging.getLogger(app_name)
    logger.setLevel(log_level)
    return logger


# =============================================================================
# SECTION: Performance Helpers
# =============================================================================

_perf_logger = logging.getLogger("performance")


class PerformanceLogger:
    """Context manager that logs how long a block took."""

    def __init__(self, logger: logging.Logger, operation: str, level: int = logging.DEBUG):
        self.logger = logger
        self.operation = operation
        self.level = level
        self.start: Optional[float] = None

    def __enter__(self):
        self.start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start) * 1000
        if exc_type is None:
            self.logger.log(self.level, f"⏱️ {self.operation} took {duration_ms:.2f}ms",
                            extra={"event": "performance", "operation": self.operation,
                                   "duration_ms": round(duration_ms, 3)})
        else:
            self.logger.warning(f"⏱️ {self.operation} failed after {duration_ms:.2f}ms: {exc_val}",
                                extra={"event": "performance_failure", "operation": self.operation,
                                       "duration_ms": round(duration_ms, 3)})
        return False


def log_performance(operation: str):
    """Decorator timing a sync or async callable and logging failures."""

    def decorator(func):
        if asyncio.iscoroutinefunction(func):
            @functools.wraps(func)
            async def async_wrapper(*args, **kwargs):
                start = time.perf_counter()
                try:
                    return await func(*args, **kwargs)
                except Exception as e:
                    _perf_logger.error(f"❌ {operation} raised {type(e).__name__}: {e}")
                    raise
                finally:
                    _perf_logger.debug(
                        f"⏱️ {operation} finished in {(time.perf_counter() - start) * 1000:.2f}ms"
                    )

            return async_wrapper

        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            start = time.perf_counter()
            try:
                return func(*args, **kwargs)
            except Exception as e:
                _perf_logger.error(f"❌ {operation} raised {type(e).__name__}: {e}")
                raise
            finally:
                _perf_logger.debug(f"⏱️ {operation} finished in {(time.perf_counter() - start) * 1000:.2f}ms")

        return wrapper

    return decorator


@contextmanager
def log_context(logger: logging.Logger, message: str, level: int = logging.DEBUG):
    """Log entry and exit of a named block."""
    logger.log(level, f"▶️ {message}")
    start = time.perf_counter()
    try:
        yield
    except Exception as e:
        logger.error(f"❌ {message} failed: {e}")
        raise
    finally:
        logger.log(level, f"⏹️ {message} ({time.perf_counter() - start:.3f}s)")
