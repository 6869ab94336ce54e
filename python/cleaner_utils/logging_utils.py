import logging
import os
import traceback
from typing import Optional


def setup_logging(level: Optional[int] = None, fmt: Optional[str] = None) -> None:
	"""Configure root logging once. Subsequent calls are no-ops.
	Level defaults to LOG_LEVEL from the environment, then INFO.
	"""
	if logging.getLogger().handlers:
		# Already configured; do nothing
		return
	if level is None:
		level = logging.getLevelName(os.environ.get("LOG_LEVEL", "INFO").upper())
		if not isinstance(level, int):
			level = logging.INFO
	format_str = fmt or '%(asctime)s - %(levelname)s - %(name)s - %(message)s'
	logging.basicConfig(level=level, format=format_str)


def get_logger(name: Optional[str] = None) -> logging.Logger:
	"""Return a module/logger by name, after ensuring logging is configured."""
	setup_logging()
	return logging.getLogger(name) if name else logging.getLogger(__name__)


def log_banner(logger: logging.Logger, title: str, width: int = 60) -> None:
	"""Log a title framed by separator lines."""
	logger.info("=" * width)
	logger.info(f"   {title}")
	logger.info("=" * width)


def log_exception(logger: logging.Logger, message: str = "An error occurred", exc_info: Exception = None) -> None:
	"""Centralized exception logging with full traceback.

	Args:
		logger: Logger instance to use
		message: Custom error message to log before the traceback
		exc_info: Exception instance (if None, uses current exception context)
	"""
	logger.error(message)
	if exc_info is not None:
		logger.error(f"Exception type: {type(exc_info).__name__}")
		logger.error(f"Exception message: {str(exc_info)}")
		tb = "".join(traceback.format_exception(type(exc_info), exc_info, exc_info.__traceback__))
	else:
		tb = traceback.format_exc()
	logger.error("Full traceback:")
	logger.error(tb)
