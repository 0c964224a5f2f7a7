# vim: set noexpandtab: -*- indent-tabs-mode: t -*-
from __future__ import annotations

import logging
import sys
import traceback

LOGGER_NAME = "appinstall"


class _BelowWarning(logging.Filter):
	def filter(self, record: logging.LogRecord) -> bool:
		return record.levelno < logging.WARNING


def setup_logger(verbose: bool = False, *, name: str = LOGGER_NAME) -> logging.Logger:
	"""
	Configure the command-line logger.

	Progress goes to stdout, warnings and errors to stderr. `-v` lowers the
	level to DEBUG. Safe to call more than once (handlers are replaced).
	"""
	logger = logging.getLogger(name)
	logger.setLevel(logging.DEBUG if verbose else logging.INFO)
	logger.handlers.clear()

	formatter = logging.Formatter("%(message)s")

	out_handler = logging.StreamHandler(sys.stdout)
	out_handler.setLevel(logging.DEBUG)
	out_handler.addFilter(_BelowWarning())
	out_handler.setFormatter(formatter)

	err_handler = logging.StreamHandler(sys.stderr)
	err_handler.setLevel(logging.WARNING)
	err_handler.setFormatter(formatter)

	logger.addHandler(out_handler)
	logger.addHandler(err_handler)
	logger.propagate = False
	return logger


def log_failure(logger: logging.Logger, err: BaseException, *, verbose: bool) -> None:
	"""Log a concise error line; with `verbose`, also the whole cause chain."""
	logger.error("ERROR: %s", err)
	if verbose:
		logger.error("%s", "".join(traceback.format_exception(type(err), err, err.__traceback__)).rstrip())
