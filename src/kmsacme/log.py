"""Logging utilities for kmsacme.

`setup_logging` is called once, right after the command line is
parsed. It installs a terminal handler whose level follows ``-v`` and
``-q`` and, when ``--logs-dir`` is given, a rotating file handler that
records everything at debug level, including the requests sent to the
CA and their responses.

"""
import logging
import logging.handlers
import os
import sys
from typing import IO
from typing import List
from typing import Optional
from typing import Tuple

from kmsacme import constants
from kmsacme import errors

# Logging format
CLI_FMT = "%(message)s"
FILE_FMT = "%(asctime)s:%(levelname)s:%(name)s:%(message)s"

logger = logging.getLogger(__name__)


def verbosity_level(config) -> int:
    """Terminal logging level for the given configuration."""
    if config.quiet:
        return constants.QUIET_LOGGING_LEVEL
    return max(constants.DEFAULT_LOGGING_LEVEL - config.verbose_count * 10, logging.DEBUG)


def setup_logging(config, stream: Optional[IO[str]] = None) -> List[logging.Handler]:
    """Configure the root logger.

    :param config: Configuration object
    :type config: :class:`kmsacme.configuration.NamespaceConfig`
    :param stream: Terminal stream, `sys.stderr` by default.

    :returns: the installed handlers
    :rtype: list

    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)  # send all records to handlers

    stream_handler = logging.StreamHandler(sys.stderr if stream is None else stream)
    stream_handler.setFormatter(logging.Formatter(CLI_FMT))
    level = verbosity_level(config)
    stream_handler.setLevel(level)
    root_logger.addHandler(stream_handler)
    handlers: List[logging.Handler] = [stream_handler]

    if config.logs_dir:
        file_handler, file_path = setup_log_file_handler(
            config, constants.LOG_FILE, FILE_FMT)
        root_logger.addHandler(file_handler)
        handlers.append(file_handler)
        if not config.quiet:
            print(f'Saving debug log to {file_path}', file=sys.stderr)

    logger.debug('Root logging level set at %d', level)
    return handlers


def setup_log_file_handler(config, logfile: str,
                           fmt: str) -> Tuple[logging.Handler, str]:
    """Setup file debug logging.

    :param config: Configuration object
    :param str logfile: basename for the log file
    :param str fmt: logging format string

    :returns: file handler and absolute path to the log file
    :rtype: tuple

    """
    log_file_path = os.path.join(config.logs_dir, logfile)
    try:
        os.makedirs(config.logs_dir, mode=0o700, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            log_file_path, maxBytes=2 ** 20,
            backupCount=config.max_log_backups)
    except OSError as error:
        raise errors.Error(f'Unable to write logs to {config.logs_dir}: {error}')
    # rotate on each invocation, rollover only possible when maxBytes
    # is nonzero and backupCount is nonzero, so we set maxBytes as big
    # as possible not to overrun in single CLI invocation (1MB).
    if os.path.getsize(log_file_path) > 0 and config.max_log_backups:
        handler.doRollover()
    handler.setLevel(logging.DEBUG)
    handler_formatter = logging.Formatter(fmt=fmt)
    handler.setFormatter(handler_formatter)
    return handler, log_file_path
