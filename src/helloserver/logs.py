"""
=============================================================================
LOGGING SETUP
=============================================================================

Attaches one handler to the "helloserver" logger, chosen from LogConfig:

    LogConfig.file_location unset   →  StreamHandler(stderr)
    LogConfig.file_location set     →  QueueHandler ──► QueueListener thread
                                                          └── RotatingLogHandler(file)

The handler is returned to the caller, which detaches it again on exit.
Nothing here is decided at import time; the Lifecycle that owns the
server also owns its log output.

File output goes through a queue so that request threads never touch the
disk. A rollover (rename + gzip of up to max_size_mb) runs on the
listener thread while greetings keep logging into the queue.

=============================================================================
LOG ROTATION
=============================================================================

A container that writes logs to a mounted volume will fill that volume
eventually. RotatingLogHandler bounds it three ways:

    SIZE      app.log grows past max_size_mb
              └── app.log → app.log.1.gz, app.log.1.gz → app.log.2.gz ...

    COUNT     at most max_backups rotated files are kept
              └── the oldest one falls off the end

    AGE       rotated files older than max_age_days are deleted
              └── checked at startup and after every rotation

Compression happens while rotating, on the writer thread: the closed file
is gzipped straight into its backup name, so an uncompressed backup never
lingers on disk.

=============================================================================
"""

import gzip
import logging
import logging.handlers
import os
import queue
import re
import shutil
import sys
import time
from glob import escape, glob
from typing import Optional

from .config import LogConfig


LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

PACKAGE_LOGGER = "helloserver"

SECONDS_PER_DAY = 24 * 60 * 60

_BACKUP_SUFFIX = re.compile(r"\.\d+(\.gz)?$")


class RotatingLogHandler(logging.handlers.RotatingFileHandler):
    """
    RotatingFileHandler with gzip-compressed backups and age-based pruning.

    Usage:
        handler = RotatingLogHandler(
            "/var/log/app/app.log",
            max_bytes=500 * 1024 * 1024,
            backup_count=3,
            max_age_days=28,
            compress=True,
        )
    """

    def __init__(
        self,
        filename: str,
        max_bytes: int,
        backup_count: int,
        max_age_days: int = 0,
        compress: bool = True,
        encoding: str = "utf-8",
    ):
        directory = os.path.dirname(os.path.abspath(filename))
        os.makedirs(directory, exist_ok=True)

        super().__init__(
            filename,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding=encoding,
        )

        self.max_age_days = max_age_days
        self.compress = compress

        if compress:
            self.namer = self._gzip_name
            self.rotator = self._gzip_rotate

        self.prune_expired()

    @staticmethod
    def _gzip_name(default_name: str) -> str:
        return default_name + ".gz"

    @staticmethod
    def _gzip_rotate(source: str, dest: str) -> None:
        with open(source, "rb") as src, gzip.open(dest, "wb") as dst:
            shutil.copyfileobj(src, dst)
        os.remove(source)

    def doRollover(self):
        super().doRollover()
        self.prune_expired()

    def backup_files(self) -> list[str]:
        """Rotated copies of this log file, e.g. app.log.1 or app.log.2.gz."""
        prefix = self.baseFilename
        return sorted(
            path for path in glob(escape(prefix) + ".*")
            if _BACKUP_SUFFIX.fullmatch(path[len(prefix):])
        )

    def prune_expired(self) -> None:
        """Delete backups whose last modification is older than max_age_days."""
        if self.max_age_days <= 0:
            return

        cutoff = time.time() - self.max_age_days * SECONDS_PER_DAY
        for path in self.backup_files():
            try:
                if os.path.getmtime(path) < cutoff:
                    os.remove(path)
            except FileNotFoundError:
                pass  # Removed by someone else in the meantime


def build_handler(config: LogConfig) -> logging.Handler:
    """Create (but don't attach) the handler LogConfig asks for."""
    if config.file_location:
        handler: logging.Handler = RotatingLogHandler(
            config.file_location,
            max_bytes=config.max_bytes,
            backup_count=config.max_backups,
            max_age_days=config.max_age_days,
            compress=config.compress,
        )
    else:
        handler = logging.StreamHandler(sys.stderr)

    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
    return handler


class BackgroundLogHandler(logging.handlers.QueueHandler):
    """
    Queue records for a writer thread that owns the real handler.

    emit() only puts the record on a queue, so the logging call returns
    immediately even while the target is busy rotating and compressing.
    close() drains the queue, stops the writer and closes the target.
    """

    def __init__(self, target: logging.Handler):
        super().__init__(queue.SimpleQueue())
        self.target = target
        self.writer: Optional[logging.handlers.QueueListener] = (
            logging.handlers.QueueListener(self.queue, target)
        )
        self.writer.start()

    def close(self):
        if self.writer is not None:
            # stop() flushes whatever is still queued before returning
            self.writer.stop()
            self.writer = None
            self.target.close()
        super().close()


def configure_logging(config: LogConfig) -> logging.Handler:
    """
    Route the package's log output according to ``config``.

    The file handler is wrapped in a BackgroundLogHandler, whose writer
    thread starts here; callers that care about which thread receives
    signals should call this with those signals blocked.

    Returns:
        The attached handler; pass it to detach_logging() on exit.
    """
    handler = build_handler(config)
    if config.file_location:
        handler = BackgroundLogHandler(handler)

    package_logger = logging.getLogger(PACKAGE_LOGGER)
    package_logger.setLevel(config.level_number)
    package_logger.addHandler(handler)

    return handler


def detach_logging(handler: logging.Handler) -> None:
    """Remove a handler installed by configure_logging() and close it."""
    logging.getLogger(PACKAGE_LOGGER).removeHandler(handler)
    handler.close()
