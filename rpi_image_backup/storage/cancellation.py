"""Cancellation flag for backup runs.

Signal handlers only flip a flag on a :class:`CancellationToken`; the
workflow checks it between stages (and the sync pass polls it while rsync
runs) and unwinds through its normal teardown path.

Usage:
    token = CancellationToken()
    with handle_signals(token):
        token.raise_if_cancelled("attach")
        ...
"""

from __future__ import annotations

import signal
from contextlib import contextmanager
from typing import Generator, Optional

from rpi_image_backup.logging import LoggerFactory

from .exceptions import BackupInterruptedError


log = LoggerFactory.for_system()

HANDLED_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class CancellationToken:
    """A flag set from a signal handler and read by the workflow.

    Setting the flag does no I/O and takes no locks, so it is safe to call
    from a signal handler at any point in the program.
    """

    def __init__(self) -> None:
        self.cancelled = False
        self.signal_name: Optional[str] = None
        self.signal_count = 0

    def cancel(self, signal_name: Optional[str] = None) -> None:
        self.signal_count += 1
        if not self.cancelled:
            self.cancelled = True
            self.signal_name = signal_name

    def raise_if_cancelled(self, stage: str = "") -> None:
        if self.cancelled:
            raise BackupInterruptedError(stage, self.signal_name)


@contextmanager
def handle_signals(token: CancellationToken) -> Generator[CancellationToken, None, None]:
    """Route SIGINT/SIGTERM to ``token`` for the duration of the block.

    Repeated signals while teardown is running only bump a counter; the
    previous handlers are restored on exit.
    """

    def _handler(signum, frame) -> None:
        token.cancel(signal.Signals(signum).name)

    previous = {}
    for signum in HANDLED_SIGNALS:
        previous[signum] = signal.signal(signum, _handler)
    try:
        yield token
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)
        if token.signal_count > 1:
            log.warning(
                f"Received {token.signal_count} signals; extra signals were ignored during teardown"
            )
