"""
core/background.py -- Fire-and-forget task dispatch with its own error channel.

Location enrichment and outbound email must never block or fail the request
that triggered them. Instead of leaving un-awaited work inside the request
path, callers hand the work to a TaskDispatcher:

    dispatcher.submit("security-alert", notifier.send_security_alert, email, ...)

submit() never raises into the caller. Any exception raised by the task is
logged on the "vaultpass.tasks" logger together with the task name. Nothing
is retried.

inline=True runs the task synchronously in the caller's thread (still with
the error trap). Tests and the CLI use it so side effects are observable
immediately after the call returns.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any

logger = logging.getLogger("vaultpass.tasks")


class TaskDispatcher:
    def __init__(self, max_workers: int = 4, inline: bool = False) -> None:
        self.inline = inline
        self._executor: ThreadPoolExecutor | None = None
        if not inline:
            self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="vaultpass-bg")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Future | None:
        """Schedule fn(*args, **kwargs). Returns the Future, or None when inline or rejected."""
        if self._executor is None:
            _run_guarded(name, fn, args, kwargs)
            return None
        try:
            return self._executor.submit(_run_guarded, name, fn, args, kwargs)
        except RuntimeError:
            # Executor already shut down (application stopping).
            logger.warning("Background task %s dropped: dispatcher is shut down", name)
            return None

    def shutdown(self, wait: bool = True) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=wait)


def _run_guarded(name: str, fn: Callable[..., Any], args: tuple, kwargs: dict) -> None:
    try:
        fn(*args, **kwargs)
    except Exception:
        logger.warning("Background task %s failed", name, exc_info=True)
