"""Time-windowed suppression of repeated operator alerts."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)


class AlertDebouncer:
    """Remember when each alert key last fired and suppress repeats.

    Parameters
    ----------
    default_window:
        Suppression window in seconds used when ``can_send`` is called
        without an explicit window.
    clock:
        Monotonic time source in seconds.  Injected by tests.
    """

    def __init__(
        self,
        default_window: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._default_window = default_window
        self._clock = clock
        self._last_sent: dict[str, float] = {}

    def can_send(self, key: str, window: float | None = None) -> bool:
        """Return ``True`` and record the send when *key* is outside its window.

        A ``False`` result leaves the recorded send time untouched, so the
        window is measured from the last alert that actually went out.
        """
        window_seconds = self._default_window if window is None else window
        now = self._clock()
        last = self._last_sent.get(key)
        if last is not None and now - last < window_seconds:
            logger.debug("Alert %s debounced (%.0fs since last send)", key, now - last)
            return False
        self._last_sent[key] = now
        return True

    def reset(self, key: str | None = None) -> None:
        """Forget one key, or every key when *key* is ``None``."""
        if key is None:
            self._last_sent.clear()
        else:
            self._last_sent.pop(key, None)
