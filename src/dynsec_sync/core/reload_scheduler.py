from __future__ import annotations

import logging
import subprocess
import threading
from typing import Callable, Optional, Sequence

logger = logging.getLogger(__name__)

# Wait this long after the last password-file write before signalling the broker (seconds)
DEFAULT_RELOAD_DEBOUNCE_S = 2.0

DEFAULT_RELOAD_COMMAND = ("pkill", "-HUP", "mosquitto")


def signal_broker_reload(command: Sequence[str] = DEFAULT_RELOAD_COMMAND) -> bool:
    """
    Ask the broker to re-read its password file (SIGHUP by default).

    Returns True if the command succeeded. Failures are logged, not raised:
    the file is already written and the next reload picks it up.
    """
    logger.info("Reloading Mosquitto password file (debounced)...")
    try:
        subprocess.run(list(command), check=True, capture_output=True, text=True)
    except FileNotFoundError:
        logger.error("Failed to reload Mosquitto: %s not found", command[0])
        return False
    except subprocess.CalledProcessError as exc:
        logger.error(
            "Failed to reload Mosquitto: rc=%s stderr=%s",
            exc.returncode,
            (exc.stderr or "").strip(),
        )
        return False
    logger.info("Mosquitto password file reloaded")
    return True


class DebouncedReloadScheduler:
    """
    Coalesce bursts of "apply changes" requests into one delayed reload.

    Each reload() call cancels any pending timer and starts a new one, so only
    the last request inside the debounce window fires. A disabled scheduler
    (dynamic security mode) returns immediately: there, changes apply as soon
    as each command succeeds.
    """

    def __init__(
        self,
        action: Optional[Callable[[], object]] = None,
        *,
        debounce_s: float = DEFAULT_RELOAD_DEBOUNCE_S,
        enabled: bool = True,
    ) -> None:
        self._action = action or signal_broker_reload
        self.debounce_s = debounce_s
        self.enabled = enabled
        self._lock = threading.Lock()
        self._timer: Optional[threading.Timer] = None
        self.fired_count = 0

    @classmethod
    def disabled(cls) -> "DebouncedReloadScheduler":
        return cls(lambda: None, enabled=False)

    def reload(self) -> None:
        if not self.enabled:
            logger.debug("Dynamic Security mode - no reload needed")
            return
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            timer = threading.Timer(self.debounce_s, self._fire)
            timer.daemon = True
            self._timer = timer
            timer.start()
        logger.info("Mosquitto reload scheduled (%.1fs debounce)", self.debounce_s)

    def pending(self) -> bool:
        with self._lock:
            return self._timer is not None

    def cancel(self) -> None:
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    def flush(self) -> None:
        """Run a pending reload now instead of waiting out the window."""
        with self._lock:
            timer, self._timer = self._timer, None
        if timer is None:
            return
        timer.cancel()
        self._run()

    def _fire(self) -> None:
        with self._lock:
            if self._timer is None or self._timer is not threading.current_thread():
                # superseded or cancelled after the timer thread woke
                return
            self._timer = None
        self._run()

    def _run(self) -> None:
        self.fired_count += 1
        try:
            self._action()
        except Exception:
            logger.exception("Broker reload action failed")
