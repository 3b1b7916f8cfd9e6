"""
Session inactivity tracking.

A SessionMonitor is owned by whoever needs it (the app keeps one) rather than
being a process-wide singleton. Call `poll()` yourself or run
`start_background()` to have a daemon thread do it.
"""
import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, List, Optional

logger = logging.getLogger(__name__)

SESSION_TIMEOUT = timedelta(minutes=30)
WARNING_BEFORE = timedelta(minutes=5)


class SessionState(str, Enum):
    ACTIVE = "active"
    WARNING_TIMEOUT = "warning_timeout"
    TIMED_OUT = "timed_out"
    ENDED = "ended"

    @property
    def message(self) -> str:
        return _MESSAGES[self]


_MESSAGES = {
    SessionState.ACTIVE: "Session is active",
    SessionState.WARNING_TIMEOUT: "Your session will expire soon",
    SessionState.TIMED_OUT: "Your session has expired. Please sign in again.",
    SessionState.ENDED: "Session ended",
}

Listener = Callable[[SessionState], None]


class SessionMonitor:
    def __init__(
        self,
        timeout: timedelta = SESSION_TIMEOUT,
        warning_before: timedelta = WARNING_BEFORE,
        clock: Callable[[], datetime] = datetime.now,
    ):
        if warning_before >= timeout:
            raise ValueError("warning_before must be shorter than timeout")
        self.timeout = timeout
        self.warning_before = warning_before
        self._clock = clock
        self._lock = threading.RLock()
        self._listeners: List[Listener] = []
        self._user_id: Optional[str] = None
        self._last_activity: Optional[datetime] = None
        self._state: Optional[SessionState] = None
        self._stop: Optional[threading.Event] = None
        self._thread: Optional[threading.Thread] = None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def state(self) -> Optional[SessionState]:
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)
        return unsubscribe

    def start(self, user_id: str) -> None:
        with self._lock:
            self._user_id = user_id
            self._last_activity = self._clock()
        logger.info("Session started for user %s", user_id)
        self._transition(SessionState.ACTIVE)

    def record_activity(self) -> bool:
        """Resets the inactivity window. Returns False when there is no live session."""
        with self._lock:
            if self._state not in (SessionState.ACTIVE, SessionState.WARNING_TIMEOUT):
                return False
            self._last_activity = self._clock()
        self._transition(SessionState.ACTIVE)
        return True

    def is_valid(self) -> bool:
        return self.remaining() is not None

    def remaining(self) -> Optional[timedelta]:
        with self._lock:
            if self._last_activity is None or self._state in (SessionState.TIMED_OUT, SessionState.ENDED):
                return None
            left = self.timeout - (self._clock() - self._last_activity)
        return left if left > timedelta(0) else None

    def poll(self) -> Optional[SessionState]:
        with self._lock:
            if self._last_activity is None or self._state in (SessionState.TIMED_OUT, SessionState.ENDED):
                return self._state
            idle = self._clock() - self._last_activity
        if idle >= self.timeout:
            logger.info("Session timed out for user %s", self._user_id)
            self._transition(SessionState.TIMED_OUT)
        elif idle >= self.timeout - self.warning_before:
            self._transition(SessionState.WARNING_TIMEOUT)
        return self._state

    def end(self) -> None:
        with self._lock:
            if self._state is None or self._state == SessionState.ENDED:
                return
            self._last_activity = None
        logger.info("Session ended for user %s", self._user_id)
        self._transition(SessionState.ENDED)

    def start_background(self, interval: float = 1.0) -> None:
        if self._thread is not None:
            return
        self._stop = threading.Event()
        stop = self._stop

        def _loop():
            while not stop.wait(interval):
                self.poll()

        self._thread = threading.Thread(target=_loop, name="session-monitor", daemon=True)
        self._thread.start()

    def dispose(self) -> None:
        if self._stop is not None:
            self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)
        self._thread = None
        self._stop = None
        with self._lock:
            self._listeners.clear()

    def _transition(self, state: SessionState) -> None:
        with self._lock:
            if self._state == state:
                return
            self._state = state
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(state)
            except Exception:
                logger.exception("Session listener failed on %s", state.value)
