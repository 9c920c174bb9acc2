"""
Circuit breaker for upstream collaborators (LLM, embeddings, moderation).

Each collaborator gets its own breaker so a persistent outage of one service
short-circuits to a fallback without paying call latency on every request:
- CLOSED: calls pass through; results are recorded in a sliding window
- OPEN: calls fail immediately with CircuitBreakerOpenError
- HALF_OPEN: a bounded number of probe calls decide whether to close again
"""
import time
from collections import deque
from enum import Enum
from threading import Lock
from typing import Any, Awaitable, Callable, Deque, Dict, Optional, Tuple

from crm_ai.core.logging import get_logger
from crm_ai.core.metrics import record_circuit_state

logger = get_logger(__name__)


class CircuitState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class CircuitBreakerOpenError(Exception):
    """Raised when the breaker rejects a call without attempting it."""

    def __init__(self, name: str, state: CircuitState):
        super().__init__(f"Circuit breaker {name} is {state.value.upper()}")
        self.name = name
        self.state = state


class CircuitBreaker:
    """
    Error-rate circuit breaker.

    The circuit opens when, within ``time_window_seconds``, at least
    ``min_requests_for_threshold`` calls were made and the failure ratio
    reaches ``failure_threshold``. After ``open_duration_seconds`` it admits
    up to ``half_open_max_probes`` concurrent probes; ``half_open_successes``
    consecutive successes close it, any probe failure re-opens it.
    """

    def __init__(
        self,
        name: str,
        failure_threshold: float = 0.5,
        time_window_seconds: float = 60,
        open_duration_seconds: float = 30,
        min_requests_for_threshold: int = 10,
        half_open_max_probes: int = 1,
        half_open_successes: int = 2,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.time_window_seconds = time_window_seconds
        self.open_duration_seconds = open_duration_seconds
        self.min_requests_for_threshold = min_requests_for_threshold
        self.half_open_max_probes = half_open_max_probes
        self.half_open_successes = half_open_successes
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._lock = Lock()
        self._history: Deque[Tuple[float, bool]] = deque()
        self._opened_at: Optional[float] = None
        self._probes_in_flight = 0
        self._probe_successes = 0

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._refresh(self._clock())
            return self._state

    def _set_state(self, state: CircuitState, **fields: Any) -> None:
        if state == self._state:
            return
        self._state = state
        record_circuit_state(self.name, state.value)
        log = logger.warning if state == CircuitState.OPEN else logger.info
        log(f"circuit_breaker_{state.value}", circuit_breaker=self.name, **fields)

    def _refresh(self, now: float) -> None:
        cutoff = now - self.time_window_seconds
        while self._history and self._history[0][0] < cutoff:
            self._history.popleft()

        if self._state == CircuitState.OPEN:
            if self._opened_at is not None and now - self._opened_at >= self.open_duration_seconds:
                self._probes_in_flight = 0
                self._probe_successes = 0
                self._set_state(CircuitState.HALF_OPEN)

    def _open(self, now: float, **fields: Any) -> None:
        self._opened_at = now
        self._history.clear()
        self._set_state(CircuitState.OPEN, **fields)

    def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is a probe."""
        with self._lock:
            now = self._clock()
            self._refresh(now)
            if self._state == CircuitState.OPEN:
                raise CircuitBreakerOpenError(self.name, self._state)
            if self._state == CircuitState.HALF_OPEN:
                if self._probes_in_flight >= self.half_open_max_probes:
                    raise CircuitBreakerOpenError(self.name, self._state)
                self._probes_in_flight += 1
                return True
            return False

    def _after_call(self, success: bool, probe: bool) -> None:
        with self._lock:
            now = self._clock()
            if probe:
                self._probes_in_flight = max(0, self._probes_in_flight - 1)
                if self._state != CircuitState.HALF_OPEN:
                    return
                if not success:
                    self._open(now, reason="probe_failed")
                    return
                self._probe_successes += 1
                if self._probe_successes >= self.half_open_successes:
                    self._opened_at = None
                    self._set_state(CircuitState.CLOSED, probe_successes=self._probe_successes)
                return

            self._history.append((now, success))
            total = len(self._history)
            if total < self.min_requests_for_threshold:
                return
            failures = sum(1 for _, ok in self._history if not ok)
            error_rate = failures / total
            if error_rate >= self.failure_threshold:
                self._open(now, error_rate=error_rate, failures=failures, total=total)

    def _release_probe(self, probe: bool) -> None:
        if not probe:
            return
        with self._lock:
            self._probes_in_flight = max(0, self._probes_in_flight - 1)

    def call(self, func: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Execute a synchronous function under breaker protection."""
        probe = self._before_call()
        try:
            result = func(*args, **kwargs)
        except Exception:
            self._after_call(False, probe)
            raise
        except BaseException:
            # Cancelled before an outcome: free the probe slot, record nothing.
            self._release_probe(probe)
            raise
        self._after_call(True, probe)
        return result

    async def call_async(self, func: Callable[..., Awaitable[Any]], *args: Any, **kwargs: Any) -> Any:
        """Execute a coroutine function under breaker protection."""
        probe = self._before_call()
        try:
            result = await func(*args, **kwargs)
        except Exception:
            self._after_call(False, probe)
            raise
        except BaseException:
            # Cancelled before an outcome: free the probe slot, record nothing.
            self._release_probe(probe)
            raise
        self._after_call(True, probe)
        return result

    def reset(self) -> None:
        with self._lock:
            self._history.clear()
            self._opened_at = None
            self._probes_in_flight = 0
            self._probe_successes = 0
            self._set_state(CircuitState.CLOSED, reason="reset")

    def get_metrics(self) -> Dict[str, Any]:
        """Snapshot for health checks."""
        with self._lock:
            self._refresh(self._clock())
            total = len(self._history)
            failures = sum(1 for _, ok in self._history if not ok)
            return {
                "name": self.name,
                "state": self._state.value,
                "recent_requests": total,
                "recent_failures": failures,
                "error_rate": failures / total if total else 0.0,
                "opened_at": self._opened_at,
            }


_breakers: Dict[str, CircuitBreaker] = {}


def get_circuit_breaker(name: str, **kwargs: Any) -> CircuitBreaker:
    """One breaker per collaborator name, created on first use."""
    breaker = _breakers.get(name)
    if breaker is None:
        breaker = CircuitBreaker(name, **kwargs)
        _breakers[name] = breaker
    return breaker


def all_circuit_breakers() -> Dict[str, CircuitBreaker]:
    return dict(_breakers)
