import threading
import time
import zlib
from dataclasses import dataclass
from typing import Callable, Optional

import structlog

from newsflow.services.exceptions import CircuitOpen
from newsflow.services.fetch_config import ConfigStore, config_store

logger = structlog.get_logger(__name__)

CLOSED = "closed"
OPEN = "open"
HALF_OPEN = "half-open"
LOCK_STRIPES = 64


@dataclass
class CircuitState:
    state: str = CLOSED
    failures: int = 0
    last_failure_at: Optional[float] = None
    opened_at: Optional[float] = None
    open_for: float = 0.0
    backoff: float = 0.0
    consecutive_opens: int = 0
    probe_in_flight: bool = False


@dataclass(frozen=True)
class BreakerTicket:
    """Handed out by :meth:`CircuitBreaker.allow`; pass it back with the outcome."""

    domain: str
    is_probe: bool = False


class CircuitBreaker:
    """Per-domain closed/open/half-open state machine.

    Domains hash onto a fixed set of locks. State objects appear on the first
    recorded failure and are dropped again when the circuit closes. While
    half-open only the probe ticket moves the state.
    """

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store or config_store
        self._clock = clock
        self._locks = tuple(threading.Lock() for _ in range(LOCK_STRIPES))
        self._states: dict[str, CircuitState] = {}

    def _lock_for(self, domain: str) -> threading.Lock:
        return self._locks[zlib.crc32(domain.encode("utf-8")) % LOCK_STRIPES]

    def allow(self, domain: str) -> BreakerTicket:
        key = domain.lower()
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None or state.state == CLOSED:
                return BreakerTicket(key)

            now = self._clock()
            if state.state == OPEN:
                elapsed = now - (state.opened_at or now)
                if elapsed < state.open_for:
                    raise CircuitOpen(
                        f"Circuit open for {key}",
                        domain=key,
                        retry_after=state.open_for - elapsed,
                    )
                state.state = HALF_OPEN
                state.probe_in_flight = False
                logger.info("circuit_breaker.half_open", domain=key)

            if state.probe_in_flight:
                raise CircuitOpen(
                    f"Circuit half-open for {key}; probe already in flight",
                    domain=key,
                )
            state.probe_in_flight = True
            logger.info("circuit_breaker.probe_started", domain=key)
            return BreakerTicket(key, is_probe=True)

    def record_success(self, ticket: BreakerTicket) -> None:
        with self._lock_for(ticket.domain):
            state = self._states.get(ticket.domain)
            if state is None or state.state == OPEN:
                return
            if state.state == HALF_OPEN and not ticket.is_probe:
                return
            previous = state.state
            del self._states[ticket.domain]
            if previous != CLOSED or state.failures:
                logger.info(
                    "circuit_breaker.closed",
                    domain=ticket.domain,
                    previous_state=previous,
                    failures=state.failures,
                )

    def record_failure(self, ticket: BreakerTicket, error: Optional[str] = None) -> None:
        policy = self._store.current().breaker_policy
        with self._lock_for(ticket.domain):
            state = self._states.setdefault(ticket.domain, CircuitState())
            now = self._clock()
            state.last_failure_at = now
            state.failures += 1

            if state.state == HALF_OPEN and ticket.is_probe:
                state.backoff = min(
                    policy.initialBackoffSeconds * (2**state.consecutive_opens),
                    policy.maxBackoffSeconds,
                )
                state.consecutive_opens += 1
                self._open(ticket.domain, state, now, policy.openDurationSeconds + state.backoff)
                return

            if state.state == CLOSED and state.failures >= policy.failThreshold:
                state.consecutive_opens = 1
                state.backoff = 0.0
                self._open(ticket.domain, state, now, policy.openDurationSeconds)
                return

            logger.debug(
                "circuit_breaker.failure_recorded",
                domain=ticket.domain,
                failures=state.failures,
                threshold=policy.failThreshold,
                error=error,
            )

    def record_neutral(self, ticket: BreakerTicket) -> None:
        """Release a probe whose outcome says nothing about liveness."""
        if not ticket.is_probe:
            return
        with self._lock_for(ticket.domain):
            state = self._states.get(ticket.domain)
            if state is not None and state.state == HALF_OPEN:
                state.probe_in_flight = False

    def _open(self, domain: str, state: CircuitState, now: float, duration: float) -> None:
        state.state = OPEN
        state.opened_at = now
        state.open_for = duration
        state.probe_in_flight = False
        logger.warning(
            "circuit_breaker.opened",
            domain=domain,
            failures=state.failures,
            open_seconds=duration,
            backoff_seconds=state.backoff,
        )

    def state_of(self, domain: str) -> str:
        key = domain.lower()
        with self._lock_for(key):
            state = self._states.get(key)
            if state is None:
                return CLOSED
            if state.state == OPEN and self._clock() - (state.opened_at or 0) >= state.open_for:
                return HALF_OPEN
            return state.state

    def snapshot(self) -> dict[str, dict]:
        now = self._clock()
        result: dict[str, dict] = {}
        for domain in list(self._states):
            with self._lock_for(domain):
                state = self._states.get(domain)
                if state is None:
                    continue
                retry_after = None
                if state.state == OPEN and state.opened_at is not None:
                    retry_after = max(state.open_for - (now - state.opened_at), 0.0)
                result[domain] = {
                    "state": state.state,
                    "failures": state.failures,
                    "backoffSeconds": state.backoff,
                    "consecutiveOpens": state.consecutive_opens,
                    "retryAfterSeconds": retry_after,
                    "probeInFlight": state.probe_in_flight,
                }
        return result

    def reset(self, domain: str) -> bool:
        key = domain.lower()
        with self._lock_for(key):
            existed = self._states.pop(key, None) is not None
        if existed:
            logger.info("circuit_breaker.reset", domain=key)
        return existed

    def reset_all(self) -> int:
        domains = list(self._states)
        return sum(1 for domain in domains if self.reset(domain))


circuit_breaker = CircuitBreaker()
