import math
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, Optional, Tuple

import structlog

from newsflow.models.policy import DomainPolicy
from newsflow.services.exceptions import RateLimited
from newsflow.services.fetch_config import ConfigStore, config_reloaded, config_store
from newsflow.utils.deadline import Deadline

logger = structlog.get_logger(__name__)

SWEEP_THRESHOLD = 1024


class _DomainSlot:
    """Token bucket and in-flight counter for one domain."""

    __slots__ = ("condition", "active", "waiters", "tokens", "updated_at", "retired")

    def __init__(self, now: float, tokens: float) -> None:
        self.condition = threading.Condition(threading.Lock())
        self.active = 0
        self.waiters = 0
        self.tokens = tokens
        self.updated_at = now
        self.retired = False


class Permit:
    """One admitted request. Releasing twice is a no-op."""

    def __init__(self, limiter: "DomainRateLimiter", domain: str) -> None:
        self.domain = domain
        self._limiter = limiter
        self._released = False
        self._lock = threading.Lock()

    def release(self) -> None:
        with self._lock:
            if self._released:
                return
            self._released = True
        self._limiter._release(self.domain)

    @property
    def released(self) -> bool:
        return self._released


class DomainRateLimiter:
    """Per-domain token bucket plus concurrency cap.

    Buckets hold at most one second of tokens (never less than one token) and
    refill at the domain's ``requestsPerSecond``. Each domain has its own
    condition variable so waiting on a slow domain never blocks another. Once
    more than ``sweep_threshold`` domains are tracked, idle ones are dropped.
    """

    def __init__(
        self,
        store: Optional[ConfigStore] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sweep_threshold: int = SWEEP_THRESHOLD,
    ) -> None:
        self._store = store or config_store
        self._clock = clock
        self._sweep_threshold = sweep_threshold
        self._slots: dict[str, _DomainSlot] = {}
        self._registry_lock = threading.Lock()
        config_reloaded.connect(self._on_config_reloaded, sender=self._store)

    @staticmethod
    def _capacity(policy: DomainPolicy) -> float:
        return max(float(policy.requestsPerSecond), 1.0)

    def _slot(self, domain: str) -> _DomainSlot:
        slot = self._slots.get(domain)
        if slot is not None:
            return slot
        with self._registry_lock:
            slot = self._slots.get(domain)
            if slot is None:
                if len(self._slots) >= self._sweep_threshold:
                    self._sweep()
                policy = self._store.current().policy_for(domain)
                slot = _DomainSlot(self._clock(), self._capacity(policy))
                self._slots[domain] = slot
        return slot

    def _sweep(self) -> None:
        """Forget domains with nothing in flight, nobody waiting and a full bucket."""
        snapshot = self._store.current()
        now = self._clock()
        for domain, slot in list(self._slots.items()):
            with slot.condition:
                if slot.active or slot.waiters:
                    continue
                policy = snapshot.policy_for(domain)
                self._refill(slot, policy, now)
                if slot.tokens < self._capacity(policy):
                    continue
                slot.retired = True
                del self._slots[domain]
        logger.debug("rate_limiter.swept", remaining=len(self._slots))

    def _locked_slot(self, domain: str) -> _DomainSlot:
        """Return the live slot for ``domain`` with its condition held."""
        while True:
            slot = self._slot(domain)
            slot.condition.acquire()
            if not slot.retired:
                return slot
            slot.condition.release()

    def _refill(self, slot: _DomainSlot, policy: DomainPolicy, now: float) -> None:
        elapsed = max(now - slot.updated_at, 0.0)
        rate = max(float(policy.requestsPerSecond), 0.0)
        slot.tokens = min(self._capacity(policy), slot.tokens + elapsed * rate)
        slot.updated_at = now

    def _evaluate(self, slot: _DomainSlot, policy: DomainPolicy) -> float:
        """Admit in place and return 0.0, or return how long to wait.

        ``math.inf`` means the domain is at its concurrency cap and only a
        release can change that.
        """
        self._refill(slot, policy, self._clock())
        if slot.active >= policy.maxConcurrent:
            return math.inf
        if slot.tokens < 1.0:
            rate = float(policy.requestsPerSecond)
            return (1.0 - slot.tokens) / rate if rate > 0 else math.inf
        slot.tokens -= 1.0
        slot.active += 1
        return 0.0

    def try_admit(self, domain: str) -> Tuple[Optional[Permit], float]:
        """Return ``(permit, 0.0)`` or ``(None, wait_seconds)`` without blocking."""
        key = domain.lower()
        slot = self._locked_slot(key)
        try:
            wait = self._evaluate(slot, self._store.current().policy_for(key))
        finally:
            slot.condition.release()
        if wait == 0.0:
            return Permit(self, key), 0.0
        return None, wait

    def admit(
        self,
        domain: str,
        *,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> Permit:
        """Block until admitted or raise :class:`RateLimited`."""
        key = domain.lower()
        started = self._clock()
        slot = self._locked_slot(key)
        try:
            while True:
                policy = self._store.current().policy_for(key)
                wait = self._evaluate(slot, policy)
                if wait == 0.0:
                    logger.debug(
                        "rate_limiter.admitted",
                        domain=key,
                        active=slot.active,
                        tokens=round(slot.tokens, 3),
                    )
                    return Permit(self, key)

                budget = self._budget(started, timeout, deadline)
                if budget is not None and budget <= 0:
                    logger.info(
                        "rate_limiter.rejected",
                        domain=key,
                        active=slot.active,
                        max_concurrent=policy.maxConcurrent,
                        wait_seconds=None if math.isinf(wait) else round(wait, 3),
                    )
                    raise RateLimited(
                        f"Rate limit admission timed out for {key}",
                        domain=key,
                        retry_after=None if math.isinf(wait) else wait,
                    )
                pause = wait if budget is None else min(wait, budget)
                slot.waiters += 1
                try:
                    slot.condition.wait(None if math.isinf(pause) else pause)
                finally:
                    slot.waiters -= 1
        finally:
            slot.condition.release()

    def _budget(
        self,
        started: float,
        timeout: Optional[float],
        deadline: Optional[Deadline],
    ) -> Optional[float]:
        budgets = []
        if timeout is not None:
            budgets.append(timeout - (self._clock() - started))
        if deadline is not None:
            remaining = deadline.remaining()
            if remaining is not None:
                budgets.append(remaining)
        return min(budgets) if budgets else None

    @contextmanager
    def acquire(
        self,
        domain: str,
        *,
        timeout: Optional[float] = None,
        deadline: Optional[Deadline] = None,
    ) -> Iterator[Permit]:
        permit = self.admit(domain, timeout=timeout, deadline=deadline)
        try:
            yield permit
        finally:
            permit.release()

    def _release(self, domain: str) -> None:
        slot = self._slots.get(domain)
        if slot is None:
            return
        with slot.condition:
            slot.active = max(slot.active - 1, 0)
            slot.condition.notify_all()

    def _on_config_reloaded(self, sender, **kwargs) -> None:
        for slot in list(self._slots.values()):
            with slot.condition:
                slot.condition.notify_all()

    def stats(self) -> dict[str, dict]:
        snapshot = self._store.current()
        result: dict[str, dict] = {}
        for domain, slot in list(self._slots.items()):
            policy = snapshot.policy_for(domain)
            with slot.condition:
                self._refill(slot, policy, self._clock())
                result[domain] = {
                    "activeRequests": slot.active,
                    "tokens": round(slot.tokens, 3),
                    "maxConcurrent": policy.maxConcurrent,
                    "requestsPerSecond": policy.requestsPerSecond,
                    "policyDomain": policy.domain,
                }
        return result


domain_rate_limiter = DomainRateLimiter()
