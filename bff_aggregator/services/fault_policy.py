"""
Fault policy controller.

Decides for every upstream attempt whether it may run (circuit breaker),
whether a failed attempt is retried (tenacity), and how long the whole
call may take (latency budget).

Circuit breaker states per service::

    CLOSED --(failure ratio over threshold)--> OPEN
    OPEN --(cooldown elapsed)--> HALF_OPEN
    HALF_OPEN --(trial succeeds)--> CLOSED
    HALF_OPEN --(trial fails)--> OPEN (longer cooldown)
"""

import asyncio
import threading
import time
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Deque, Dict, List, Tuple

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from bff_aggregator.core.exceptions import (
    CallFailure,
    CircuitOpen,
    UpstreamError,
    UpstreamTimeout,
)
from bff_aggregator.schemas.catalog import CircuitPolicy, UpstreamCall
from bff_aggregator.services.catalog_service import CatalogService

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class Permit:
    """Admission ticket for one attempt; settled once its outcome is recorded."""

    service_id: str
    trial: bool = False
    settled: bool = False


class CircuitBreaker:
    """
    Circuit breaker for one upstream service.

    Every read-modify-write of the window and the state happens under
    ``_lock``; no method awaits while holding it.
    """

    def __init__(self, service_id: str, policy: CircuitPolicy, clock: Clock = time.monotonic):
        self.service_id = service_id
        self.policy = policy
        self._clock = clock
        self._lock = threading.Lock()

        self._state = CircuitState.CLOSED
        self._window: Deque[Tuple[float, bool]] = deque()
        self._opened_at = 0.0
        self._cooldown = policy.cooldown_ms / 1000
        self._reopen_count = 0
        self._trial_in_flight = False
        self.last_latency: float | None = None

    @property
    def state(self) -> CircuitState:
        with self._lock:
            self._advance(self._clock())
            return self._state

    @property
    def cooldown(self) -> float:
        """Current cooldown in seconds (grows with successive re-opens)."""
        return self._cooldown

    def acquire(self) -> Permit:
        """
        Admit one attempt.

        Raises:
            CircuitOpen: While OPEN, or while HALF_OPEN with the trial taken
        """
        with self._lock:
            now = self._clock()
            self._advance(now)

            if self._state == CircuitState.OPEN:
                raise CircuitOpen(self.service_id, self._cooldown - (now - self._opened_at))

            if self._state == CircuitState.HALF_OPEN:
                if self._trial_in_flight:
                    raise CircuitOpen(self.service_id, 0.0)
                self._trial_in_flight = True
                return Permit(self.service_id, trial=True)

            return Permit(self.service_id)

    def record(self, permit: Permit, failure: CallFailure | None, latency: float | None = None) -> None:
        """Record the outcome of an admitted attempt."""
        with self._lock:
            permit.settled = True
            if latency is not None:
                self.last_latency = latency

            if failure is None:
                ok = True
            elif failure.counts_against_circuit:
                ok = False
            elif isinstance(failure, UpstreamError):
                # The service answered; a client error says nothing about its health
                ok = True
            else:
                # No verdict (e.g. rejected by admission control)
                if permit.trial:
                    self._trial_in_flight = False
                return

            now = self._clock()

            if permit.trial:
                self._trial_in_flight = False
                if ok:
                    self._close()
                else:
                    self._open(now, reopen=True)
                return

            # Attempts admitted before the circuit left CLOSED carry no weight
            if self._state != CircuitState.CLOSED:
                return

            self._window.append((now, ok))
            self._prune(now)
            if not ok:
                self._evaluate(now)

    def release(self, permit: Permit) -> None:
        """Give back a permit whose attempt ended without an outcome."""
        with self._lock:
            permit.settled = True
            if permit.trial:
                self._trial_in_flight = False

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            now = self._clock()
            self._advance(now)
            self._prune(now)
            remaining = 0.0
            if self._state == CircuitState.OPEN:
                remaining = max(0.0, self._cooldown - (now - self._opened_at))
            return {
                "service_id": self.service_id,
                "state": self._state.value,
                "window_calls": len(self._window),
                "window_failures": sum(1 for _, ok in self._window if not ok),
                "reopen_count": self._reopen_count,
                "cooldown_remaining_ms": round(remaining * 1000, 1),
                "last_latency_ms": (
                    round(self.last_latency * 1000, 1) if self.last_latency is not None else None
                ),
            }

    # ─────────────────────────────────────────────────────────────────────────
    # Internals (lock held)
    # ─────────────────────────────────────────────────────────────────────────

    def _advance(self, now: float) -> None:
        if self._state == CircuitState.OPEN and now - self._opened_at >= self._cooldown:
            self._trial_in_flight = False
            self._transition(CircuitState.HALF_OPEN)

    def _prune(self, now: float) -> None:
        horizon = now - self.policy.window_seconds
        while self._window and self._window[0][0] < horizon:
            self._window.popleft()

    def _evaluate(self, now: float) -> None:
        calls = len(self._window)
        if calls < self.policy.minimum_calls:
            return
        failures = sum(1 for _, ok in self._window if not ok)
        if failures / calls > self.policy.failure_ratio_threshold:
            self._open(now, reopen=False)

    def _open(self, now: float, reopen: bool) -> None:
        if reopen:
            self._reopen_count += 1
            self._cooldown = min(
                self.policy.cooldown_ms * self.policy.cooldown_multiplier ** self._reopen_count,
                self.policy.max_cooldown_ms,
            ) / 1000
        else:
            self._reopen_count = 0
            self._cooldown = self.policy.cooldown_ms / 1000
        self._opened_at = now
        self._window.clear()
        self._transition(CircuitState.OPEN)

    def _close(self) -> None:
        self._window.clear()
        self._reopen_count = 0
        self._cooldown = self.policy.cooldown_ms / 1000
        self._transition(CircuitState.CLOSED)

    def _transition(self, new_state: CircuitState) -> None:
        old_state, self._state = self._state, new_state
        log = logger.info if new_state == CircuitState.CLOSED else logger.warning
        log(
            "circuit_state_change",
            service=self.service_id,
            from_state=old_state.value,
            to_state=new_state.value,
            cooldown_s=round(self._cooldown, 3),
            reopen_count=self._reopen_count,
        )


class FaultPolicyController:
    """
    Central retry / circuit breaker / timeout policy for upstream calls.

    One breaker per service id, created on first use. The controller is
    shared by all concurrent requests.
    """

    def __init__(
        self,
        catalog: CatalogService,
        default_timeout_ms: int = 2000,
        clock: Clock = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.catalog = catalog
        self.default_timeout_ms = default_timeout_ms
        self._clock = clock
        self._sleep = sleep
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._registry_lock = threading.Lock()

    def breaker(self, service_id: str) -> CircuitBreaker:
        with self._registry_lock:
            breaker = self._breakers.get(service_id)
            if breaker is None:
                policy = self.catalog.get_service(service_id).circuit
                breaker = CircuitBreaker(service_id, policy, clock=self._clock)
                self._breakers[service_id] = breaker
            return breaker

    def snapshots(self) -> List[Dict[str, Any]]:
        return [self.breaker(service.id).snapshot() for service in self.catalog.services]

    # ─────────────────────────────────────────────────────────────────────────
    # Budgets
    # ─────────────────────────────────────────────────────────────────────────

    def attempt_timeout(self, call: UpstreamCall) -> float:
        """Per-attempt timeout in seconds."""
        return (call.timeout_ms or self.default_timeout_ms) / 1000

    def max_retries(self, call: UpstreamCall) -> int:
        if not call.is_idempotent:
            return 0
        return self.catalog.get_retry_policy(call.retry_policy).max_retries

    def call_budget(self, call: UpstreamCall, remaining: float) -> float:
        """Seconds the call may take including retries, capped by the request budget."""
        return min(self.attempt_timeout(call) * (1 + self.max_retries(call)), remaining)

    # ─────────────────────────────────────────────────────────────────────────
    # Execution
    # ─────────────────────────────────────────────────────────────────────────

    def record_outcome(self, permit: Permit, latency: float | None, failure: CallFailure | None = None) -> None:
        """Outcome sample emitted by the upstream pool after every attempt."""
        self.breaker(permit.service_id).record(permit, failure, latency)

    async def execute(
        self,
        call: UpstreamCall,
        attempt: Callable[[Permit], Awaitable[Any]],
        budget: float,
    ) -> Any:
        """
        Run ``attempt`` under the call's circuit, retry and budget rules.

        Args:
            call: The upstream call being executed
            attempt: Performs one attempt with the given permit and reports
                its outcome through ``record_outcome``
            budget: Seconds available for all attempts together

        Returns:
            Whatever the successful attempt returned

        Raises:
            CallFailure: The last attempt's failure, ``CircuitOpen`` when
                short-circuited, or ``UpstreamTimeout`` when the budget ran out
        """
        if budget <= 0:
            raise UpstreamTimeout(call.service, f"no latency budget left for '{call.id}'")

        policy = self.catalog.get_retry_policy(call.retry_policy)
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries(call) + 1),
            wait=wait_exponential(
                multiplier=policy.backoff_initial_ms / 1000,
                max=policy.backoff_max_ms / 1000,
            )
            + wait_random(0, policy.jitter_ms / 1000),
            retry=retry_if_exception(self._is_retryable),
            before_sleep=self._log_retry(call),
            sleep=self._sleep,
            reraise=True,
        )

        try:
            return await asyncio.wait_for(retrying(self._guarded, call.service, attempt), timeout=budget)
        except asyncio.TimeoutError:
            raise UpstreamTimeout(
                call.service,
                f"call '{call.id}' exhausted its {budget * 1000:.0f}ms budget",
            )

    async def _guarded(self, service_id: str, attempt: Callable[[Permit], Awaitable[Any]]) -> Any:
        breaker = self.breaker(service_id)
        permit = breaker.acquire()
        try:
            return await attempt(permit)
        finally:
            if not permit.settled:
                breaker.release(permit)

    @staticmethod
    def _is_retryable(exc: BaseException) -> bool:
        # Idempotency is already reflected in the attempt count
        return isinstance(exc, CallFailure) and exc.transient

    @staticmethod
    def _log_retry(call: UpstreamCall) -> Callable[[RetryCallState], None]:
        def log(retry_state: RetryCallState) -> None:
            failure = retry_state.outcome.exception() if retry_state.outcome else None
            logger.warning(
                "upstream_retry",
                call=call.id,
                service=call.service,
                attempt=retry_state.attempt_number,
                failure=getattr(failure, "kind", type(failure).__name__),
                sleep_s=round(retry_state.next_action.sleep, 4) if retry_state.next_action else None,
            )
        return log
