import asyncio
import warnings

import pytest

from bff_aggregator.core.exceptions import (
    CircuitOpen,
    ConnectionFailure,
    Overloaded,
    UpstreamError,
    UpstreamTimeout,
)
from bff_aggregator.schemas.catalog import CircuitPolicy, UpstreamCall
from bff_aggregator.services.catalog_service import CatalogService
from bff_aggregator.services.fault_policy import (
    CircuitBreaker,
    CircuitState,
    FaultPolicyController,
)
from tests.support import make_catalog, no_sleep

POLICY = CircuitPolicy(
    failure_ratio_threshold=0.5,
    window_seconds=10,
    minimum_calls=4,
    cooldown_ms=1000,
    cooldown_multiplier=2.0,
    max_cooldown_ms=3000,
)


def fail(breaker, failure=None):
    permit = breaker.acquire()
    breaker.record(permit, failure or UpstreamTimeout(breaker.service_id))


def succeed(breaker):
    permit = breaker.acquire()
    breaker.record(permit, None, latency=0.01)


def trip(breaker, clock):
    for _ in range(POLICY.minimum_calls):
        fail(breaker)
    assert breaker.state == CircuitState.OPEN


class TestCircuitBreaker:
    def test_opens_when_failure_ratio_exceeds_threshold(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        succeed(breaker)
        fail(breaker)
        fail(breaker)
        assert breaker.state == CircuitState.CLOSED  # below minimum_calls

        fail(breaker)
        assert breaker.state == CircuitState.OPEN
        with pytest.raises(CircuitOpen):
            breaker.acquire()

    def test_ratio_at_threshold_stays_closed(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        for _ in range(2):
            succeed(breaker)
            fail(breaker)

        assert breaker.state == CircuitState.CLOSED

    def test_failures_outside_window_are_forgotten(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        for _ in range(3):
            fail(breaker)
        clock.advance(POLICY.window_seconds + 1)
        fail(breaker)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["window_calls"] == 1

    def test_client_errors_count_as_success(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        for _ in range(6):
            fail(breaker, UpstreamError("users", 404))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["window_failures"] == 0

    def test_server_errors_count_as_failure(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        for _ in range(4):
            fail(breaker, UpstreamError("users", 503))

        assert breaker.state == CircuitState.OPEN

    def test_overloaded_is_neutral(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)

        for _ in range(6):
            fail(breaker, Overloaded("users", 1))

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["window_calls"] == 0

    def test_single_trial_after_cooldown(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)
        trip(breaker, clock)

        clock.advance(0.5)
        assert breaker.state == CircuitState.OPEN

        clock.advance(0.5)
        assert breaker.state == CircuitState.HALF_OPEN

        trial = breaker.acquire()
        assert trial.trial
        with pytest.raises(CircuitOpen):
            breaker.acquire()

        breaker.release(trial)
        assert breaker.acquire().trial

    def test_successful_trial_closes(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)
        trip(breaker, clock)
        clock.advance(1)

        succeed(breaker)

        assert breaker.state == CircuitState.CLOSED
        assert breaker.snapshot()["reopen_count"] == 0
        breaker.acquire()

    def test_failed_trial_reopens_with_backoff(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)
        trip(breaker, clock)
        assert breaker.cooldown == 1.0

        clock.advance(1)
        fail(breaker)
        assert breaker.state == CircuitState.OPEN
        assert breaker.cooldown == 2.0

        clock.advance(1.5)
        assert breaker.state == CircuitState.OPEN

        clock.advance(0.5)
        fail(breaker)
        assert breaker.cooldown == 3.0  # capped at max_cooldown_ms
        assert breaker.snapshot()["reopen_count"] == 2

    def test_stale_outcomes_are_ignored_while_open(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)
        stale = breaker.acquire()
        trip(breaker, clock)

        breaker.record(stale, None)

        assert breaker.state == CircuitState.OPEN

    def test_snapshot(self, clock):
        breaker = CircuitBreaker("users", POLICY, clock=clock)
        trip(breaker, clock)
        clock.advance(0.25)

        snapshot = breaker.snapshot()

        assert snapshot["service_id"] == "users"
        assert snapshot["state"] == "open"
        assert snapshot["cooldown_remaining_ms"] == 750.0


def make_call(**extra):
    return UpstreamCall.model_validate({"id": "c", "service": "users", "operation": "GET /users", **extra})


@pytest.fixture
def controller(clock):
    return FaultPolicyController(CatalogService(make_catalog()), default_timeout_ms=100, clock=clock, sleep=no_sleep)


class Attempts:
    """Scripted attempts: each entry is an exception to raise or a value to return."""

    def __init__(self, controller, script):
        self.controller = controller
        self.script = list(script)
        self.count = 0

    async def __call__(self, permit):
        self.count += 1
        outcome = self.script.pop(0)
        if isinstance(outcome, Exception):
            self.controller.record_outcome(permit, 0.001, outcome)
            raise outcome
        self.controller.record_outcome(permit, 0.001)
        return outcome


class TestFaultPolicyController:
    def test_budgets(self, controller):
        get = make_call(timeout_ms=200)
        post = make_call(operation="POST /users")

        assert controller.attempt_timeout(get) == 0.2
        assert controller.attempt_timeout(post) == 0.1
        assert controller.max_retries(get) == 2
        assert controller.max_retries(post) == 0
        assert controller.call_budget(get, remaining=5) == pytest.approx(0.6)
        assert controller.call_budget(get, remaining=0.3) == 0.3

    @pytest.mark.asyncio
    async def test_transient_failures_are_retried(self, controller):
        attempts = Attempts(controller, [UpstreamTimeout("users"), ConnectionFailure("users"), {"ok": True}])

        result = await controller.execute(make_call(), attempts, budget=5)

        assert result == {"ok": True}
        assert attempts.count == 3

    @pytest.mark.asyncio
    async def test_backoff_doubles_from_initial_delay(self, clock):
        delays = []

        async def record(seconds):
            delays.append(seconds)

        controller = FaultPolicyController(
            CatalogService(make_catalog()), default_timeout_ms=100, clock=clock, sleep=record
        )
        attempts = Attempts(controller, [UpstreamTimeout("users"), UpstreamTimeout("users"), {"ok": True}])

        with warnings.catch_warnings():
            warnings.simplefilter("error", DeprecationWarning)
            await controller.execute(make_call(), attempts, budget=5)

        assert delays == [pytest.approx(0.001), pytest.approx(0.002)]

    @pytest.mark.asyncio
    async def test_retries_are_exhausted(self, controller):
        attempts = Attempts(controller, [UpstreamTimeout("users")] * 3)

        with pytest.raises(UpstreamTimeout):
            await controller.execute(make_call(), attempts, budget=5)
        assert attempts.count == 3

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [404, 500])
    async def test_upstream_errors_are_not_retried(self, controller, status_code):
        attempts = Attempts(controller, [UpstreamError("users", status_code), {"ok": True}])

        with pytest.raises(UpstreamError):
            await controller.execute(make_call(), attempts, budget=5)
        assert attempts.count == 1

    @pytest.mark.asyncio
    async def test_non_idempotent_calls_are_not_retried(self, controller):
        attempts = Attempts(controller, [UpstreamTimeout("users"), {"ok": True}])

        with pytest.raises(UpstreamTimeout):
            await controller.execute(make_call(operation="POST /users"), attempts, budget=5)
        assert attempts.count == 1

    @pytest.mark.asyncio
    async def test_open_circuit_fails_fast(self, controller):
        breaker = controller.breaker("users")
        for _ in range(breaker.policy.minimum_calls):
            fail(breaker)
        attempts = Attempts(controller, [{"ok": True}])

        with pytest.raises(CircuitOpen):
            await controller.execute(make_call(), attempts, budget=5)
        assert attempts.count == 0

    @pytest.mark.asyncio
    async def test_exhausted_budget_raises_timeout(self, controller):
        attempts = Attempts(controller, [{"ok": True}])

        with pytest.raises(UpstreamTimeout, match="no latency budget"):
            await controller.execute(make_call(), attempts, budget=0)
        assert attempts.count == 0

    @pytest.mark.asyncio
    async def test_budget_bounds_slow_attempts(self, controller):
        async def slow(permit):
            await asyncio.sleep(5)

        with pytest.raises(UpstreamTimeout, match="budget"):
            await controller.execute(make_call(), slow, budget=0.05)

    @pytest.mark.asyncio
    async def test_unsettled_trial_permit_is_released(self, controller, clock):
        breaker = controller.breaker("users")
        for _ in range(breaker.policy.minimum_calls):
            fail(breaker)
        clock.advance(breaker.cooldown)

        async def crash(permit):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await controller.execute(make_call(), crash, budget=5)

        assert breaker.state == CircuitState.HALF_OPEN
        assert breaker.acquire().trial

    def test_breakers_are_created_per_service(self, controller):
        assert controller.breaker("users") is controller.breaker("users")
        assert [s["service_id"] for s in controller.snapshots()] == ["users", "orders", "recs"]
