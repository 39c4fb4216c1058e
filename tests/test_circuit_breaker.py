import pytest

from newsflow.models.policy import CircuitBreakerPolicy
from newsflow.services.circuit_breaker import CLOSED, HALF_OPEN, OPEN, CircuitBreaker
from newsflow.services.exceptions import CircuitOpen


@pytest.fixture()
def breaker(config_store, clock):
    config_store.set_breaker_policy(
        CircuitBreakerPolicy(
            failThreshold=3,
            openDurationSeconds=60.0,
            initialBackoffSeconds=5.0,
            maxBackoffSeconds=20.0,
        )
    )
    return CircuitBreaker(config_store, clock=clock)


def _fail(breaker, domain, times):
    for _ in range(times):
        breaker.record_failure(breaker.allow(domain), "timeout")


def test_opens_after_exactly_fail_threshold_failures(breaker):
    _fail(breaker, "slow.example", 2)
    assert breaker.state_of("slow.example") == CLOSED

    _fail(breaker, "slow.example", 1)
    assert breaker.state_of("slow.example") == OPEN

    with pytest.raises(CircuitOpen) as excinfo:
        breaker.allow("slow.example")
    assert excinfo.value.retry_after == pytest.approx(60.0)


def test_success_resets_failure_count(breaker):
    _fail(breaker, "slow.example", 2)
    breaker.record_success(breaker.allow("slow.example"))
    _fail(breaker, "slow.example", 2)

    assert breaker.state_of("slow.example") == CLOSED


def test_exactly_one_probe_after_open_window(breaker, clock):
    _fail(breaker, "slow.example", 3)
    clock.advance(60.0)

    assert breaker.state_of("slow.example") == HALF_OPEN
    probe = breaker.allow("slow.example")
    assert probe.is_probe

    with pytest.raises(CircuitOpen):
        breaker.allow("slow.example")

    breaker.record_success(probe)
    assert breaker.state_of("slow.example") == CLOSED
    assert not breaker.allow("slow.example").is_probe


def test_failed_probe_reopens_with_growing_backoff(breaker, clock):
    _fail(breaker, "slow.example", 3)

    clock.advance(60.0)
    breaker.record_failure(breaker.allow("slow.example"))
    first = breaker.snapshot()["slow.example"]
    assert first["state"] == OPEN
    assert first["backoffSeconds"] == pytest.approx(10.0)
    assert first["retryAfterSeconds"] == pytest.approx(70.0)

    clock.advance(70.0)
    breaker.record_failure(breaker.allow("slow.example"))
    second = breaker.snapshot()["slow.example"]
    assert second["backoffSeconds"] == pytest.approx(20.0)

    clock.advance(80.0)
    breaker.record_failure(breaker.allow("slow.example"))
    assert breaker.snapshot()["slow.example"]["backoffSeconds"] == pytest.approx(20.0)


def test_neutral_outcome_releases_probe(breaker, clock):
    _fail(breaker, "slow.example", 3)
    clock.advance(60.0)

    probe = breaker.allow("slow.example")
    breaker.record_neutral(probe)

    assert breaker.allow("slow.example").is_probe


def test_domains_are_independent(breaker):
    _fail(breaker, "slow.example", 3)

    ticket = breaker.allow("fast.example")

    assert ticket.domain == "fast.example"
    assert breaker.state_of("fast.example") == CLOSED


def test_reset_clears_state(breaker):
    _fail(breaker, "slow.example", 3)
    _fail(breaker, "other.example", 3)

    assert breaker.reset("slow.example") is True
    assert breaker.reset("slow.example") is False
    assert breaker.state_of("slow.example") == CLOSED
    assert breaker.reset_all() == 1
    assert breaker.snapshot() == {}


def test_only_the_probe_decides_a_half_open_circuit(breaker, clock):
    straggler = breaker.allow("slow.example")
    _fail(breaker, "slow.example", 3)
    clock.advance(60.0)
    probe = breaker.allow("slow.example")

    breaker.record_failure(straggler, "late timeout")
    assert breaker.snapshot()["slow.example"]["state"] == HALF_OPEN

    breaker.record_success(straggler)
    assert breaker.snapshot()["slow.example"]["probeInFlight"] is True

    breaker.record_success(probe)
    assert breaker.state_of("slow.example") == CLOSED


def test_straggler_success_does_not_close_after_probe_failure(breaker, clock):
    straggler = breaker.allow("slow.example")
    _fail(breaker, "slow.example", 3)
    clock.advance(60.0)
    breaker.record_failure(breaker.allow("slow.example"), "still down")

    breaker.record_success(straggler)

    assert breaker.state_of("slow.example") == OPEN


def test_closed_circuits_are_forgotten(breaker):
    _fail(breaker, "slow.example", 2)
    assert "slow.example" in breaker.snapshot()

    breaker.record_success(breaker.allow("slow.example"))

    assert breaker.snapshot() == {}
