"""
Unit Tests for Circuit Breaker

Tests cover:
- State transitions (CLOSED → OPEN → HALF_OPEN → CLOSED)
- Failure threshold behavior
- Timeout and recovery
- Trial send limiting while HALF_OPEN
- Thread safety
"""

import pytest
import threading

from practiceflow.core.circuit_breaker import CircuitBreaker, CircuitBreakerState


class FakeTime:
    """Controllable seconds clock"""

    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def breaker(fake_time):
    return CircuitBreaker(name="test", failure_threshold=3, timeout=60, time_source=fake_time)


# ============================================================================
# BASIC FUNCTIONALITY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_initial_state(breaker):
    """Test circuit breaker starts in CLOSED state"""
    assert breaker.state == CircuitBreakerState.CLOSED
    assert not breaker.is_open()


@pytest.mark.unit
def test_circuit_breaker_opens_after_threshold(breaker):
    """Test circuit opens after reaching failure threshold"""
    breaker.record_failure()
    breaker.record_failure()
    assert not breaker.is_open()

    breaker.record_failure()

    assert breaker.is_open()
    assert breaker.state == CircuitBreakerState.OPEN


@pytest.mark.unit
def test_circuit_breaker_success_resets_failures(breaker):
    """Test success resets failure counter"""
    breaker.record_failure()
    breaker.record_failure()
    breaker.record_success()

    breaker.record_failure()
    breaker.record_failure()

    assert not breaker.is_open()
    assert breaker.get_status()["failure_count"] == 2


# ============================================================================
# RECOVERY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_half_open_after_timeout(breaker, fake_time):
    """Test circuit allows a single trial send once the timeout has passed"""
    for _ in range(3):
        breaker.record_failure()

    fake_time.now += 59
    assert breaker.is_open()

    fake_time.now += 1
    assert not breaker.is_open()  # the trial send
    assert breaker.state == CircuitBreakerState.HALF_OPEN
    assert breaker.is_open()  # no second trial send


@pytest.mark.unit
def test_circuit_breaker_trial_success_closes(breaker, fake_time):
    for _ in range(3):
        breaker.record_failure()
    fake_time.now += 60
    breaker.is_open()

    breaker.record_success()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert not breaker.is_open()


@pytest.mark.unit
def test_circuit_breaker_trial_failure_reopens(breaker, fake_time):
    for _ in range(3):
        breaker.record_failure()
    fake_time.now += 60
    breaker.is_open()

    breaker.record_failure()

    assert breaker.state == CircuitBreakerState.OPEN
    fake_time.now += 30
    assert breaker.is_open()


@pytest.mark.unit
def test_circuit_breaker_reset(breaker):
    for _ in range(3):
        breaker.record_failure()

    breaker.reset()

    assert breaker.state == CircuitBreakerState.CLOSED
    assert breaker.get_status() == {
        "name": "test",
        "state": "closed",
        "failure_count": 0,
        "failure_threshold": 3,
        "timeout_seconds": 60,
    }


# ============================================================================
# THREAD SAFETY TESTS
# ============================================================================

@pytest.mark.unit
def test_circuit_breaker_concurrent_failures():
    """Test failures recorded from many threads are all counted"""
    breaker = CircuitBreaker(failure_threshold=1000, timeout=60)

    def fail_many():
        for _ in range(100):
            breaker.record_failure()

    threads = [threading.Thread(target=fail_many) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert breaker.get_status()["failure_count"] == 500
    assert not breaker.is_open()
