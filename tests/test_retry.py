"""Tests for the exponential backoff policy."""

from tastegraph.services.retry import RetryPolicy


class TestRetryPolicy:
    """Backoff math and stop conditions."""

    def test_delays_grow_exponentially(self):
        """Delays double from the initial delay until retries run out."""
        state = RetryPolicy(max_retries=3, initial_delay=1.0, multiplier=2.0, max_delay=10.0).start()
        while state.record_failure(retryable=True):
            pass
        assert state.delays == [1.0, 2.0, 4.0]
        assert state.exhausted
        assert state.attempts_made == 4

    def test_delay_is_capped(self):
        """No single delay exceeds max_delay."""
        policy = RetryPolicy(max_retries=6, initial_delay=1.0, multiplier=2.0, max_delay=10.0)
        assert [policy.delay_for(i) for i in range(6)] == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0]

    def test_non_retryable_failure_stops_immediately(self):
        """A non-retryable failure exhausts the state on the first attempt."""
        state = RetryPolicy(max_retries=3).start()
        error = RuntimeError("bad request")
        assert state.record_failure(retryable=False, error=error) is False
        assert state.exhausted
        assert state.last_error is error
        assert state.delays == []

    def test_zero_retries_means_single_attempt(self):
        state = RetryPolicy(max_retries=0).start()
        assert state.record_failure(retryable=True) is False
        assert state.policy.max_attempts == 1
