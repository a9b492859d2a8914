"""Tests for retry and error handling utilities."""

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from converge.utils.errors import (
    ActionTimedOut,
    StateError,
    StoreUnavailable,
    VersionConflict,
    error_handler,
)
from converge.utils.retry import RetryStrategy, with_retry


def client_error(code, status=400):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        "PutObject",
    )


class Flaky:
    """Fails a number of times before succeeding."""

    def __init__(self, failures, error, retry_strategy=None):
        self.failures = failures
        self.error = error
        self.calls = 0
        self.retry_strategy = retry_strategy

    @with_retry(max_retries=3)
    def run(self):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error
        return "done"


class TestRetryStrategy:
    """Test exponential backoff."""

    def test_retries_transient_errors(self):
        """Test retryable errors are retried until success."""
        delays = []
        strategy = RetryStrategy(max_retries=3, base_delay=1.0, jitter=False, sleep=delays.append)
        flaky = Flaky(2, StoreUnavailable("down"), retry_strategy=strategy)

        assert flaky.run() == "done"
        assert flaky.calls == 3
        assert delays == [1.0, 2.0]

    def test_gives_up_after_max_retries(self):
        """Test the last error is raised once retries run out."""
        strategy = RetryStrategy(max_retries=2, sleep=lambda s: None)
        flaky = Flaky(5, ConnectionError("reset"), retry_strategy=strategy)

        with pytest.raises(ConnectionError):
            flaky.run()
        assert flaky.calls == 3

    def test_conflicts_are_not_retried(self):
        """Test version conflicts surface immediately."""
        strategy = RetryStrategy(sleep=lambda s: None)
        flaky = Flaky(1, VersionConflict("lab-default", 1, 2), retry_strategy=strategy)

        with pytest.raises(VersionConflict):
            flaky.run()
        assert flaky.calls == 1

    def test_delay_is_capped(self):
        """Test delays grow exponentially up to the maximum."""
        strategy = RetryStrategy(base_delay=1.0, max_delay=5.0, jitter=False)

        assert [strategy.get_delay(n) for n in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_adds_at_most_ten_percent(self):
        """Test jitter stays within bounds."""
        strategy = RetryStrategy(base_delay=2.0, jitter=True)

        for _ in range(20):
            assert 2.0 <= strategy.get_delay(0) <= 2.2


class TestErrorHandler:
    """Test mapping of backend exceptions."""

    def test_throttling_is_retryable(self):
        """Test throttling codes map to StoreUnavailable."""
        error = error_handler.handle_exception(client_error("SlowDown", 503))

        assert isinstance(error, StoreUnavailable)
        assert error.retryable

    def test_server_errors_are_retryable(self):
        """Test 5xx responses map to StoreUnavailable."""
        assert isinstance(error_handler.handle_exception(client_error("Whatever", 500)), StoreUnavailable)

    def test_access_denied_is_not_retryable(self):
        """Test permission errors are plain state errors."""
        error = error_handler.handle_exception(client_error("AccessDenied", 403))

        assert isinstance(error, StateError)
        assert not error.retryable
        assert "AccessDenied" in error.message

    def test_connection_errors(self):
        """Test network failures map to StoreUnavailable."""
        error = error_handler.handle_exception(EndpointConnectionError(endpoint_url="https://s3"))

        assert isinstance(error, StoreUnavailable)

    def test_user_message_includes_suggestions(self):
        """Test the user message lists suggestions."""
        message = VersionConflict("lab-default", 1, 2).to_user_message()

        assert "expected serial 1, found 2" in message
        assert "Suggested fixes" in message

    def test_timeout_message_keeps_fractions(self):
        """Test sub-second timeouts are not rounded away."""
        assert "timed out after 0.3s" in ActionTimedOut("bucket.logs", 0.3, "create").message
        assert "timed out after 600s" in ActionTimedOut("bucket.logs", 600, "create").message
