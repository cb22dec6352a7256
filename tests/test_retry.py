"""Tests for the provider retry policy."""

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from resource_client.errors import ProviderCallError
from resource_client.retry import RetryPolicy, call_with_retry, is_retryable


def _client_error(code: str) -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, "DescribeInstances")


class FlakyCall:
    """Fails with the queued errors, then returns ``result``."""

    def __init__(self, *errors, result="ok"):
        self.errors = list(errors)
        self.result = result
        self.calls = 0

    async def __call__(self):
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def fake_sleep(sleeps):
    async def _sleep(seconds):
        sleeps.append(seconds)

    return _sleep


class TestIsRetryable:
    @pytest.mark.parametrize(
        "code", ["RequestLimitExceeded", "Throttling", "ServiceUnavailable", "InternalError"]
    )
    def test_retryable_codes(self, code):
        assert is_retryable(_client_error(code))

    def test_auth_failure_is_not_retryable(self):
        assert not is_retryable(_client_error("UnauthorizedOperation"))
        assert not is_retryable(_client_error("InvalidInstanceID.NotFound"))

    def test_network_errors_are_retryable(self):
        assert is_retryable(EndpointConnectionError(endpoint_url="https://ec2.us-east-1.amazonaws.com"))
        assert is_retryable(ConnectionResetError())
        assert is_retryable(OSError("read ECONNRESET"))

    def test_plain_errors_are_not_retryable(self):
        assert not is_retryable(ValueError("bad input"))


class TestRetryPolicy:
    def test_delay_doubles_and_caps(self):
        policy = RetryPolicy(base_delay=1.0, max_delay=10.0)
        assert [policy.delay_for(i) for i in range(5)] == [1.0, 2.0, 4.0, 8.0, 10.0]


class TestCallWithRetry:
    @pytest.mark.asyncio
    async def test_succeeds_on_third_attempt(self, fake_sleep, sleeps):
        call = FlakyCall(_client_error("Throttling"), _client_error("RequestLimitExceeded"))

        result = await call_with_retry(call, "describeInstances", sleep=fake_sleep)

        assert result == "ok"
        assert call.calls == 3
        assert sleeps == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_non_retryable_fails_after_one_attempt(self, fake_sleep, sleeps):
        error = _client_error("UnauthorizedOperation")
        call = FlakyCall(error)

        with pytest.raises(ProviderCallError) as exc_info:
            await call_with_retry(call, "startInstance", sleep=fake_sleep)

        assert call.calls == 1
        assert sleeps == []
        assert exc_info.value.attempts == 1
        assert exc_info.value.cause is error
        assert exc_info.value.__cause__ is error

    @pytest.mark.asyncio
    async def test_exhaustion_names_operation_and_attempts(self, fake_sleep, sleeps):
        call = FlakyCall(*[_client_error("Throttling") for _ in range(5)])

        with pytest.raises(ProviderCallError) as exc_info:
            await call_with_retry(call, "stopInstance", sleep=fake_sleep)

        assert call.calls == 3
        assert sleeps == [1.0, 2.0]
        assert exc_info.value.operation == "stopInstance"
        assert exc_info.value.attempts == 3
        assert "stopInstance failed after 3 attempt(s)" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_custom_policy(self, fake_sleep, sleeps):
        call = FlakyCall(ConnectionResetError(), ConnectionResetError(), ConnectionResetError())
        policy = RetryPolicy(max_attempts=5, base_delay=0.5, max_delay=1.0)

        result = await call_with_retry(call, "launchInstance", policy, sleep=fake_sleep)

        assert result == "ok"
        assert sleeps == [0.5, 1.0, 1.0]
