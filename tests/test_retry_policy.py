import pytest

from audit_runner.errors import ApiError
from audit_runner.retry import RetryPolicy
from audit_runner.settings import RunnerSettings
from audit_runner.timeouts import Deadline, DeadlineExceeded


def _rate_limited() -> ApiError:
    return ApiError(
        code="LLM_RATE_LIMITED",
        message="LLM rate limit exceeded",
        error_class="transient",
        retryable=True,
        http_status=429,
    )


def test_backoff_is_linear_and_capped():
    policy = RetryPolicy(max_retries=5, backoff_base_s=2.0, backoff_max_s=5.0)
    assert [policy.backoff_s(n) for n in (1, 2, 3)] == [2.0, 4.0, 5.0]
    assert policy.max_attempts == 6


def test_retries_transient_errors_then_succeeds():
    calls = []
    waits = []

    def _fn():
        calls.append(1)
        if len(calls) < 3:
            raise _rate_limited()
        return "ok"

    result = RetryPolicy(max_retries=2).run(_fn, sleep=waits.append)

    assert result == "ok"
    assert len(calls) == 3
    assert waits == [2.0, 4.0]


def test_gives_up_after_max_attempts():
    calls = []

    def _fn():
        calls.append(1)
        raise _rate_limited()

    with pytest.raises(ApiError) as exc_info:
        RetryPolicy(max_retries=2).run(_fn, sleep=lambda _: None)

    assert exc_info.value.code == "LLM_RATE_LIMITED"
    assert len(calls) == 3


def test_permanent_errors_are_not_retried():
    calls = []

    def _fn():
        calls.append(1)
        raise ApiError(
            code="LLM_AUTH_FAILED",
            message="no",
            error_class="configuration",
            retryable=False,
            http_status=502,
        )

    with pytest.raises(ApiError):
        RetryPolicy(max_retries=3).run(_fn, sleep=lambda _: None)
    assert len(calls) == 1


def test_deadline_exceeded_is_never_retried():
    calls = []

    def _fn():
        calls.append(1)
        raise DeadlineExceeded("budget spent")

    with pytest.raises(DeadlineExceeded):
        RetryPolicy(max_retries=3).run(_fn, sleep=lambda _: None)
    assert len(calls) == 1


def test_backoff_that_exceeds_deadline_aborts():
    def _fn():
        raise _rate_limited()

    with pytest.raises(DeadlineExceeded):
        RetryPolicy(max_retries=2, backoff_base_s=10.0).run(_fn, deadline=Deadline(0.05))


def test_from_settings():
    policy = RetryPolicy.from_settings(RunnerSettings(llm_max_retries=4, llm_backoff_base_s=1.5, llm_backoff_max_s=9))
    assert policy == RetryPolicy(max_retries=4, backoff_base_s=1.5, backoff_max_s=9)
