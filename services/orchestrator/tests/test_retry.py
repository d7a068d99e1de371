"""重试组合子测试。"""

import pytest

from comet_orchestrator.infra.retry import retry_async


class _Flaky:
    def __init__(self, failures: int, exc: type[Exception] = ConnectionError) -> None:
        self.failures = failures
        self.exc = exc
        self.calls = 0

    async def __call__(self) -> str:
        self.calls += 1
        if self.calls <= self.failures:
            raise self.exc(f"failure {self.calls}")
        return "ok"


@pytest.mark.asyncio
async def test_retries_until_success_and_runs_reconnect_hook() -> None:
    operation = _Flaky(failures=2)
    reconnects: list[int] = []

    async def reconnect(_exc: BaseException, attempt: int) -> None:
        reconnects.append(attempt)

    result = await retry_async(operation, attempts=3, base_delay=0.001, on_retry=reconnect)

    assert result == "ok"
    assert operation.calls == 3
    assert reconnects == [1, 2]


@pytest.mark.asyncio
async def test_non_retryable_error_raises_immediately() -> None:
    operation = _Flaky(failures=5, exc=ValueError)
    with pytest.raises(ValueError):
        await retry_async(
            operation,
            attempts=3,
            base_delay=0.001,
            should_retry=lambda exc: isinstance(exc, ConnectionError),
        )
    assert operation.calls == 1


@pytest.mark.asyncio
async def test_last_error_is_reraised_when_attempts_exhausted() -> None:
    operation = _Flaky(failures=5)
    with pytest.raises(ConnectionError, match="failure 2"):
        await retry_async(operation, attempts=2, base_delay=0.001)
    assert operation.calls == 2


@pytest.mark.asyncio
async def test_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        await retry_async(_Flaky(failures=0), attempts=0)
