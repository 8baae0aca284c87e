"""Tests for bounded retry with exponential backoff."""

from unittest.mock import AsyncMock, patch

import httpx
import pytest

from tonelearn.core.exceptions import ValidationError
from tonelearn.core.resilience import compute_delay, retry, with_retry


@pytest.fixture
def mock_sleep():
    with patch("tonelearn.core.resilience.asyncio.sleep", new_callable=AsyncMock) as sleep:
        yield sleep


class TestComputeDelay:
    """Delays grow geometrically from the initial delay."""

    def test_sequence(self) -> None:
        assert [compute_delay(n, 1.0, 2.0) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]


class TestWithRetry:
    """with_retry retries, backs off and re-raises the last error."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self, mock_sleep: AsyncMock) -> None:
        operation = AsyncMock(return_value="ok")
        assert await with_retry(operation, max_attempts=3) == "ok"
        operation.assert_awaited_once()
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_succeeds_after_transient_failures(self, mock_sleep: AsyncMock) -> None:
        operation = AsyncMock(side_effect=[RuntimeError("a"), RuntimeError("b"), "ok"])
        result = await with_retry(
            operation, max_attempts=3, initial_delay=1.0, backoff_factor=2.0
        )
        assert result == "ok"
        assert [c.args[0] for c in mock_sleep.await_args_list] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_reraises_original_error(self, mock_sleep: AsyncMock) -> None:
        error = RuntimeError("still down")
        operation = AsyncMock(side_effect=error)
        with pytest.raises(RuntimeError) as exc_info:
            await with_retry(operation, max_attempts=3, initial_delay=0.1)
        assert exc_info.value is error
        assert operation.await_count == 3
        assert mock_sleep.await_count == 2

    @pytest.mark.asyncio
    async def test_observer_called_before_each_retry(self, mock_sleep: AsyncMock) -> None:
        seen: list[tuple[str, int]] = []
        operation = AsyncMock(side_effect=[ValueError("x"), ValueError("y"), "ok"])
        await with_retry(
            operation,
            max_attempts=3,
            initial_delay=0.0,
            on_retry=lambda exc, attempt: seen.append((str(exc), attempt)),
        )
        assert seen == [("x", 1), ("y", 2)]

    @pytest.mark.asyncio
    async def test_non_matching_errors_propagate_immediately(self, mock_sleep: AsyncMock) -> None:
        operation = AsyncMock(side_effect=KeyError("permanent"))
        with pytest.raises(KeyError):
            await with_retry(operation, max_attempts=5, retry_on=(ValueError,))
        operation.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_validation_errors_are_not_retried(self, mock_sleep: AsyncMock) -> None:
        operation = AsyncMock(side_effect=ValidationError("Cannot embed empty text", field="text"))
        with pytest.raises(ValidationError):
            await with_retry(operation, max_attempts=3)
        operation.assert_awaited_once()
        mock_sleep.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_single_attempt_never_sleeps(self, mock_sleep: AsyncMock) -> None:
        operation = AsyncMock(side_effect=RuntimeError("x"))
        with pytest.raises(RuntimeError):
            await with_retry(operation, max_attempts=1)
        mock_sleep.assert_not_awaited()


class TestRetryDecorator:
    """The decorator retries transport errors only by default."""

    @pytest.mark.asyncio
    async def test_retries_transport_errors(self, mock_sleep: AsyncMock) -> None:
        calls = AsyncMock(side_effect=[httpx.ConnectError("refused"), "done"])

        @retry(max_attempts=2, initial_delay=0.5)
        async def fetch() -> str:
            return await calls()

        assert await fetch() == "done"
        mock_sleep.assert_awaited_once_with(0.5)

    @pytest.mark.asyncio
    async def test_does_not_retry_other_errors(self, mock_sleep: AsyncMock) -> None:
        calls = AsyncMock(side_effect=ValueError("bad input"))

        @retry(max_attempts=3)
        async def fetch() -> str:
            return await calls()

        with pytest.raises(ValueError):
            await fetch()
        calls.assert_awaited_once()
