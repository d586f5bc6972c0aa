"""Tests for cooperative cancellation helpers."""

import asyncio

import pytest

from iocflow.cancellation import check_cancelled, run_cancellable
from iocflow.errors import Cancelled


def test_check_cancelled():
    """Test only a set signal raises."""
    cancel = asyncio.Event()

    check_cancelled(None, "storage")
    check_cancelled(cancel, "storage")
    cancel.set()

    with pytest.raises(Cancelled, match="Cancelled before storage"):
        check_cancelled(cancel, "storage")


class TestRunCancellable:
    """Tests for run_cancellable."""

    @pytest.mark.asyncio
    async def test_without_signal(self):
        """Test a plain await when no signal is given."""
        async def work():
            return 42

        assert await run_cancellable(work(), None, "enrichment") == 42

    @pytest.mark.asyncio
    async def test_completes_before_cancel(self):
        """Test the result is returned when work finishes first."""
        async def work():
            await asyncio.sleep(0.01)
            return "done"

        assert await run_cancellable(work(), asyncio.Event(), "enrichment") == "done"

    @pytest.mark.asyncio
    async def test_already_cancelled(self):
        """Test work never runs past a signal that is already set."""
        started = []

        async def work():
            started.append(True)
            await asyncio.sleep(1)

        cancel = asyncio.Event()
        cancel.set()

        with pytest.raises(Cancelled, match="Cancelled before enrichment"):
            await run_cancellable(work(), cancel, "enrichment")

        assert started == []

    @pytest.mark.asyncio
    async def test_cancel_in_flight(self):
        """Test in-flight work is cancelled when the signal fires."""
        cancelled = asyncio.Event()

        async def work():
            try:
                await asyncio.sleep(10)
            except asyncio.CancelledError:
                cancelled.set()
                raise

        cancel = asyncio.Event()
        asyncio.get_running_loop().call_later(0.05, cancel.set)

        with pytest.raises(Cancelled, match="Cancelled during enrichment"):
            await run_cancellable(work(), cancel, "enrichment")

        assert cancelled.is_set()

    @pytest.mark.asyncio
    async def test_work_error_propagates(self):
        """Test failures of the work itself are not masked."""
        async def work():
            raise ValueError("boom")

        with pytest.raises(ValueError, match="boom"):
            await run_cancellable(work(), asyncio.Event(), "enrichment")
