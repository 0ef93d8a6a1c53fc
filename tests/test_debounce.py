import asyncio

from lms_chat.utils.debounce import Debouncer


class TestDebouncer:
    async def test_burst_coalesces_into_one_call(self):
        calls = []

        async def refresh():
            calls.append(1)

        debouncer = Debouncer(0.02, refresh)
        for _ in range(10):
            debouncer.trigger()
        assert debouncer.pending

        await asyncio.sleep(0.06)

        assert len(calls) == 1
        assert not debouncer.pending
        await debouncer.aclose()

    async def test_trigger_after_firing_schedules_again(self):
        calls = []

        async def refresh():
            calls.append(1)

        debouncer = Debouncer(0.01, refresh)
        debouncer.trigger()
        await asyncio.sleep(0.04)
        debouncer.trigger()
        await asyncio.sleep(0.04)

        assert len(calls) == 2
        await debouncer.aclose()

    async def test_cancel(self):
        calls = []

        async def refresh():
            calls.append(1)

        debouncer = Debouncer(0.01, refresh)
        debouncer.trigger()
        debouncer.cancel()
        await asyncio.sleep(0.03)

        assert calls == []

    async def test_callback_errors_are_logged_not_raised(self):
        async def broken():
            raise RuntimeError("boom")

        debouncer = Debouncer(0.01, broken)
        debouncer.trigger()
        await asyncio.sleep(0.03)

        debouncer.trigger()
        assert debouncer.pending
        await debouncer.aclose()

    async def test_aclose_cancels_running_callback(self):
        started = asyncio.Event()

        async def slow():
            started.set()
            await asyncio.sleep(10)

        debouncer = Debouncer(0.0001, slow)
        debouncer.trigger()
        await asyncio.wait_for(started.wait(), timeout=1)

        await debouncer.aclose()

        assert not debouncer.pending
