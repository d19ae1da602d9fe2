import asyncio

import pytest

from engine.dispatcher import Scheduler, SerialDispatcher

from conftest import drain, make_connection


def test_callbacks_run_in_submission_order():
    seen = []

    async def scenario():
        dispatcher = SerialDispatcher()
        await dispatcher.start()
        for i in range(5):
            dispatcher.submit(seen.append, i)
        await dispatcher.drain()
        await dispatcher.stop()

    asyncio.run(scenario())
    assert seen == [0, 1, 2, 3, 4]


def test_failing_handler_is_isolated():
    seen = []
    connection = make_connection()

    def boom():
        raise RuntimeError("handler bug")

    async def scenario():
        dispatcher = SerialDispatcher()
        await dispatcher.start()
        dispatcher.submit(boom, connection=connection)
        dispatcher.submit(seen.append, "still running")
        await dispatcher.drain()
        assert dispatcher.running
        await dispatcher.stop()

    asyncio.run(scenario())
    assert seen == ["still running"]
    [reply] = drain(connection)
    assert (reply["type"], reply["error"]) == ("error", "internal server error")


def test_call_returns_result_and_propagates_errors():
    async def scenario():
        dispatcher = SerialDispatcher()
        await dispatcher.start()
        assert await dispatcher.call(sum, [1, 2, 3]) == 6
        with pytest.raises(ZeroDivisionError):
            await dispatcher.call(lambda: 1 / 0)
        await dispatcher.stop()

    asyncio.run(scenario())


def test_offloaded_work_re_enters_the_worker():
    results = []

    async def slow_double(x):
        await asyncio.sleep(0.01)
        return x * 2

    async def failing():
        raise ValueError("nope")

    async def scenario():
        dispatcher = SerialDispatcher()
        await dispatcher.start()
        done = asyncio.Event()

        def on_done(result, error):
            results.append((result, type(error).__name__ if error else None))
            if len(results) == 3:
                done.set()

        dispatcher.offload(slow_double(21), on_done)
        dispatcher.offload(failing(), on_done)
        dispatcher.offload_blocking(pow, 2, 5, on_done=on_done)
        await asyncio.wait_for(done.wait(), timeout=5)
        await dispatcher.stop()

    asyncio.run(scenario())
    assert sorted(results, key=repr) == sorted([(42, None), (None, "ValueError"), (32, None)], key=repr)


def test_scheduler_runs_timers_through_dispatcher():
    fired = []

    async def scenario():
        dispatcher = SerialDispatcher()
        await dispatcher.start()
        scheduler = Scheduler(dispatcher)
        scheduler.call_later(0.01, fired.append, "once")
        cancelled = scheduler.call_later(0.01, fired.append, "never")
        cancelled.cancel()
        scheduler.every(0.01, fired.append, "tick")
        await asyncio.sleep(0.1)
        scheduler.cancel_all()
        await dispatcher.drain()
        count = fired.count("tick")
        await asyncio.sleep(0.05)
        await dispatcher.drain()
        await dispatcher.stop()
        return count

    ticks_at_cancel = asyncio.run(scenario())
    assert "once" in fired
    assert "never" not in fired
    assert ticks_at_cancel >= 2
    assert fired.count("tick") == ticks_at_cancel
