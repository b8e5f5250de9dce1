import asyncio

import pytest

from task_abort import AbortController, SupplyTaskAbortRegistry, TaskAborted


def test_sleep_is_interrupted_by_abort():
    async def scenario():
        ctrl = AbortController()
        loop = asyncio.get_running_loop()
        loop.call_later(0.01, ctrl.abort)
        started = loop.time()
        with pytest.raises(TaskAborted):
            await ctrl.sleep(30)
        return loop.time() - started

    assert asyncio.run(scenario()) < 5


def test_register_same_task_aborts_previous():
    async def scenario():
        reg = SupplyTaskAbortRegistry()
        first, second = AbortController(), AbortController()
        reg.register("1", "t", first)
        reg.register("1", "t", second)
        return first.aborted, second.aborted, reg.get("t") is second

    assert asyncio.run(scenario()) == (True, False, True)


def test_abort_whole_chat_only_touches_own_tasks():
    async def scenario():
        reg = SupplyTaskAbortRegistry()
        a, b, c = AbortController(), AbortController(), AbortController()
        reg.register("1", "a", a)
        reg.register("1", "b", b)
        reg.register("2", "c", c)
        reg.abort("1")
        return a.aborted, b.aborted, c.aborted, reg.active_task_ids()

    assert asyncio.run(scenario()) == (True, True, False, ["c"])


def test_clear_ignores_foreign_controller():
    async def scenario():
        reg = SupplyTaskAbortRegistry()
        old, new = AbortController(), AbortController()
        reg.register("1", "t", new)
        reg.clear("t", old)
        kept = reg.get("t") is new
        reg.clear("t", new)
        return kept, reg.get("t")

    assert asyncio.run(scenario()) == (True, None)


def test_abort_of_other_chat_task_is_ignored():
    async def scenario():
        reg = SupplyTaskAbortRegistry()
        ctrl = AbortController()
        reg.register("1", "t", ctrl)
        reg.abort("2", "t")
        return ctrl.aborted

    assert asyncio.run(scenario()) is False
