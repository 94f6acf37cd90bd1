import asyncio
import sys

import pytest

from docsync.pool import ProcessError, ProcessPool, ProcessTimeout


def python(code: str) -> tuple[str, list[str]]:
    return sys.executable, ["-c", code]


def test_execute_captures_output():
    pool = ProcessPool(max_concurrent=2)
    command, args = python("import sys; print('hello'); sys.stderr.write('careful')")

    result = asyncio.run(pool.execute(command, args))

    assert result.stdout.strip() == "hello"
    assert result.stderr == "careful"
    assert result.duration >= 0
    metrics = pool.get_metrics()
    assert metrics["totalProcessed"] == 1
    assert metrics["totalFailed"] == 0
    assert metrics["activeProcesses"] == 0


def test_nonzero_exit_rejects_with_process_error():
    pool = ProcessPool(max_concurrent=1)
    command, args = python("import sys; print('out'); sys.stderr.write('boom'); sys.exit(3)")

    with pytest.raises(ProcessError) as excinfo:
        asyncio.run(pool.execute(command, args))

    assert excinfo.value.exit_code == 3
    assert excinfo.value.stderr == "boom"
    assert excinfo.value.stdout.strip() == "out"
    assert pool.get_metrics()["totalFailed"] == 1


def test_missing_binary_rejects_with_spawn_error():
    pool = ProcessPool(max_concurrent=1)

    with pytest.raises(FileNotFoundError):
        asyncio.run(pool.execute("/nonexistent/docx-sync-binary", []))

    metrics = pool.get_metrics()
    assert metrics["totalFailed"] == 1
    assert metrics["activeProcesses"] == 0


def test_never_runs_more_than_max_concurrent():
    pool = ProcessPool(max_concurrent=2)
    command, args = python("import time; time.sleep(0.3)")
    observed: list[int] = []

    async def scenario():
        tasks = [asyncio.create_task(pool.execute(command, args)) for _ in range(6)]
        await asyncio.sleep(0)
        assert pool.active_processes == 2
        assert pool.queued_tasks == 4
        while not all(task.done() for task in tasks):
            observed.append(pool.active_processes)
            await asyncio.sleep(0.01)
        return await asyncio.gather(*tasks)

    results = asyncio.run(scenario())

    assert len(results) == 6
    assert max(observed) <= 2
    metrics = pool.get_metrics()
    assert metrics["peakConcurrent"] == 2
    assert metrics["totalProcessed"] == 6
    assert metrics["queuedTasks"] == 0


def test_queued_tasks_start_in_submission_order(tmp_path):
    pool = ProcessPool(max_concurrent=1)
    order_file = tmp_path / "order.txt"
    code = (
        "import sys, time; time.sleep(0.05); "
        f"open({str(order_file)!r}, 'a').write(sys.argv[1] + '\\n')"
    )

    async def scenario():
        await asyncio.gather(
            *(pool.execute(sys.executable, ["-c", code, str(i)]) for i in range(5))
        )

    asyncio.run(scenario())

    assert order_file.read_text().split() == ["0", "1", "2", "3", "4"]


def test_failure_frees_slot_for_queued_task():
    pool = ProcessPool(max_concurrent=1)
    failing = python("import sys; sys.exit(1)")
    passing = python("print('next')")

    async def scenario():
        first = asyncio.create_task(pool.execute(*failing))
        second = asyncio.create_task(pool.execute(*passing))
        with pytest.raises(ProcessError):
            await first
        return await second

    result = asyncio.run(scenario())

    assert result.stdout.strip() == "next"
    assert pool.get_metrics()["totalProcessed"] == 1
    assert pool.get_metrics()["totalFailed"] == 1


def test_timeout_kills_process():
    pool = ProcessPool(max_concurrent=1, timeout_seconds=0.2)
    command, args = python("import time; time.sleep(5)")

    with pytest.raises(ProcessTimeout):
        asyncio.run(pool.execute(command, args))

    assert pool.active_processes == 0


def test_cwd_and_env_are_passed_through(tmp_path):
    pool = ProcessPool(max_concurrent=1)
    command, args = python("import os; print(os.getcwd()); print(os.environ['DSYNC_TEST_VALUE'])")

    result = asyncio.run(
        pool.execute(command, args, cwd=tmp_path, env={"DSYNC_TEST_VALUE": "42"})
    )

    lines = result.stdout.splitlines()
    assert lines[0] == str(tmp_path.resolve())
    assert lines[1] == "42"


def test_average_time_is_running_mean():
    pool = ProcessPool(max_concurrent=2)
    command, args = python("pass")

    async def scenario():
        await pool.execute(command, args)
        await pool.execute(command, args)

    asyncio.run(scenario())

    assert pool.get_metrics()["averageTime"] > 0
    pool.reset_metrics()
    assert pool.get_metrics()["totalProcessed"] == 0
