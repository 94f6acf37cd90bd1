"""Bounded-concurrency executor for conversion script invocations."""

import asyncio
import os
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Sequence

import structlog

logger = structlog.get_logger()


class ProcessError(Exception):
    """Raised when a pooled process exits with a nonzero code."""

    def __init__(
        self,
        message: str,
        stdout: str = "",
        stderr: str = "",
        exit_code: int | None = None,
        duration: float = 0.0,
    ) -> None:
        self.stdout = stdout
        self.stderr = stderr
        self.exit_code = exit_code
        self.duration = duration
        super().__init__(message)


class ProcessTimeout(ProcessError):
    """Raised when a pooled process is killed for running too long."""


@dataclass
class ProcessResult:
    """Captured output of a successful invocation."""

    stdout: str
    stderr: str
    duration: float


@dataclass
class _PoolTask:
    command: str
    args: list[str]
    cwd: Path | None
    env: Mapping[str, str] | None
    future: asyncio.Future
    start_time: float = field(default_factory=time.monotonic)


@dataclass
class PoolMetrics:
    total_processed: int = 0
    total_failed: int = 0
    average_time: float = 0.0
    peak_concurrent: int = 0


class ProcessPool:
    """
    Runs external processes with at most ``max_concurrent`` alive at once.

    Excess submissions wait in a FIFO queue and are started as soon as a
    running process finishes. Submitted work cannot be withdrawn.
    """

    def __init__(
        self,
        max_concurrent: int = 5,
        timeout_seconds: float | None = None,
    ) -> None:
        """
        Initialize the pool.

        Args:
            max_concurrent: Maximum number of processes running at once
            timeout_seconds: Kill a process after this many seconds (None or 0 disables)
        """
        self._max_concurrent = max(max_concurrent, 1)
        self._timeout = timeout_seconds or None
        self._active = 0
        self._queue: deque[_PoolTask] = deque()
        self._runners: set[asyncio.Task] = set()
        self.metrics = PoolMetrics()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    @property
    def active_processes(self) -> int:
        return self._active

    @property
    def queued_tasks(self) -> int:
        return len(self._queue)

    async def execute(
        self,
        command: str,
        args: Sequence[str],
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> ProcessResult:
        """
        Run ``command`` with ``args`` once a slot is free.

        The caller is responsible for validating the command and arguments.

        Returns:
            ProcessResult with captured stdout/stderr and duration in ms

        Raises:
            ProcessError: If the process exits with a nonzero code or times out
            OSError: If the process cannot be spawned
        """
        loop = asyncio.get_running_loop()
        task = _PoolTask(
            command=str(command),
            args=[str(arg) for arg in args],
            cwd=cwd,
            env=env,
            future=loop.create_future(),
        )

        if self._active < self._max_concurrent:
            self._start(task)
        else:
            logger.debug(
                "Task queued (pool at capacity)",
                queued=len(self._queue) + 1,
                active=self._active,
                max_concurrent=self._max_concurrent,
            )
            self._queue.append(task)

        return await task.future

    def _start(self, task: _PoolTask) -> None:
        self._active += 1
        if self._active > self.metrics.peak_concurrent:
            self.metrics.peak_concurrent = self._active

        logger.debug(
            "Process started",
            active=self._active,
            queued=len(self._queue),
            command=task.command,
        )

        runner = asyncio.create_task(self._run(task))
        self._runners.add(runner)
        runner.add_done_callback(self._runners.discard)

    async def _run(self, task: _PoolTask) -> None:
        try:
            result = await self._spawn(task)
        except asyncio.CancelledError:
            task.future.cancel()
            raise
        except Exception as exc:
            self.metrics.total_failed += 1
            self._record_timing(task)
            logger.debug(
                "Process failed",
                command=task.command,
                exit_code=getattr(exc, "exit_code", None),
                error=str(exc),
            )
            if not task.future.done():
                task.future.set_exception(exc)
        else:
            self.metrics.total_processed += 1
            self._record_timing(task)
            logger.debug(
                "Process completed",
                duration_ms=round(result.duration),
                active=self._active - 1,
                total_processed=self.metrics.total_processed,
            )
            if not task.future.done():
                task.future.set_result(result)
        finally:
            self._process_next()

    async def _spawn(self, task: _PoolTask) -> ProcessResult:
        env = {**os.environ, **task.env} if task.env else None
        process = await asyncio.create_subprocess_exec(
            task.command,
            *task.args,
            cwd=str(task.cwd) if task.cwd else None,
            env=env,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError:
            logger.error(
                "Process timed out",
                command=task.command,
                timeout=self._timeout,
            )
            process.kill()
            await process.wait()
            raise ProcessTimeout(
                f"Process timed out after {self._timeout} seconds",
                duration=self._elapsed(task),
            )

        stdout_text = stdout.decode("utf-8", errors="replace")
        stderr_text = stderr.decode("utf-8", errors="replace")
        duration = self._elapsed(task)

        if process.returncode != 0:
            raise ProcessError(
                f"Process exited with code {process.returncode}",
                stdout=stdout_text,
                stderr=stderr_text,
                exit_code=process.returncode,
                duration=duration,
            )

        return ProcessResult(stdout=stdout_text, stderr=stderr_text, duration=duration)

    @staticmethod
    def _elapsed(task: _PoolTask) -> float:
        return (time.monotonic() - task.start_time) * 1000

    def _record_timing(self, task: _PoolTask) -> None:
        duration = self._elapsed(task)
        total = self.metrics.total_processed + self.metrics.total_failed
        self.metrics.average_time = (
            self.metrics.average_time * (total - 1) + duration
        ) / total

    def _process_next(self) -> None:
        self._active -= 1

        if self._queue:
            next_task = self._queue.popleft()
            logger.debug(
                "Processing queued task",
                remaining=len(self._queue),
                active=self._active + 1,
            )
            self._start(next_task)

    def get_metrics(self) -> dict:
        """Get current pool metrics."""
        return {
            "totalProcessed": self.metrics.total_processed,
            "totalFailed": self.metrics.total_failed,
            "averageTime": round(self.metrics.average_time, 2),
            "peakConcurrent": self.metrics.peak_concurrent,
            "activeProcesses": self._active,
            "queuedTasks": len(self._queue),
            "maxConcurrent": self._max_concurrent,
            "utilizationPercent": round(self._active / self._max_concurrent * 100),
        }

    def reset_metrics(self) -> None:
        self.metrics = PoolMetrics()
