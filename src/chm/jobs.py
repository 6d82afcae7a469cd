#!/usr/bin/env python3
"""chm.jobs

Submit-and-await wrapper for the heavy steps (point extraction chunks,
raster rendering, artifact writes).

A Job is a named handle on a future. Callers submit work, then either poll
`job.state` or block on `job.wait()`. States follow the hosted-platform task
vocabulary: READY -> RUNNING -> COMPLETED | FAILED.

Results never depend on the worker count: each job owns its own inputs and
outputs, and callers reassemble results in submission order.
"""

from __future__ import annotations

import threading
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from typing import Any, Callable, Iterable, List, Optional

READY = "READY"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


class Job:
    """Handle on one submitted unit of work."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._state = READY
        self._lock = threading.Lock()
        self._future: Optional[Future] = None

    def _set_state(self, state: str) -> None:
        with self._lock:
            self._state = state

    @property
    def state(self) -> str:
        # a finished job reads its outcome from the future, so FAILED and `error` agree
        fut = self._future
        if fut is not None and fut.done():
            if fut.cancelled() or fut.exception() is not None:
                return FAILED
            return COMPLETED
        with self._lock:
            return self._state

    def active(self) -> bool:
        return self.state in (READY, RUNNING)

    def done(self) -> bool:
        return not self.active()

    @property
    def error(self) -> Optional[BaseException]:
        """The job's exception once it has FAILED, else None. Never raises."""
        if self._future is None or not self._future.done():
            return None
        if self._future.cancelled():
            return CancelledError(self.name)
        return self._future.exception()

    def wait(self, timeout: Optional[float] = None) -> Any:
        """Block until the job finishes; return its result or re-raise its error."""
        if self._future is None:
            raise RuntimeError(f"Job {self.name!r} was never submitted")
        return self._future.result(timeout=timeout)

    def __repr__(self) -> str:
        return f"Job({self.name!r}, state={self.state})"


class JobRunner:
    """Thread pool that hands out Job handles.

    Use as a context manager so the pool is shut down after the run:

        with JobRunner(workers=4) as runner:
            job = runner.submit("export:raster", write_raster, ...)
            job.wait()
    """

    def __init__(self, workers: int = 4) -> None:
        self.workers = max(1, int(workers))
        self._pool = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="chm")

    def submit(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Job:
        job = Job(name)

        def _run() -> Any:
            job._set_state(RUNNING)
            return fn(*args, **kwargs)

        job._future = self._pool.submit(_run)
        return job

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True)

    def __enter__(self) -> "JobRunner":
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()


def wait_all(jobs: Iterable[Job], timeout: Optional[float] = None) -> List[Job]:
    """Wait for every job to finish without raising; inspect `job.error` afterwards."""
    jobs = list(jobs)
    for job in jobs:
        if job._future is not None:
            # exception() blocks until done and returns rather than raising
            job._future.exception(timeout=timeout)
    return jobs
