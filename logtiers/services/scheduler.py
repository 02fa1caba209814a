"""
logtiers/services/scheduler.py

Runs named jobs on independent fixed intervals, one daemon thread per job.

A job that raises is logged and counted in its health entry; the thread keeps
its schedule. ``trigger`` runs a job synchronously on the caller's thread.
"""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


@dataclass
class JobHealth:
    runs: int = 0
    failures: int = 0
    last_duration_ms: float = 0.0
    last_error: Optional[str] = None


@dataclass
class _Job:
    name: str
    interval: float
    func: Callable[[], Any]
    run_immediately: bool = True


class Scheduler:
    def __init__(self) -> None:
        self._jobs: Dict[str, _Job] = {}
        self._health: Dict[str, JobHealth] = {}
        self._run_locks: Dict[str, threading.Lock] = {}
        self._threads: List[threading.Thread] = []
        self._shutdown = threading.Event()
        self._health_lock = threading.Lock()

    def add_job(
        self, name: str, interval: float, func: Callable[[], Any], run_immediately: bool = True
    ) -> None:
        if name in self._jobs:
            raise ValueError(f"Job '{name}' is already registered")
        if interval <= 0:
            raise ValueError(f"Job '{name}' needs a positive interval, got {interval}")
        self._jobs[name] = _Job(name, interval, func, run_immediately)
        self._health[name] = JobHealth()
        self._run_locks[name] = threading.Lock()

    def job_names(self) -> List[str]:
        return list(self._jobs)

    def health(self) -> Dict[str, JobHealth]:
        with self._health_lock:
            return {name: JobHealth(**vars(h)) for name, h in self._health.items()}

    def trigger(self, name: str) -> Any:
        """Run one job now and return its result (None if it failed)."""
        if name not in self._jobs:
            raise KeyError(f"Unknown job: {name}")
        return self._run(self._jobs[name])

    def _run(self, job: _Job) -> Any:
        # Never overlap two runs of the same job.
        with self._run_locks[job.name]:
            start_time = time.time()
            error: Optional[str] = None
            result = None
            try:
                result = job.func()
            except Exception as exc:
                error = str(exc)
                logger.exception(f"Job '{job.name}' failed: {exc}")
            exec_time_ms = (time.time() - start_time) * 1000
            with self._health_lock:
                health = self._health[job.name]
                health.runs += 1
                health.last_duration_ms = exec_time_ms
                health.last_error = error
                if error is not None:
                    health.failures += 1
            return result

    def start(self) -> None:
        if self._threads:
            return
        self._shutdown.clear()
        for job in self._jobs.values():
            t = threading.Thread(target=self._loop, args=(job,), daemon=True, name=f"job-{job.name}")
            t.start()
            self._threads.append(t)
        logger.info(f"Scheduler started jobs: {', '.join(self._jobs)}")

    def _loop(self, job: _Job) -> None:
        if not job.run_immediately:
            if self._shutdown.wait(timeout=job.interval):
                return
        while not self._shutdown.is_set():
            self._run(job)
            # wait instead of sleep so stop() is prompt
            self._shutdown.wait(timeout=job.interval)

    def stop(self, timeout: float = 5.0) -> None:
        self._shutdown.set()
        for t in self._threads:
            t.join(timeout=timeout)
        self._threads = []
        logger.info("Scheduler stopped")

    @property
    def running(self) -> bool:
        return bool(self._threads) and not self._shutdown.is_set()
