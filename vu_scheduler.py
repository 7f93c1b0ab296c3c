"""
Virtual user scheduler.
=======================
Starts a fixed number of virtual users at once. Each one runs the scenario
sequentially for a fixed number of iterations. A global ceiling stops new
iterations; a graceful-stop window lets in-flight iterations finish before
they are cancelled.

VU lifecycle: IDLE -> RUNNING -> DRAINING (ceiling hit mid-iteration) -> TERMINATED
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List

from load_errors import SchedulerError
from load_metrics import MetricsAggregator

logger = logging.getLogger(__name__)


class VUState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    TERMINATED = "terminated"


@dataclass
class VirtualUser:
    vu_id: int
    iterations: int
    state: VUState = VUState.IDLE
    iterations_started: int = 0
    iterations_completed: int = 0
    iterations_failed: int = 0
    interrupted: bool = False

    @property
    def iterations_dropped(self) -> int:
        """Iterations never started because the run hit its ceiling."""
        return self.iterations - self.iterations_started


@dataclass
class SchedulerReport:
    users: List[VirtualUser] = field(default_factory=list)
    duration: float = 0.0
    ceiling_reached: bool = False

    @property
    def completed_iterations(self) -> int:
        return sum(u.iterations_completed for u in self.users)

    @property
    def failed_iterations(self) -> int:
        return sum(u.iterations_failed for u in self.users)

    @property
    def dropped_iterations(self) -> int:
        return sum(u.iterations_dropped for u in self.users)

    @property
    def interrupted_vus(self) -> int:
        return sum(1 for u in self.users if u.interrupted)

    def to_dict(self):
        return {
            "vus": len(self.users),
            "duration_seconds": round(self.duration, 2),
            "ceiling_reached": self.ceiling_reached,
            "completed_iterations": self.completed_iterations,
            "failed_iterations": self.failed_iterations,
            "dropped_iterations": self.dropped_iterations,
            "interrupted_vus": self.interrupted_vus,
        }


class VirtualUserScheduler:
    """
    Runs ``vus`` independent virtual users, ``iterations`` each.

    ``scenario_factory(vu_id)`` returns the object whose ``run_iteration()``
    coroutine a VU repeats.
    """

    def __init__(
        self,
        scenario_factory: Callable[[int], Any],
        vus: int,
        iterations: int,
        max_duration: float,
        graceful_stop: float,
        metrics: MetricsAggregator,
    ):
        self.scenario_factory = scenario_factory
        self.vus = vus
        self.iterations = iterations
        self.max_duration = max_duration
        self.graceful_stop = graceful_stop
        self.metrics = metrics
        self.users: List[VirtualUser] = []
        self._stop_event = asyncio.Event()
        self._active = 0

    @property
    def active_vus(self) -> int:
        return self._active

    async def run(self) -> SchedulerReport:
        self._stop_event.clear()
        self.users = [VirtualUser(vu_id, self.iterations) for vu_id in range(1, self.vus + 1)]
        started = time.monotonic()

        tasks = await self._start_users()
        self.metrics.record("vus_max", self.vus)
        logger.info("Started %d VUs x %d iterations (max %.0fs, graceful stop %.0fs)",
                    self.vus, self.iterations, self.max_duration, self.graceful_stop)

        _, pending = await asyncio.wait(tasks, timeout=self.max_duration)
        ceiling_reached = bool(pending)

        if pending:
            self._stop_event.set()
            for user in self.users:
                if user.state == VUState.RUNNING:
                    user.state = VUState.DRAINING
            logger.info("Max duration reached with %d VUs busy; draining for %.1fs",
                        len(pending), self.graceful_stop)

            _, pending = await asyncio.wait(pending, timeout=self.graceful_stop)
            if pending:
                logger.warning("%d VUs still busy after graceful stop; abandoning them", len(pending))
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        report = SchedulerReport(
            users=self.users,
            duration=time.monotonic() - started,
            ceiling_reached=ceiling_reached,
        )
        if report.dropped_iterations:
            self.metrics.record("dropped_iterations", report.dropped_iterations)
        logger.info("Run finished in %.1fs: %d iterations completed, %d dropped",
                    report.duration, report.completed_iterations, report.dropped_iterations)
        return report

    async def _start_users(self) -> List["asyncio.Task"]:
        if self.vus < 1 or self.iterations < 1:
            raise SchedulerError(f"cannot schedule {self.vus} VUs x {self.iterations} iterations")

        tasks: List[asyncio.Task] = []
        try:
            for user in self.users:
                tasks.append(asyncio.create_task(self._run_user(user), name=f"vu-{user.vu_id}"))
        except (RuntimeError, MemoryError) as e:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise SchedulerError(f"could not start {self.vus} virtual users: {e}") from e
        return tasks

    async def _run_user(self, user: VirtualUser):
        self._active += 1
        self.metrics.record("vus", self._active)
        user.state = VUState.RUNNING
        try:
            scenario = self.scenario_factory(user.vu_id)
            while user.iterations_started < user.iterations and not self._stop_event.is_set():
                user.iterations_started += 1
                await self._run_iteration(user, scenario)
        except asyncio.CancelledError:
            user.interrupted = True
            raise
        except Exception:
            # One broken VU never takes its siblings down
            logger.exception("VU %d stopped unexpectedly", user.vu_id)
        finally:
            user.state = VUState.TERMINATED
            self._active -= 1
            self.metrics.record("vus", self._active)

    async def _run_iteration(self, user: VirtualUser, scenario: Any):
        start = time.perf_counter()
        try:
            await scenario.run_iteration()
        except asyncio.CancelledError:
            raise
        except Exception:
            user.iterations_failed += 1
            logger.exception("VU %d iteration %d failed", user.vu_id, user.iterations_started)
            return

        user.iterations_completed += 1
        self.metrics.record("iterations", 1)
        self.metrics.record("iteration_duration", (time.perf_counter() - start) * 1000)
