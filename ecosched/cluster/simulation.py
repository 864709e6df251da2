"""
ecosched/cluster/simulation.py
──────────────────────────────
Simulation: discrete-event driver that feeds a Scheduler from a SimulatedCluster.

Event sources
──────────────
  driver heap   task arrivals and periodic ticks, (time, order, counter, kind, id)
  harness heap  power / migration / task completions and SLA-risk warnings,
                owned by SimulatedCluster

At every step the earlier of the two heads is delivered. On equal times the
harness goes first, so a completion is seen before an arrival at the same
instant. Inside the driver heap arrivals sort before ticks, and the counter
keeps insertion order for everything else.

Ticks are scheduled lazily: after a tick, the next one is queued only if
work remains (arrivals still to come or harness completions outstanding).
The run ends when both heaps are empty or the horizon is reached.

observer, if given, is called after every delivered event with the
simulation itself. Property tests use it to check invariants at each step.
"""

from __future__ import annotations

import heapq
import itertools
import logging
from typing import TYPE_CHECKING, Callable, List, Optional, Tuple

from ecosched.cluster.simulated import Completion, SimulatedCluster, TaskSpec
from ecosched.shared.models import PlacementOutcome, SchedulerReport

if TYPE_CHECKING:
    from ecosched.control_plane.scheduler import Scheduler

logger = logging.getLogger(__name__)

_ARRIVAL = 0
_TICK = 1


class Simulation:
    """
    Usage:
        cluster = SimulatedCluster(specs)
        scheduler = Scheduler(cluster, "pmapper")
        report = Simulation(cluster, scheduler, tasks).run()

    Attributes:
        now:        Current simulated time.
        outcomes:   PlacementOutcome of every arrival, in delivery order.
        delivered:  Number of events handed to the scheduler.
    """

    def __init__(
        self,
        cluster: SimulatedCluster,
        scheduler: "Scheduler",
        tasks: List[TaskSpec],
        tick_interval: Optional[float] = None,
        horizon: Optional[float] = None,
        observer: Optional[Callable[["Simulation"], None]] = None,
    ) -> None:
        self.cluster = cluster
        self.scheduler = scheduler
        self.tasks = sorted(tasks, key=lambda t: (t.arrival, t.task_id))
        self.tick_interval = tick_interval or scheduler.config.tick_interval_s
        self.horizon = horizon
        self.observer = observer

        self.now = 0.0
        self.outcomes: List[PlacementOutcome] = []
        self.delivered = 0

        self._queue: List[Tuple[float, int, int, int]] = []
        self._counter = itertools.count()
        self._arrivals_left = 0

    def _schedule(self, t: float, kind: int, entity_id: int = 0) -> None:
        heapq.heappush(self._queue, (t, kind, next(self._counter), entity_id))

    # ── Main loop ─────────────────────────────────────────────────────────────

    def run(self) -> SchedulerReport:
        for task in self.tasks:
            self.cluster.add_task(task)
            self._schedule(task.arrival, _ARRIVAL, task.task_id)
        self._arrivals_left = len(self.tasks)
        self._schedule(self.tick_interval, _TICK)

        self.scheduler.init(self.now)
        self._notify()

        while True:
            driver_t = self._queue[0][0] if self._queue else None
            harness_t = self.cluster.next_completion_time()
            if driver_t is None and harness_t is None:
                break
            next_t = min(t for t in (driver_t, harness_t) if t is not None)
            if self.horizon is not None and next_t > self.horizon:
                break

            if harness_t is not None and (driver_t is None or harness_t <= driver_t):
                event = self.cluster.pop_next_completion(until=harness_t)
                self.now = self.cluster.now
                if event is not None:
                    self._deliver_completion(event)
            else:
                t, kind, _, entity_id = heapq.heappop(self._queue)
                self.cluster.advance_to(t)
                self.now = t
                self._deliver_driver(kind, entity_id)

        self.cluster.advance_to(self.now)
        report = self.scheduler.shutdown(self.now)
        logger.info("Simulation finished at t=%.2f after %d events", self.now, self.delivered)
        return report

    def _deliver_driver(self, kind: int, entity_id: int) -> None:
        if kind == _ARRIVAL:
            self._arrivals_left -= 1
            outcome = self.scheduler.on_task_arrival(self.now, entity_id)
            if outcome is not None:
                self.outcomes.append(outcome)
        else:
            self.scheduler.on_periodic_tick(self.now)
            if self._arrivals_left or self.cluster.next_completion_time() is not None:
                self._schedule(self.now + self.tick_interval, _TICK)
        self._notify()

    def _deliver_completion(self, event: Completion) -> None:
        dispatch_completion(self.scheduler, event, self.now)
        self._notify()

    def _notify(self) -> None:
        self.delivered += 1
        if self.observer is not None:
            self.observer(self)


def dispatch_completion(scheduler: "Scheduler", event: Completion, now: float) -> None:
    """Hand one harness completion to the matching scheduler handler."""
    if event.kind == "power":
        scheduler.on_power_state_change_complete(now, event.entity_id)
    elif event.kind == "migration":
        scheduler.on_migration_complete(now, event.entity_id)
    elif event.kind == "task":
        scheduler.on_task_completion(now, event.entity_id)
    elif event.kind == "sla-risk":
        scheduler.on_service_level_risk(now, event.entity_id)
    else:
        raise ValueError(f"unknown completion kind {event.kind!r}")
