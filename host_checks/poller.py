"""Fixed-interval probe loop.

Each cycle fans out one probe per target, commits all outcomes plus the
retention purge as one transaction, then hands over to the view cache so it
can render the new generation. The loop runs on its own thread and event loop
so a slow probe can never hold up the HTTP workers.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from host_checks.errors import StoreError
from host_checks.probes import SEQ_MODULUS, ProbeClient, ProbeOutcome
from host_checks.store import STATUS_DOWN, STATUS_UP, ProbeResult, ResultStore
from host_checks.targets import ProbeTarget


logger = structlog.get_logger(__name__)

JOB_ID = "probe-cycle"


class ResolvedAddresses:
    """label -> resolved IP, written by the poller only. Readers get a snapshot."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._by_label: dict[str, str | None] = {}

    def update(self, items: Iterable[tuple[str, str | None]]) -> None:
        with self._lock:
            merged = dict(self._by_label)
            merged.update(items)
            self._by_label = merged

    def snapshot(self) -> dict[str, str | None]:
        return dict(self._by_label)


@dataclass(frozen=True)
class CycleReport:
    seq: int
    rows: int
    up: int
    down: int
    purged: int
    elapsed_seconds: float


class ProbeScheduler:
    def __init__(
        self,
        *,
        targets: list[ProbeTarget],
        client: ProbeClient,
        store: ResultStore,
        addresses: ResolvedAddresses,
        interval_seconds: int,
        retention_days: int,
        on_cycle_committed: Callable[[], Any] | None = None,
        on_fatal: Callable[[BaseException], None] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.targets = list(targets)
        self.client = client
        self.store = store
        self.addresses = addresses
        self.interval_seconds = max(1, int(interval_seconds))
        self.retention_days = int(retention_days)
        self.on_cycle_committed = on_cycle_committed
        self.on_fatal = on_fatal
        self.clock = clock

        self.failure: BaseException | None = None
        self.last_report: CycleReport | None = None
        self._seq = 0
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._running_cycle: asyncio.Task | None = None

    async def _probe_one(self, target: ProbeTarget, seq: int) -> tuple[ProbeTarget, ProbeOutcome, float]:
        outcome = await self.client.probe(target, seq)
        return target, outcome, float(self.clock())

    async def run_cycle(self) -> CycleReport:
        """Probe every target, commit the batch, then advance the rendered view."""
        started = time.monotonic()
        seq = self._seq

        # Fan-out/fan-in: nothing is committed until every probe has finished or timed out.
        results = await asyncio.gather(*(self._probe_one(t, seq) for t in self.targets))

        rows: list[ProbeResult] = []
        resolved: list[tuple[str, str | None]] = []
        up_count = 0
        for target, outcome, ts in results:
            if outcome.up:
                up_count += 1
            rows.append(
                ProbeResult(
                    subject_key=target.subject_key,
                    ts=ts,
                    status=STATUS_UP if outcome.up else STATUS_DOWN,
                    latency_ms=outcome.latency_ms if outcome.up else None,
                )
            )
            if target.is_service:
                resolved.append((target.label, outcome.resolved_ip))

        self.addresses.update(resolved)

        cutoff = float(self.clock()) - self.retention_days * 86400.0
        purged = self.store.commit_cycle(rows, cutoff)

        if self.on_cycle_committed is not None:
            self.on_cycle_committed()

        self._seq = (seq + 1) % SEQ_MODULUS
        report = CycleReport(
            seq=seq,
            rows=len(rows),
            up=up_count,
            down=len(rows) - up_count,
            purged=purged,
            elapsed_seconds=time.monotonic() - started,
        )
        self.last_report = report
        logger.info(
            "Cycle complete",
            seq=seq,
            rows=report.rows,
            up=report.up,
            down=report.down,
            purged=purged,
            elapsed_s=round(report.elapsed_seconds, 3),
        )
        return report

    async def _tick(self) -> None:
        self._running_cycle = asyncio.current_task()
        try:
            await self.run_cycle()
        except StoreError as exc:
            logger.critical("Result store failure, stopping poller", error=str(exc))
            self._fail(exc)
        except Exception as exc:
            logger.exception("Poll cycle failed, stopping poller", error=f"{type(exc).__name__}: {exc}")
            self._fail(exc)
        finally:
            self._running_cycle = None

    def _fail(self, exc: BaseException) -> None:
        self.failure = exc
        if self._scheduler is not None and self._scheduler.running:
            self._scheduler.shutdown(wait=False)
        if self._loop is not None:
            self._loop.call_soon(self._loop.stop)
        if self.on_fatal is not None:
            self.on_fatal(exc)

    def _thread_main(self, ready: threading.Event) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop

        scheduler = AsyncIOScheduler(event_loop=loop)
        scheduler.add_job(
            self._tick,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="probe cycle",
            max_instances=1,
            coalesce=True,
            misfire_grace_time=None,
            next_run_time=datetime.now(),
        )
        self._scheduler = scheduler
        scheduler.start()
        ready.set()
        logger.info("Poller started", targets=len(self.targets), interval_seconds=self.interval_seconds)

        try:
            loop.run_forever()
        finally:
            loop.run_until_complete(loop.shutdown_asyncgens())
            loop.close()
            logger.info("Poller stopped")

    def start(self) -> None:
        if self._thread is not None:
            logger.warning("Poller already running")
            return
        ready = threading.Event()
        self._thread = threading.Thread(target=self._thread_main, args=(ready,), name="probe-scheduler", daemon=True)
        self._thread.start()
        ready.wait()

    def stop(self, timeout: float | None = None) -> None:
        """Stop the loop. A cycle in flight is allowed to finish first."""
        loop, thread = self._loop, self._thread
        if loop is None or thread is None:
            return

        def _shutdown() -> None:
            if self._scheduler is not None and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            task = self._running_cycle
            if task is not None and not task.done():
                task.add_done_callback(lambda _t: loop.stop())
            else:
                loop.stop()

        if not loop.is_closed():
            try:
                loop.call_soon_threadsafe(_shutdown)
            except RuntimeError:
                # Loop closed between the check and the call.
                pass
        thread.join(timeout if timeout is not None else self.interval_seconds + self.client.timeout_seconds + 5)
        self._thread = None
