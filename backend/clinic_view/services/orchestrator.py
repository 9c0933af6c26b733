# backend/clinic_view/services/orchestrator.py
"""
Runs a declarative fetch plan on the event loop.

A plan is a list of top-level fetches and per-id dependent fetches, each
optionally gated by a capability. The orchestrator tracks the state of every
fetch, answers "is the page ready", and hands degraded snapshots to whoever
builds the views.
"""

import asyncio
import fnmatch
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from clinic_view.core.config import settings
from clinic_view.core.errors import ClinicApiError
from clinic_view.models.views import FetchState, FetchStatus, Readiness
from clinic_view.services.capabilities import Capability, CapabilityGate
from clinic_view.services.degradation import FetchOutcome, collection, report_failure
from clinic_view.services.session import SessionLifecycle

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FetchDescriptor:
    key: str
    loader: Callable[[], Awaitable[Any]]
    capability: Optional[Capability] = None
    primary: bool = False
    retries: int = 0
    empty: Callable[[], Any] = list


@dataclass(frozen=True)
class DependentFetch:
    """
    One fetch per id selected from already loaded snapshots, issued in parallel.

    Issued only after ``parent`` loaded successfully and is non-empty. Keys in
    ``after`` only have to be settled; a failed one is handed over as empty.
    Dependent fetches never retry. The snapshot is a dict keyed by id.
    """

    key: str
    parent: str
    loader: Callable[[str], Awaitable[Any]]
    select_ids: Callable[[Mapping[str, Any]], Iterable[str]]
    after: Tuple[str, ...] = ()
    capability: Optional[Capability] = None
    primary: bool = False
    retries: int = 0
    empty: Callable[[], Any] = dict

    @property
    def waits_on(self) -> Tuple[str, ...]:
        return (self.parent,) + tuple(self.after)


FetchSpec = Union[FetchDescriptor, DependentFetch]


class FetchPlan:
    def __init__(self, specs: Sequence[FetchSpec]):
        seen = set()
        for spec in specs:
            if spec.key in seen:
                raise ValueError(f"duplicate fetch key {spec.key!r}")
            if isinstance(spec, DependentFetch):
                missing = [key for key in spec.waits_on if key not in seen]
                if missing:
                    raise ValueError(f"{spec.key!r} depends on {missing} which are not declared before it")
            seen.add(spec.key)
        self.specs: List[FetchSpec] = list(specs)

    def __iter__(self):
        return iter(self.specs)

    def __len__(self) -> int:
        return len(self.specs)

    def keys(self) -> List[str]:
        return [spec.key for spec in self.specs]

    def disabled(self, gate: CapabilityGate) -> List[str]:
        return [spec.key for spec in self.specs if not gate.is_allowed(spec.capability)]

    def dependents_of(self, keys: Iterable[str]) -> List[str]:
        """Every key that transitively waits on one of ``keys``."""
        found = set(keys)
        result = []
        for spec in self.specs:
            if isinstance(spec, DependentFetch) and found.intersection(spec.waits_on) and spec.key not in found:
                found.add(spec.key)
                result.append(spec.key)
        return result


class _Entry:
    def __init__(self, spec: FetchSpec):
        self.spec = spec
        self.status = FetchStatus.PENDING
        self.value: Any = spec.empty()
        self.has_value = False
        self.error: Optional[Exception] = None
        self.attempts = 0
        self.version = 0
        self.generation = 0
        self.fetched_at: Optional[float] = None
        self.stale = True
        self.task: Optional[asyncio.Future] = None
        self.settled = asyncio.Event()

    @property
    def running(self) -> bool:
        return self.task is not None and not self.task.done()

    @property
    def loading(self) -> bool:
        return self.status is FetchStatus.PENDING and not self.has_value


class QueryOrchestrator:
    def __init__(
        self,
        plan: FetchPlan,
        gate: CapabilityGate,
        session: Optional[SessionLifecycle] = None,
        *,
        ready_timeout: Optional[float] = None,
        retry_backoff: Optional[float] = None,
        memo_ttl: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.plan = plan
        self._gate = gate
        self._session = session
        self._ready_timeout = settings.READY_TIMEOUT_SECONDS if ready_timeout is None else ready_timeout
        self._retry_backoff = settings.RETRY_BACKOFF_SECONDS if retry_backoff is None else retry_backoff
        self._memo_ttl = settings.MEMO_TTL_SECONDS if memo_ttl is None else memo_ttl
        self._clock = clock
        self._entries: Dict[str, _Entry] = {spec.key: _Entry(spec) for spec in plan}
        self._started_at: Optional[float] = None
        self._deadline_passed = False

    # Lifecycle

    def start(self) -> None:
        """Issue every fetch whose snapshot is missing, stale or expired. Safe to call repeatedly."""
        if self._started_at is None:
            self._started_at = self._clock()
        now = self._clock()
        restarted = set()
        for spec in self.plan:
            entry = self._entries[spec.key]
            if entry.running:
                continue
            waits_on = spec.waits_on if isinstance(spec, DependentFetch) else ()
            if not (self._needs_fetch(entry, now) or restarted.intersection(waits_on)):
                continue
            generation = self._restart(entry)
            if not self._gate.is_allowed(spec.capability):
                # Gated fetches are never issued and fold as a successful empty result
                logger.debug("Fetch %s disabled, %s not granted", spec.key, spec.capability.value)
                self._settle(entry, generation, FetchStatus.DISABLED)
                restarted.add(spec.key)
                continue
            if isinstance(spec, DependentFetch):
                coro = self._run_dependent(entry, generation)
            else:
                coro = self._run_fetch(entry, generation)
            entry.task = asyncio.ensure_future(coro)
            restarted.add(spec.key)

    def cancel(self) -> None:
        """Tear down: cancel everything in flight."""
        for entry in self._entries.values():
            if entry.running:
                entry.task.cancel()
                entry.generation += 1
                entry.task = None
                entry.status = FetchStatus.CANCELLED
                entry.stale = True
                entry.settled.set()
        logger.debug("Fetch plan cancelled")

    def invalidate(self, *patterns: str) -> List[str]:
        """
        Mark matching keys and everything depending on them stale.

        Idle keys refetch on the next start(). Keys that were in flight are
        re-issued right away so anyone waiting on them keeps waiting on the
        fresh fetch.
        """
        keys = [key for key in self._entries if any(fnmatch.fnmatchcase(key, p) for p in patterns)]
        keys += self.plan.dependents_of(keys)
        interrupted = False
        for key in keys:
            entry = self._entries[key]
            if entry.running:
                entry.task.cancel()
                entry.generation += 1
                entry.task = None
                interrupted = True
            entry.stale = True
        if keys:
            logger.info("Invalidated %s", ", ".join(keys))
        if interrupted:
            self.start()
        return keys

    async def wait_ready(self) -> Readiness:
        """Start the plan and wait until primary fetches settle or the ready timeout elapses."""
        self.start()
        blocking = [self._entries[key] for key in self.readiness().blocking]
        if blocking and not self._timed_out():
            remaining = self._ready_timeout - (self._clock() - self._started_at)
            waiters = [asyncio.ensure_future(entry.settled.wait()) for entry in blocking]
            try:
                _, pending = await asyncio.wait(waiters, timeout=max(remaining, 0))
            finally:
                for waiter in waiters:
                    if not waiter.done():
                        waiter.cancel()
            if pending:
                self._deadline_passed = True
                logger.warning(
                    "Primary fetches %s still pending after %.1fs, rendering with partial data",
                    ", ".join(self.readiness().blocking),
                    self._ready_timeout,
                )
        return self.readiness()

    async def settle(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for every fetch in flight, including dependents.

        Returns False if ``timeout`` elapsed first. Fetches still running are
        left running.
        """
        deadline = None if timeout is None else self._clock() + timeout
        while True:
            tasks = [entry.task for entry in self._entries.values() if entry.running]
            if not tasks:
                return True
            remaining = None if deadline is None else deadline - self._clock()
            if remaining is not None and remaining <= 0:
                return False
            _, pending = await asyncio.wait(tasks, timeout=remaining)
            if pending:
                return False

    # Reading state

    @property
    def ready_timeout(self) -> float:
        return self._ready_timeout

    def readiness(self) -> Readiness:
        blocking = [key for key, entry in self._entries.items() if entry.spec.primary and entry.loading]
        forced = bool(blocking) and self._timed_out()
        return Readiness(ready=not blocking or forced, timed_out=forced, blocking=blocking)

    def outcome(self, key: str) -> FetchOutcome:
        entry = self._entries[key]
        return FetchOutcome(
            key=key,
            status=entry.status,
            value=entry.value,
            empty=entry.spec.empty,
            has_value=entry.has_value,
            error=entry.error,
        )

    def snapshot(self, key: str) -> Any:
        return collection(self.outcome(key))

    def snapshots(self, keys: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        return {key: self.snapshot(key) for key in (keys if keys is not None else self._entries)}

    def states(self) -> List[FetchState]:
        return [
            FetchState(
                key=key,
                status=entry.status,
                primary=entry.spec.primary,
                error=_describe(entry.error),
                attempts=entry.attempts,
            )
            for key, entry in self._entries.items()
        ]

    def versions(self) -> Tuple[Tuple[str, int], ...]:
        return tuple((key, entry.version) for key, entry in self._entries.items())

    # Internals

    def _timed_out(self) -> bool:
        if self._deadline_passed:
            return True
        return self._started_at is not None and self._clock() - self._started_at >= self._ready_timeout

    def _can_issue(self) -> bool:
        return self._session is None or self._session.can_issue()

    def _needs_fetch(self, entry: _Entry, now: float) -> bool:
        if entry.stale or entry.status in (FetchStatus.PENDING, FetchStatus.CANCELLED):
            return True
        if entry.status is FetchStatus.DISABLED:
            return False
        return entry.fetched_at is None or now - entry.fetched_at >= self._memo_ttl

    def _restart(self, entry: _Entry) -> int:
        entry.generation += 1
        entry.status = FetchStatus.PENDING
        entry.error = None
        entry.attempts = 0
        entry.settled.clear()
        return entry.generation

    def _settle(self, entry: _Entry, generation: int, status: FetchStatus, value: Any = None, error: Exception = None):
        if generation != entry.generation:
            # Superseded by a restart, cancel or invalidation
            return
        entry.status = status
        entry.error = error
        if status is FetchStatus.OK:
            entry.value = entry.spec.empty() if value is None else value
            entry.has_value = True
        elif status is not FetchStatus.CANCELLED:
            entry.value = entry.spec.empty()
            entry.has_value = False
        entry.fetched_at = self._clock()
        entry.stale = status is FetchStatus.CANCELLED
        entry.version += 1
        entry.settled.set()

    async def _run_fetch(self, entry: _Entry, generation: int) -> None:
        spec = entry.spec
        try:
            while True:
                if not self._can_issue():
                    self._settle(entry, generation, FetchStatus.CANCELLED)
                    return
                entry.attempts += 1
                try:
                    value = await spec.loader()
                except ClinicApiError as exc:
                    if entry.attempts <= spec.retries and exc.retryable:
                        logger.info("Fetch %s failed (%s), retrying in %.1fs", spec.key, exc, self._retry_backoff)
                        await asyncio.sleep(self._retry_backoff)
                        continue
                    report_failure(spec.key, exc)
                    self._settle(entry, generation, FetchStatus.ERROR, error=exc)
                    return
                except Exception as exc:
                    report_failure(spec.key, exc)
                    self._settle(entry, generation, FetchStatus.ERROR, error=exc)
                    return
                self._settle(entry, generation, FetchStatus.OK, value)
                return
        except asyncio.CancelledError:
            self._settle(entry, generation, FetchStatus.CANCELLED)
            raise

    async def _run_dependent(self, entry: _Entry, generation: int) -> None:
        spec: DependentFetch = entry.spec
        try:
            for key in spec.waits_on:
                await self._entries[key].settled.wait()
            parent = self._entries[spec.parent]
            if parent.status is not FetchStatus.OK or not parent.value:
                self._settle(entry, generation, FetchStatus.SKIPPED)
                return
            try:
                ids = list(dict.fromkeys(i for i in spec.select_ids(self.snapshots(spec.waits_on)) if i))
            except Exception as exc:
                report_failure(spec.key, exc)
                self._settle(entry, generation, FetchStatus.ERROR, error=exc)
                return
            if not ids:
                self._settle(entry, generation, FetchStatus.OK, {})
                return
            if not self._can_issue():
                self._settle(entry, generation, FetchStatus.CANCELLED)
                return
            entry.attempts = 1
            results = await asyncio.gather(*(self._run_child(spec, item_id) for item_id in ids))
            value = {item_id: result for item_id, ok, result in results if ok}
            failures = [result for _, ok, result in results if not ok]
            if failures and not value:
                self._settle(entry, generation, FetchStatus.ERROR, error=failures[0])
            else:
                self._settle(entry, generation, FetchStatus.OK, value, error=failures[0] if failures else None)
        except asyncio.CancelledError:
            self._settle(entry, generation, FetchStatus.CANCELLED)
            raise

    async def _run_child(self, spec: DependentFetch, item_id: str) -> Tuple[str, bool, Any]:
        try:
            return item_id, True, await spec.loader(item_id)
        except ClinicApiError as exc:
            report_failure(f"{spec.key}[{item_id}]", exc)
            return item_id, False, exc
        except Exception as exc:
            report_failure(f"{spec.key}[{item_id}]", exc)
            return item_id, False, exc


class SnapshotMemo:
    """Derived values cached against the snapshot versions they were computed from."""

    def __init__(self):
        self._table: Dict[Hashable, Tuple[Hashable, Any]] = {}

    def get_or_compute(self, key: Hashable, identity: Hashable, compute: Callable[[], Any]) -> Any:
        hit = self._table.get(key)
        if hit is not None and hit[0] == identity:
            return hit[1]
        value = compute()
        self._table[key] = (identity, value)
        return value

    def clear(self) -> None:
        self._table.clear()


def _describe(error: Optional[Exception]) -> Optional[str]:
    if error is None:
        return None
    if isinstance(error, ClinicApiError):
        return error.kind.value
    return type(error).__name__
