# SPDX-License-Identifier: Apache-2.0

"""
Escalation scheduler for donor matching.

Each blood request gets one matching process. A cycle runs
filter -> score -> dispatch -> schedule-next for that process. When a
cycle finds nobody, the radius widens and the cycle is retried at once;
when it notifies donors, the next escalation waits for the escalation
delay. A periodic sweep picks up every process whose gate has opened.

Single instance only: running several schedulers against the same
requests needs an external leader election or a per-process distributed
lock, otherwise donors receive duplicate notifications.
"""

import logging
import threading
from collections import Counter, OrderedDict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from opentelemetry import trace

from ..config import MatchingConfig, ScoringConfig
from ..domain.compatibility import compatible_donor_types
from ..domain.eligibility import EligibilityFilter
from ..domain.matching import completion_reason_for_status, default_expiry, initial_radius
from ..domain.scoring import ScoringEngine
from ..exceptions import (
    RECOVERABLE_ERRORS,
    InvalidTransitionError,
    RegistryConflictError,
)
from ..models.base import as_utc, utcnow
from ..models.entities import BloodRequest, MatchingCounters, MatchingProcess
from ..models.enums import CompletionReason
from .dispatcher import NotificationDispatcher
from .registry import MatchingRegistry, RegistryEntry, apply_mutation

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

COMPLETED_HISTORY_SIZE = 256


@dataclass
class CycleResult:
    """Outcome of one matching cycle."""
    process_id: str
    request_id: str
    search_radius_km: float
    donors_notified: int = 0
    donors_failed: int = 0
    escalations: int = 0
    completion_reason: Optional[str] = None
    faulted: bool = False


@dataclass
class MatchingStatistics:
    """Operator view of the scheduler."""
    total_processes: int = 0
    active_processes: int = 0
    completed_processes: int = 0
    average_radius: float = 0.0
    average_round: float = 0.0
    total_notified: int = 0
    failed_notifications: int = 0
    cycle_faults: int = 0
    faulted_processes: int = 0
    completions_by_reason: Dict[str, int] = field(default_factory=dict)
    last_sweep_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "total_processes": self.total_processes,
            "active_processes": self.active_processes,
            "completed_processes": self.completed_processes,
            "average_radius": self.average_radius,
            "average_round": self.average_round,
            "total_notified": self.total_notified,
            "failed_notifications": self.failed_notifications,
            "cycle_faults": self.cycle_faults,
            "faulted_processes": self.faulted_processes,
            "completions_by_reason": dict(self.completions_by_reason),
            "last_sweep_at": self.last_sweep_at.isoformat() if self.last_sweep_at else None,
        }


class EscalationScheduler:
    """
    Owns the matching registry and drives every matching process.

    Exposes the administrative surface: start_matching, stop_matching,
    record_response, get_process and get_statistics.
    """

    def __init__(
        self,
        donor_repository,
        request_store,
        sender,
        config: Optional[MatchingConfig] = None,
        scoring_config: Optional[ScoringConfig] = None,
        registry: Optional[MatchingRegistry] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        self.config = config or MatchingConfig()
        self.request_store = request_store
        self.registry = registry or MatchingRegistry()
        self.clock = clock

        self._shutdown = threading.Event()
        self.eligibility = EligibilityFilter(donor_repository, self.config, clock)
        self.scoring = ScoringEngine(scoring_config)
        self.dispatcher = NotificationDispatcher(sender, self.config, cancel_event=self._shutdown)

        self._sweep_lock = threading.Lock()
        self._stats_lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None

        self._completed_total = 0
        self._completions_by_reason: Counter = Counter()
        self._notified_total = 0
        self._failed_total = 0
        self._cycle_faults = 0
        self._last_sweep_at: Optional[datetime] = None
        self._history: "OrderedDict[str, MatchingProcess]" = OrderedDict()

    @property
    def escalation_delay(self) -> timedelta:
        return timedelta(seconds=self.config.escalation_delay_seconds)

    # Administrative surface

    def start_matching(self, request: BloodRequest) -> str:
        """
        Open a matching process for a blood request and run its first cycle.

        A request that already has an active process keeps it; its id is
        returned and nothing else happens.

        Raises:
            InvalidBloodTypeError: If the request's blood type is unknown
        """
        compatible_donor_types(request.patient_blood_type)

        existing = self.registry.entry_for_request(request.request_id)
        if existing is not None:
            logger.info(f"Matching already active for request: {request.request_id}")
            return existing.process.id

        now = as_utc(self.clock())
        with tracer.start_as_current_span("matching.start") as span:
            span.set_attribute("request.id", request.request_id)

            request = request.model_copy(
                deep=True,
                update={"expires_at": default_expiry(request, self.config.request_ttl_hours)}
            )
            process = MatchingProcess(
                request_id=request.request_id,
                request=request,
                current_radius_km=initial_radius(
                    request, self.config.default_radius_km, self.config.max_radius_km
                ),
                created_at=now,
                next_escalation_at=now + self.escalation_delay,
            )

            try:
                entry = self.registry.create(process)
            except RegistryConflictError:
                existing = self.registry.entry_for_request(request.request_id)
                if existing is None:
                    raise
                return existing.process.id

            span.set_attribute("matching.id", process.id)
            logger.info(
                f"Starting donor matching for request: {request.request_id}",
                extra={"extra_fields": {
                    "matching_id": process.id,
                    "radius_km": process.current_radius_km,
                    "urgency": request.urgency
                }}
            )

            self._process_entry(entry, now)

        return process.id

    def stop_matching(self, request_id: str) -> bool:
        """
        Stop matching for a blood request.

        A cycle already running for the request is allowed to finish, but
        nothing further is scheduled for it.

        Returns:
            True if an active process was stopped
        """
        entry = self.registry.entry_for_request(request_id)
        if entry is None:
            return False

        stopped = self._complete(entry, CompletionReason.MANUALLY_STOPPED, as_utc(self.clock()))
        if stopped:
            logger.info(f"Stopped matching for request: {request_id}")
        return stopped

    def record_response(self, request_id: str, donor_id: str, accepted: bool) -> bool:
        """
        Count a donor's answer and exclude that donor from later rounds.

        Returns:
            False if no active process exists for the request
        """
        entry = self.registry.entry_for_request(request_id)
        if entry is None:
            return False

        with entry.locked() as process:
            if not process.is_active():
                return False
            process.record_response(donor_id, accepted)
            positive = process.positive_responses

        logger.info(
            f"Recorded {'positive' if accepted else 'negative'} response for request: {request_id}",
            extra={"extra_fields": {"donor_id": donor_id, "positive_responses": positive}}
        )
        return True

    def get_process(self, request_id: str, include_completed: bool = False) -> Optional[MatchingProcess]:
        """Snapshot of the request's active process, or its last completed one."""
        process = self.registry.get_by_request(request_id)
        if process is None and include_completed:
            with self._stats_lock:
                completed = self._history.get(request_id)
                return completed.model_copy(deep=True) if completed else None
        return process

    def get_statistics(self) -> MatchingStatistics:
        """Aggregate counters over registered and completed processes."""
        snapshots = self.registry.snapshots()
        active = [process for process in snapshots if process.is_active()]

        with self._stats_lock:
            stats = MatchingStatistics(
                total_processes=len(snapshots) + self._completed_total,
                active_processes=len(active),
                completed_processes=self._completed_total,
                total_notified=self._notified_total,
                failed_notifications=self._failed_total,
                cycle_faults=self._cycle_faults,
                completions_by_reason=dict(self._completions_by_reason),
                last_sweep_at=self._last_sweep_at,
            )

        if active:
            stats.average_radius = sum(p.current_radius_km for p in active) / len(active)
            stats.average_round = sum(p.round for p in active) / len(active)
        stats.faulted_processes = sum(
            1 for p in active if p.consecutive_faults >= self.config.fault_alert_threshold
        )
        return stats

    # Sweep

    def run_sweep(self, now: Optional[datetime] = None) -> Optional[List[CycleResult]]:
        """
        Run one cycle for every active process whose escalation is due.

        Returns:
            Cycle results, or None if another sweep was already running
        """
        if not self._sweep_lock.acquire(blocking=False):
            logger.debug("Matching sweep already in progress, skipping")
            return None

        now = as_utc(now or self.clock())
        try:
            with tracer.start_as_current_span("matching.sweep") as span:
                due_entries = self.registry.due(now)
                span.set_attribute("sweep.due", len(due_entries))
                if not due_entries:
                    return []

                logger.info(f"Processing {len(due_entries)} escalation items")
                results = []
                for entry in due_entries:
                    if entry.removed:
                        continue
                    results.append(self._process_entry(entry, now))
                return results
        finally:
            with self._stats_lock:
                self._last_sweep_at = now
            self._sweep_lock.release()

    def start(self) -> None:
        """Start the periodic sweep on a daemon thread."""
        if self.is_running():
            return
        self._shutdown.clear()
        self._thread = threading.Thread(target=self._run_loop, name="matching-sweep", daemon=True)
        self._thread.start()
        logger.info(
            "Started donor matching sweep",
            extra={"extra_fields": {"interval_seconds": self.config.sweep_interval_seconds}}
        )

    def shutdown(self, wait: bool = True, timeout: Optional[float] = None) -> None:
        """Stop the sweep thread and cancel any pending inter-batch wait."""
        self._shutdown.set()
        if wait and self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("Stopped donor matching sweep")

    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run_loop(self) -> None:
        while not self._shutdown.wait(self.config.sweep_interval_seconds):
            try:
                self.run_sweep()
            except Exception:
                logger.error("Error processing matching queue", exc_info=True)

    # Cycle

    def _process_entry(self, entry: RegistryEntry, now: datetime) -> CycleResult:
        """Run one cycle, containing failures to the process they belong to."""
        try:
            return self._run_cycle(entry, now)
        except RECOVERABLE_ERRORS as e:
            self._record_fault(entry, e, now)
        except RegistryConflictError as e:
            logger.error(
                f"Registry conflict for matching process {entry.process.id}: {e}",
                exc_info=True
            )
            self._complete(entry, CompletionReason.ERROR, now)
        except InvalidTransitionError as e:
            logger.debug(f"Matching process {entry.process.id} finished during its cycle: {e}")
        except Exception as e:
            logger.error(
                f"Error processing escalation for {entry.process.request_id}",
                exc_info=True
            )
            self._record_fault(entry, e, now)

        return self._cycle_result(entry, faulted=True)

    def _run_cycle(self, entry: RegistryEntry, now: datetime) -> CycleResult:
        process = entry.process
        with tracer.start_as_current_span("matching.cycle") as span:
            span.set_attributes({"matching.id": process.id, "request.id": process.request_id})

            reason = self._terminal_reason(entry, now)
            if reason is not None:
                self._complete(entry, reason, now)
                return self._cycle_result(entry)

            escalations = 0
            while True:
                with entry.locked():
                    if not process.is_active():
                        return self._cycle_result(entry)
                    request = process.request.model_copy(deep=True)
                    radius = process.current_radius_km
                    round_number = process.round

                logger.info(
                    f"Processing matching round {round_number} for request: {request.request_id}",
                    extra={"extra_fields": {"radius_km": radius}}
                )
                candidates = self.eligibility.find_eligible(request, radius, now)
                if candidates:
                    break

                logger.warning(
                    f"No eligible donors found for request: {request.request_id} within {radius}km"
                )
                if radius >= self.config.max_radius_km:
                    self._complete(entry, CompletionReason.NO_DONORS_FOUND, now)
                    return self._cycle_result(entry, escalations=escalations)

                apply_mutation(
                    entry,
                    lambda p: p.escalate(self.config.radius_increment_km, self.config.max_radius_km)
                )
                escalations += 1
                logger.info(
                    f"Escalated request: {request.request_id} to {process.current_radius_km}km"
                )

                if not self.config.immediate_zero_donor_retry:
                    apply_mutation(entry, lambda p: p.schedule_next(now, self.escalation_delay))
                    self._write_counters(entry)
                    return self._cycle_result(entry, escalations=escalations)

            scored = self.scoring.score(candidates, request)

            def on_batch_complete(successful: int, failed: int) -> None:
                apply_mutation(entry, lambda p: p.record_dispatch(successful, failed, self.clock()))
                with self._stats_lock:
                    self._notified_total += successful
                    self._failed_total += failed

            dispatch_result = self.dispatcher.dispatch(
                scored, request, round_number, on_batch_complete=on_batch_complete
            )

            self._schedule_after_dispatch(entry, dispatch_result.successful, now)
            self._write_counters(entry)
            self._refresh_history(entry)

            span.set_attributes({
                "matching.notified": dispatch_result.successful,
                "matching.failed": dispatch_result.failed,
            })
            result = self._cycle_result(entry, escalations=escalations)
            result.donors_notified = dispatch_result.successful
            result.donors_failed = dispatch_result.failed
            return result

    def _schedule_after_dispatch(self, entry: RegistryEntry, successful: int, now: datetime) -> None:
        """Close the gate and widen for the next round, unless the process was stopped meanwhile."""
        with entry.locked() as process:
            if not process.is_active() or entry.removed:
                return
            process.consecutive_faults = 0
            if successful <= 0:
                # Nothing delivered: open the gate so the next sweep retries
                if process.next_escalation_at > now:
                    process.next_escalation_at = now
                return

            process.schedule_next(now, self.escalation_delay)
            if not process.escalate(self.config.radius_increment_km, self.config.max_radius_km):
                process.final_round = True
            next_radius = process.current_radius_km
            next_at = process.next_escalation_at

        logger.info(
            f"Scheduled escalation for request: {process.request_id} to {next_radius}km",
            extra={"extra_fields": {"next_escalation_at": next_at.isoformat()}}
        )

    def _terminal_reason(self, entry: RegistryEntry, now: datetime) -> Optional[CompletionReason]:
        with entry.locked() as process:
            request_id = process.request_id
            expired = process.request.is_expired(now)
            final_round = process.final_round

        reason = completion_reason_for_status(self.request_store.get_request_status(request_id))
        if reason is not None:
            return reason
        if expired:
            return CompletionReason.EXPIRED
        if final_round:
            return CompletionReason.RADIUS_EXHAUSTED
        return None

    def _complete(self, entry: RegistryEntry, reason: CompletionReason, now: datetime) -> bool:
        """Move a process to completed, unregister it and write final counters."""
        with entry.locked() as process:
            if process.is_completed():
                return False
            process.complete(reason, now)
            snapshot = process.model_copy(deep=True)

        self.registry.remove(snapshot.id)
        with self._stats_lock:
            self._completed_total += 1
            self._completions_by_reason[snapshot.completion_reason] += 1
            self._history[snapshot.request_id] = snapshot
            while len(self._history) > COMPLETED_HISTORY_SIZE:
                self._history.popitem(last=False)

        logger.info(
            f"Matching completed for request: {snapshot.request_id}, reason: {snapshot.completion_reason}",
            extra={"extra_fields": {
                "matching_id": snapshot.id,
                "total_notified": snapshot.total_notified,
                "round": snapshot.round,
                "radius_km": snapshot.current_radius_km
            }}
        )
        self._write_counters(entry)
        return True

    def _refresh_history(self, entry: RegistryEntry) -> None:
        """Replace the completed snapshot of a process stopped while its cycle was running."""
        with entry.locked() as process:
            if not process.is_completed():
                return
            snapshot = process.model_copy(deep=True)

        with self._stats_lock:
            recorded = self._history.get(snapshot.request_id)
            # A restarted request may already have a newer completed process
            if recorded is not None and recorded.id == snapshot.id:
                self._history[snapshot.request_id] = snapshot

    def _write_counters(self, entry: RegistryEntry) -> None:
        with entry.locked() as process:
            request_id = process.request_id
            counters = MatchingCounters.from_process(process)
        try:
            self.request_store.update_matching_counters(request_id, counters)
        except RECOVERABLE_ERRORS as e:
            logger.error(
                f"Error updating blood request matching data for {request_id}: {e}",
                exc_info=True
            )
            with self._stats_lock:
                self._cycle_faults += 1

    def _record_fault(self, entry: RegistryEntry, error: Exception, now: datetime) -> None:
        with entry.locked() as process:
            if not process.is_active():
                return
            process.consecutive_faults += 1
            if process.next_escalation_at > now:
                process.next_escalation_at = now
            faults = process.consecutive_faults
            request_id = process.request_id

        with self._stats_lock:
            self._cycle_faults += 1

        logger.error(
            f"Matching cycle failed for request: {request_id}, retrying on next sweep",
            extra={"extra_fields": {"consecutive_faults": faults, "error": str(error)}},
            exc_info=True
        )
        if faults == self.config.fault_alert_threshold:
            logger.error(
                f"Matching for request {request_id} has failed {faults} consecutive cycles"
            )

    def _cycle_result(self, entry: RegistryEntry, escalations: int = 0, faulted: bool = False) -> CycleResult:
        with entry.locked() as process:
            return CycleResult(
                process_id=process.id,
                request_id=process.request_id,
                search_radius_km=process.current_radius_km,
                escalations=escalations,
                completion_reason=process.completion_reason,
                faulted=faulted,
            )
