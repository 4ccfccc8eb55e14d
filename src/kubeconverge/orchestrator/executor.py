"""Apply engine: executes a plan under a held lock with incremental state writes."""

import threading
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional

from kubeconverge.config.models import EngineSettings
from kubeconverge.config.references import UnresolvedReference, resolve_references
from kubeconverge.lock.manager import LeaseKeeper, LockManager
from kubeconverge.providers.base import ProviderAdapter, ProviderRegistry
from kubeconverge.state.models import ResourceState, ResourceStatus, StateDocument
from kubeconverge.state.store import StateStore
from kubeconverge.utils.errors import (
    ErrorContext,
    LockLostError,
    PermanentProviderError,
    ReconcileError,
    ResourceNotFoundError,
    StalePlanError,
    StaleWriteError,
)
from kubeconverge.utils.logging import get_logger, resource_logger
from kubeconverge.utils.retry import RetryStrategy
from .planner import Action, Plan, PlannedAction

logger = get_logger(__name__)


class ExecutionStatus(Enum):
    """Status of one planned action."""
    PENDING = "pending"
    SUCCESS = "success"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


class Outcome(str, Enum):
    """Per-resource result of an apply."""
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class ActionResult:
    """Result of executing a single planned action."""

    action_id: str
    address: str
    action: Action
    status: ExecutionStatus
    error: Optional[ReconcileError] = None
    skipped_reason: Optional[str] = None
    attempts: int = 0
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds

    def is_success(self) -> bool:
        return self.status in (ExecutionStatus.SUCCESS, ExecutionStatus.UNCHANGED)

    def is_failed(self) -> bool:
        return self.status == ExecutionStatus.FAILED


@dataclass
class ApplyReport:
    """Outcome of one apply run."""

    results: Dict[str, ActionResult] = field(default_factory=dict)
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: float = 0.0  # seconds
    final_serial: int = 0
    error: Optional[ReconcileError] = None
    cancelled: bool = False

    def outcomes(self) -> Dict[str, Outcome]:
        """Collapse action results to one outcome per address.

        A replace contributes two actions; the address failed if either did.
        """
        outcomes: Dict[str, Outcome] = {}
        for result in self.results.values():
            if result.status == ExecutionStatus.FAILED:
                outcome = Outcome.FAILED
            elif result.status == ExecutionStatus.SKIPPED:
                outcome = Outcome.SKIPPED
            elif result.status == ExecutionStatus.UNCHANGED:
                outcome = Outcome.UNCHANGED
            else:
                outcome = Outcome.APPLIED
            previous = outcomes.get(result.address)
            if previous is None or _OUTCOME_RANK[outcome] > _OUTCOME_RANK[previous]:
                outcomes[result.address] = outcome
        return outcomes

    def addresses_with(self, outcome: Outcome) -> List[str]:
        return sorted(address for address, o in self.outcomes().items() if o == outcome)

    @property
    def succeeded(self) -> bool:
        if self.error is not None or self.cancelled:
            return False
        return all(result.is_success() for result in self.results.values())

    def first_error(self) -> Optional[ReconcileError]:
        """The error that blocked the run, else the first failed action's."""
        if self.error is not None:
            return self.error
        for result in self.results.values():
            if result.error is not None:
                return result.error
        return None

    @property
    def exit_code(self) -> int:
        return 0 if self.succeeded else 1

    def summary(self) -> Dict[str, int]:
        counts = {outcome.value: 0 for outcome in Outcome}
        for outcome in self.outcomes().values():
            counts[outcome.value] += 1
        return counts


_OUTCOME_RANK = {
    Outcome.UNCHANGED: 0,
    Outcome.APPLIED: 1,
    Outcome.SKIPPED: 2,
    Outcome.FAILED: 3,
}

ProgressCallback = Callable[[ActionResult], None]


class ApplyEngine:
    """Executes plans against provider adapters.

    Independent actions run concurrently up to ``max_workers``; an action
    starts only after every action it depends on succeeded. State is written
    after each successful action, so a crash loses at most the in-flight
    provider calls.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        max_workers: int = 10,
        retry: Optional[RetryStrategy] = None,
        fail_fast: bool = False,
        lock_retries: int = 5,
        lock_retry_base_delay: float = 1.0,
        lease_seconds: float = 60.0,
        renew_fraction: float = 1 / 3
    ):
        """Initialize apply engine.

        Args:
            registry: Adapters by resource kind
            max_workers: Maximum number of provider calls in flight
            retry: Strategy for transient provider failures
            fail_fast: Stop scheduling new actions after the first failure
            lock_retries: Lock acquisition retries before giving up
            lock_retry_base_delay: First backoff delay for lock acquisition
            lease_seconds: Lease requested for the state lock
            renew_fraction: Fraction of the lease between renewals
        """
        self.registry = registry
        self.max_workers = max_workers
        self.retry = retry or RetryStrategy()
        self.fail_fast = fail_fast
        self.lock_retries = lock_retries
        self.lock_retry_base_delay = lock_retry_base_delay
        self.lease_seconds = lease_seconds
        self.renew_fraction = renew_fraction
        self._cancelled = threading.Event()

    @classmethod
    def from_settings(cls, registry: ProviderRegistry, settings: EngineSettings) -> "ApplyEngine":
        return cls(
            registry,
            max_workers=settings.max_workers,
            retry=RetryStrategy(
                max_retries=settings.max_retries,
                base_delay=settings.retry_base_delay,
                max_delay=settings.retry_max_delay,
            ),
            fail_fast=settings.fail_fast,
            lock_retries=settings.lock_retries,
            lock_retry_base_delay=settings.lock_retry_base_delay,
            lease_seconds=settings.lease_seconds,
            renew_fraction=settings.renew_fraction,
        )

    def cancel(self) -> None:
        """Stop scheduling new actions; in-flight calls finish and are recorded."""
        logger.warning("Cancellation requested; waiting for in-flight actions")
        self._cancelled.set()

    def apply(
        self,
        plan: Plan,
        state_store: StateStore,
        lock_manager: LockManager,
        holder: Optional[str] = None,
        lock_key: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None
    ) -> ApplyReport:
        """Execute ``plan``.

        Raises:
            LockBusyError: If the state lock stays held after bounded retries
            StalePlanError: If state changed since the plan was computed;
                nothing has been executed in that case
        """
        self._cancelled.clear()
        lock_key = lock_key or state_store.describe()
        operation = "destroy" if plan.destroy else "apply"

        with lock_manager.hold(
            lock_key,
            holder=holder,
            lease_seconds=self.lease_seconds,
            renew_fraction=self.renew_fraction,
            retries=self.lock_retries,
            base_delay=self.lock_retry_base_delay,
            operation=operation
        ) as lease:
            state, serial = state_store.read()
            self._check_fresh(plan, state, serial)

            logger.info(f"Applying {len(plan.changes())} changes "
                        f"({len(plan.actions)} actions) at serial {serial}")
            run = _ApplyRun(self, plan, state_store, state, lease, progress_callback)
            report = run.execute()

        if report.succeeded:
            logger.info(f"Apply complete in {report.duration:.1f}s: {report.summary()}")
        else:
            logger.error(f"Apply finished with problems in {report.duration:.1f}s: {report.summary()}")
        return report

    @staticmethod
    def _check_fresh(plan: Plan, state: StateDocument, serial: int) -> None:
        if serial != plan.state_serial:
            raise StalePlanError(plan.state_serial, serial)
        if serial > 0 and plan.state_lineage and state.lineage != plan.state_lineage:
            raise StalePlanError(
                plan.state_serial,
                serial,
                reason=f"Plan belongs to state lineage {plan.state_lineage}, "
                       f"store holds lineage {state.lineage}"
            )

    def adapter_for(self, action: PlannedAction) -> ProviderAdapter:
        return self.registry.get(action.kind)


class _ApplyRun:
    """Mutable bookkeeping for a single ``ApplyEngine.apply`` call."""

    def __init__(
        self,
        engine: ApplyEngine,
        plan: Plan,
        store: StateStore,
        state: StateDocument,
        lease: LeaseKeeper,
        progress_callback: Optional[ProgressCallback]
    ):
        self.engine = engine
        self.plan = plan
        self.store = store
        self.state = state
        self.lease = lease
        self.progress_callback = progress_callback
        self.results: Dict[str, ActionResult] = {}
        self.fatal: Optional[ReconcileError] = None
        self.halt_reason: Optional[str] = None
        self._mutex = threading.Lock()
        # Provider results not yet committed, keyed by action id
        self._unrecorded: Dict[str, ResourceState] = {}

    def execute(self) -> ApplyReport:
        start_time = datetime.now(timezone.utc)
        pending: Dict[str, PlannedAction] = {action.id: action for action in self.plan.actions}
        running: Dict[Future, PlannedAction] = {}

        with ThreadPoolExecutor(max_workers=self.engine.max_workers,
                                thread_name_prefix="apply") as pool:
            while pending or running:
                self._check_halt()

                if self.halt_reason:
                    for action in list(pending.values()):
                        self._skip(action, self.halt_reason)
                    pending.clear()
                else:
                    self._schedule(pool, pending, running)

                if not running:
                    if pending:
                        for action in list(pending.values()):
                            self._skip(action, "dependencies can never be satisfied")
                        pending.clear()
                    continue

                done, _ = wait(list(running), return_when=FIRST_COMPLETED)
                for future in done:
                    action = running.pop(future)
                    self._finish(action, future)

        end_time = datetime.now(timezone.utc)
        with self._mutex:
            final_serial = self.state.serial

        return ApplyReport(
            results={action.id: self.results[action.id] for action in self.plan.actions},
            start_time=start_time,
            end_time=end_time,
            duration=(end_time - start_time).total_seconds(),
            final_serial=final_serial,
            error=self.fatal,
            cancelled=self.engine._cancelled.is_set(),
        )

    def _check_halt(self) -> None:
        if self.halt_reason:
            return
        if self.fatal is not None:
            self.halt_reason = f"halted: {self.fatal.message}"
        elif self.lease.lost:
            self.fatal = LockLostError(self.lease.lock.key, self.lease.lock.holder)
            self.halt_reason = "state lock lost"
        elif self.engine._cancelled.is_set():
            self.halt_reason = "cancelled"

    def _schedule(
        self,
        pool: ThreadPoolExecutor,
        pending: Dict[str, PlannedAction],
        running: Dict[Future, PlannedAction]
    ) -> None:
        # Plan order is topological, so one pass settles chains of skips
        for action in list(pending.values()):
            blocked_by = None
            waiting = False
            for dep in action.depends_on:
                result = self.results.get(dep)
                if result is None:
                    if dep in pending or dep in {a.id for a in running.values()}:
                        waiting = True
                        continue
                    blocked_by = dep
                    break
                if not result.is_success():
                    blocked_by = dep
                    break

            if blocked_by is not None:
                del pending[action.id]
                self._skip(action, f"dependency {blocked_by} did not succeed")
                continue
            if waiting:
                continue

            if action.is_noop:
                del pending[action.id]
                self._record(ActionResult(
                    action_id=action.id,
                    address=action.address,
                    action=action.action,
                    status=ExecutionStatus.UNCHANGED,
                ))
                continue

            if len(running) >= self.engine.max_workers:
                continue
            del pending[action.id]
            running[pool.submit(self._execute, action)] = action

    def _finish(self, action: PlannedAction, future: Future) -> None:
        try:
            result = future.result()
        except Exception as e:
            error = PermanentProviderError(
                f"Unexpected error applying {action.address}: {e}",
                context=ErrorContext(resource_id=action.address, resource_type=action.kind,
                                     operation=action.action.value),
                cause=e
            )
            result = ActionResult(action.id, action.address, action.action,
                                  ExecutionStatus.FAILED, error=error)
        self._record(result)

        if result.is_failed() and self.engine.fail_fast and not self.halt_reason:
            self.halt_reason = f"fail-fast after {action.address} failed"

    def _skip(self, action: PlannedAction, reason: str) -> None:
        logger.info(f"Skipping {action.describe()}: {reason}")
        self._record(ActionResult(
            action_id=action.id,
            address=action.address,
            action=action.action,
            status=ExecutionStatus.SKIPPED,
            skipped_reason=reason,
        ))

    def _record(self, result: ActionResult) -> None:
        self.results[result.action_id] = result
        if self.progress_callback:
            self.progress_callback(result)

    # Worker side

    def _execute(self, action: PlannedAction) -> ActionResult:
        log = resource_logger(logger, action.address, action.action.value)
        context = ErrorContext(
            resource_id=action.address, resource_type=action.kind, operation=action.action.value
        )
        attempts = [1]
        start_time = datetime.now(timezone.utc)

        def on_retry(attempt: int, error: ReconcileError, delay: float) -> None:
            attempts[0] = attempt + 1
            log.warning(f"Retrying {action.describe()} in {delay:.1f}s: {error.message}")

        log.info(f"Starting {action.describe()}")
        try:
            adapter = self.engine.adapter_for(action)
            if action.action == Action.DELETE:
                self._delete(action, adapter, context, on_retry)
            else:
                self._converge(action, adapter, context, on_retry)
        except ReconcileError as error:
            if isinstance(error, StaleWriteError):
                self._set_fatal(error)
            else:
                self._taint(action, error)
            end_time = datetime.now(timezone.utc)
            log.error(f"Failed {action.describe()} [{error.classification.value}]: {error.message}")
            return ActionResult(
                action_id=action.id,
                address=action.address,
                action=action.action,
                status=ExecutionStatus.FAILED,
                error=error,
                attempts=attempts[0],
                start_time=start_time,
                end_time=end_time,
                duration=(end_time - start_time).total_seconds(),
            )

        end_time = datetime.now(timezone.utc)
        duration = (end_time - start_time).total_seconds()
        log.info(f"Completed {action.describe()} in {duration:.1f}s", extra={'duration': duration})
        return ActionResult(
            action_id=action.id,
            address=action.address,
            action=action.action,
            status=ExecutionStatus.SUCCESS,
            attempts=attempts[0],
            start_time=start_time,
            end_time=end_time,
            duration=duration,
        )

    def _converge(self, action: PlannedAction, adapter: ProviderAdapter, context, on_retry) -> None:
        with self._mutex:
            state = self.state
        try:
            resolved = resolve_references(action.attributes, state.outputs_of)
        except UnresolvedReference as e:
            raise PermanentProviderError(
                f"Cannot resolve reference {e.reference} for {action.address}",
                context=context,
                suggestions=[f"Check that {e.reference.address} exposes output '{e.reference.output}'"]
            )

        if action.action == Action.CREATE:
            provider_id, outputs = self.engine.retry.execute_with_retry(
                adapter.create, action.name, resolved, context=context, on_retry=on_retry
            )
        else:
            provider_id = action.provider_id
            outputs = self.engine.retry.execute_with_retry(
                adapter.update, provider_id, resolved, context=context, on_retry=on_retry
            )

        def record(doc: StateDocument) -> StateDocument:
            current = doc.get(action.address)
            deposed = list(current.deposed) if current is not None else []
            if (action.action == Action.CREATE and current is not None and current.provider_id
                    and current.provider_id != provider_id and current.provider_id not in deposed):
                deposed.append(current.provider_id)
            entry = ResourceState(
                address=action.address,
                kind=action.kind,
                name=action.name,
                attributes=action.attributes,
                resolved_attributes=resolved,
                provider_id=provider_id,
                outputs=outputs or {},
                dependencies=action.dependencies,
                status=ResourceStatus.APPLIED,
                deposed=deposed,
            )
            self._unrecorded[action.id] = entry
            return doc.with_resource(entry)

        self._commit(record, context)
        with self._mutex:
            self._unrecorded.pop(action.id, None)

    def _delete(self, action: PlannedAction, adapter: ProviderAdapter, context, on_retry) -> None:
        log = resource_logger(logger, action.address, action.action.value)

        if action.deposed:
            with self._mutex:
                current = self.state.get(action.address)
            if current is None or action.provider_id not in current.deposed:
                if current is not None and current.provider_id == action.provider_id:
                    log.warning(f"Replacement of {action.address} adopted {action.provider_id}; "
                                f"keeping it")
                else:
                    log.info(f"{action.provider_id} is no longer deposed under {action.address}")
                return

        if action.provider_id:
            def delete() -> None:
                try:
                    adapter.delete(action.provider_id)
                except ResourceNotFoundError:
                    log.info(f"{action.address} ({action.provider_id}) already gone")

            self.engine.retry.execute_with_retry(delete, context=context, on_retry=on_retry)

        if action.deposed:
            self._commit(lambda doc: _forget_deposed(doc, action.address, action.provider_id), context)
        else:
            self._commit(lambda doc: _forget_current(doc, action.address), context)

    def _taint(self, action: PlannedAction, error: ReconcileError) -> None:
        log = resource_logger(logger, action.address, action.action.value)
        if action.deposed:
            log.warning(f"{action.provider_id} stays deposed under {action.address} "
                        f"and is deleted on the next apply")
            return

        with self._mutex:
            current = self.state.get(action.address)
            unrecorded = self._unrecorded.pop(action.id, None)

        if unrecorded is not None:
            tainted = unrecorded.model_copy(update={
                'status': ResourceStatus.TAINTED, 'error': error.message
            })
        elif action.action == Action.CREATE and (current is None or not current.provider_id):
            tainted = ResourceState(
                address=action.address,
                kind=action.kind,
                name=action.name,
                attributes=action.attributes,
                dependencies=action.dependencies,
                status=ResourceStatus.TAINTED,
                error=error.message,
                deposed=list(current.deposed) if current is not None else [],
            )
        elif current is not None:
            tainted = current.model_copy(update={
                'status': ResourceStatus.TAINTED, 'error': error.message
            })
        else:
            return

        try:
            self._commit(lambda doc: doc.with_resource(tainted))
        except StaleWriteError as e:
            self._set_fatal(e)
        except ReconcileError as e:
            if tainted.provider_id:
                log.error(f"Could not record taint on {action.address}; "
                          f"{tainted.provider_id} is untracked: {e.message}")
            else:
                log.error(f"Could not record taint on {action.address}: {e.message}")

    def _commit(self, mutate: Callable[[StateDocument], Optional[StateDocument]],
                context: Optional[ErrorContext] = None) -> None:
        """Write the next state document; serialized across workers.

        Transient store failures are retried with the engine's strategy.
        ``mutate`` may return None when there is nothing to write.
        """
        with self._mutex:
            new_doc = mutate(self.state)
            if new_doc is None:
                return
            self.state = self.engine.retry.execute_with_retry(
                self.store.write_if_serial_matches, new_doc, self.state.serial,
                context=context or ErrorContext(operation="write state")
            )
            logger.debug(f"State written at serial {self.state.serial}",
                         extra={'serial': self.state.serial})

    def _set_fatal(self, error: ReconcileError) -> None:
        with self._mutex:
            if self.fatal is None:
                self.fatal = error


def _forget_deposed(doc: StateDocument, address: str, provider_id: str) -> Optional[StateDocument]:
    entry = doc.get(address)
    if entry is None or provider_id not in entry.deposed:
        return None
    remaining = [pid for pid in entry.deposed if pid != provider_id]
    if entry.status == ResourceStatus.ABSENT and not remaining:
        return doc.without_resource(address)
    return doc.with_resource(entry.model_copy(update={'deposed': remaining}))


def _forget_current(doc: StateDocument, address: str) -> StateDocument:
    """Drop the current object; an entry still owning deposed objects stays as absent."""
    entry = doc.get(address)
    if entry is None or not entry.deposed:
        return doc.without_resource(address)
    return doc.with_resource(ResourceState(
        address=entry.address,
        kind=entry.kind,
        name=entry.name,
        dependencies=entry.dependencies,
        status=ResourceStatus.ABSENT,
        deposed=entry.deposed,
    ))
