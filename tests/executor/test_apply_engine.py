"""Tests for the apply engine."""

import threading

import pytest

from kubeconverge.config.models import ResourceSpec
from kubeconverge.lock.backends import InMemoryLockBackend
from kubeconverge.lock.manager import LockManager
from kubeconverge.orchestrator.executor import ApplyEngine, ExecutionStatus, Outcome
from kubeconverge.orchestrator.graph import ResourceGraph
from kubeconverge.orchestrator.planner import Action, Planner
from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.providers.memory import InMemoryProvider
from kubeconverge.state.models import ResourceStatus
from kubeconverge.state.store import InMemoryStateStore
from kubeconverge.utils.errors import (
    LockBusyError,
    LockLostError,
    PermanentProviderError,
    StalePlanError,
    StaleWriteError,
    StateError,
    TransientProviderError,
)
from kubeconverge.utils.retry import RetryStrategy


def spec(kind, name, /, depends_on=(), **attributes):
    return ResourceSpec(kind=kind, name=name, attributes=attributes, depends_on=list(depends_on))


class FakeClock:
    """Controllable epoch clock."""

    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def cluster():
    """Network -> cluster -> node group -> ingress, plus an unrelated registry."""
    return [
        spec('vpc', 'main', cidr_block='10.0.0.0/16'),
        spec('subnet', 'a', vpc_id='${vpc.main.id}', cidr_block='10.0.1.0/24'),
        spec('eks_cluster', 'main', name='demo', subnet_id='${subnet.a.id}'),
        spec('node_group', 'workers', cluster='${eks_cluster.main.name}', instance_type='t3.medium'),
        spec('helm_release', 'ingress', depends_on=['node_group.workers'],
             cluster='${eks_cluster.main.name}', chart='ingress-nginx'),
        spec('ecr_repository', 'app', name='app'),
    ]


@pytest.fixture
def registry():
    return ProviderRegistry([
        InMemoryProvider('vpc', replace_fields=['cidr_block']),
        InMemoryProvider('subnet'),
        InMemoryProvider('eks_cluster'),
        InMemoryProvider('node_group', replace_fields=['instance_type'], create_before_destroy=True),
        InMemoryProvider('helm_release'),
        InMemoryProvider('ecr_repository'),
    ])


@pytest.fixture
def store():
    return InMemoryStateStore()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def locks(clock):
    return LockManager(InMemoryLockBackend(), clock=clock, sleep=lambda seconds: None)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(registry, sleeps):
    retry = RetryStrategy(max_retries=2, base_delay=0.5, jitter=False, sleep=sleeps.append)
    return ApplyEngine(registry, max_workers=4, retry=retry, lock_retries=0)


def make_plan(specs, store, registry, destroy=False):
    state, _ = store.read()
    return Planner().plan(ResourceGraph.build(specs), state, registry, destroy=destroy)


def total_calls(registry):
    return sum(len(registry.get(kind).calls) for kind in registry.kinds())


def adopt_legacy_node_group(engine, registry, store, locks):
    """Track a node group created as ``legacy`` under ``node_group.workers``.

    A replace of ``workers`` then creates a new object instead of adopting
    the old one. Returns the old object's provider id.
    """
    legacy = [spec('node_group', 'legacy', instance_type='t3.medium')]
    engine.apply(make_plan(legacy, store, registry), store, locks)
    state, serial = store.read()
    entry = state.get('node_group.legacy')
    moved = entry.model_copy(update={'address': 'node_group.workers', 'name': 'workers'})
    store.write_if_serial_matches(state.without_resource(entry.address).with_resource(moved), serial)
    return entry.provider_id


class FlakyStateStore(InMemoryStateStore):
    """In-memory store whose next ``failures`` writes raise ``error``."""

    def __init__(self, error, failures=1):
        super().__init__()
        self.error = error
        self.failures = failures
        self.attempts = 0

    def write_if_serial_matches(self, new_doc, expected_serial):
        self.attempts += 1
        if self.failures:
            self.failures -= 1
            raise self.error
        return super().write_if_serial_matches(new_doc, expected_serial)


class TestApplyEngineSuccess:
    """Test applying plans that succeed."""

    def test_first_apply_creates_everything(self, engine, cluster, registry, store, locks):
        """Test every resource is created in dependency order and recorded."""
        finished = []
        plan = make_plan(cluster, store, registry)

        report = engine.apply(plan, store, locks, progress_callback=finished.append)

        assert report.succeeded
        assert report.exit_code == 0
        assert set(report.outcomes().values()) == {Outcome.APPLIED}
        assert report.summary()['applied'] == 6

        order = [result.address for result in finished if result.status == ExecutionStatus.SUCCESS]
        chain = ['vpc.main', 'subnet.a', 'eks_cluster.main', 'node_group.workers', 'helm_release.ingress']
        assert [order.index(a) for a in chain] == sorted(order.index(a) for a in chain)

        state, serial = store.read()
        assert serial == report.final_serial == 6
        assert state.addresses() == sorted(s.address for s in cluster)
        assert locks.current(store.describe()) is None

    def test_references_are_resolved(self, engine, cluster, registry, store, locks):
        """Test consumers receive their producers' outputs."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        state, _ = store.read()

        vpc_id = state.get('vpc.main').provider_id
        assert state.get('subnet.a').resolved_attributes['vpc_id'] == vpc_id
        assert state.get('subnet.a').attributes['vpc_id'] == '${vpc.main.id}'
        assert registry.get('subnet').attributes_of('a')['vpc_id'] == vpc_id
        assert registry.get('node_group').attributes_of('workers')['cluster'] == 'demo'
        assert state.get('helm_release.ingress').dependencies == ['eks_cluster.main', 'node_group.workers']

    def test_second_apply_is_noop(self, engine, cluster, registry, store, locks):
        """Test applying an unchanged declaration makes no provider calls or writes."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        calls = total_calls(registry)
        _, serial = store.read()

        plan = make_plan(cluster, store, registry)
        report = engine.apply(plan, store, locks)

        assert not plan.has_changes()
        assert report.succeeded
        assert set(report.outcomes().values()) == {Outcome.UNCHANGED}
        assert total_calls(registry) == calls
        assert store.read()[1] == serial

    def test_removed_resource_is_deleted(self, engine, cluster, registry, store, locks):
        """Test dropping a declaration deletes only that resource."""
        engine.apply(make_plan(cluster, store, registry), store, locks)

        report = engine.apply(make_plan(cluster[:4] + cluster[5:], store, registry), store, locks)

        assert report.outcomes()['helm_release.ingress'] == Outcome.APPLIED
        assert report.outcomes()['vpc.main'] == Outcome.UNCHANGED
        assert registry.get('helm_release').names() == []
        assert not store.read()[0].has('helm_release.ingress')

    def test_destroy_in_reverse_order(self, engine, cluster, registry, store, locks):
        """Test destroy removes consumers before producers and empties state."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        finished = []

        report = engine.apply(make_plan(cluster, store, registry, destroy=True), store, locks,
                              progress_callback=finished.append)

        assert report.succeeded
        order = [result.address for result in finished]
        assert order.index('helm_release.ingress') < order.index('node_group.workers')
        assert order.index('node_group.workers') < order.index('eks_cluster.main')
        assert order.index('subnet.a') < order.index('vpc.main')
        assert store.read()[0].resources == {}
        assert all(registry.get(kind).names() == [] for kind in registry.kinds())

    def test_replace_destroy_then_create(self, engine, cluster, registry, store, locks):
        """Test a forcing change recreates the object and updates its consumers."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        old_id = store.read()[0].get('vpc.main').provider_id
        cluster[0] = spec('vpc', 'main', cidr_block='10.1.0.0/16')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        state, _ = store.read()
        new_id = state.get('vpc.main').provider_id
        assert report.succeeded
        assert new_id != old_id
        assert state.get('subnet.a').resolved_attributes['vpc_id'] == new_id
        assert registry.get('vpc').operations()[-2:] == [('delete', 'main'), ('create', 'main')]

    def test_create_before_destroy_deletes_deposed_object(self, engine, registry, store, locks):
        """Test the old object is deleted only after its replacement exists."""
        node_groups = registry.get('node_group')
        old_id = adopt_legacy_node_group(engine, registry, store, locks)

        specs = [spec('node_group', 'workers', instance_type='t3.large')]
        report = engine.apply(make_plan(specs, store, registry), store, locks)

        assert report.succeeded
        ops = node_groups.operations()
        assert ops.index(('create', 'workers')) < ops.index(('delete', 'legacy'))
        assert node_groups.names() == ['workers']
        workers = store.read()[0].get('node_group.workers')
        assert workers.provider_id != old_id
        assert workers.deposed == []

    def test_create_before_destroy_keeps_adopted_object(self, engine, cluster, registry, store, locks):
        """Test a replacement that adopted the old object does not delete it."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        old_id = store.read()[0].get('node_group.workers').provider_id
        cluster[3] = spec('node_group', 'workers', cluster='${eks_cluster.main.name}', instance_type='t3.large')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        assert report.succeeded
        assert registry.get('node_group').operations('delete') == []
        assert store.read()[0].get('node_group.workers').provider_id == old_id
        assert registry.get('node_group').attributes_of('workers')['instance_type'] == 't3.large'

    def test_failed_deposed_delete_is_tracked(self, engine, registry, store, locks):
        """Test a deposed object whose delete fails is recorded and removed by the next apply."""
        node_groups = registry.get('node_group')
        old_id = adopt_legacy_node_group(engine, registry, store, locks)
        node_groups.fail_next('delete', name='legacy')
        specs = [spec('node_group', 'workers', instance_type='t3.large')]

        report = engine.apply(make_plan(specs, store, registry), store, locks)

        assert not report.succeeded
        workers = store.read()[0].get('node_group.workers')
        assert workers.status == ResourceStatus.APPLIED
        assert workers.provider_id not in (None, old_id)
        assert workers.deposed == [old_id]
        assert node_groups.names() == ['legacy', 'workers']

        plan = make_plan(specs, store, registry)
        assert [a.id for a in plan.changes()] == [f'delete:node_group.workers@{old_id}']
        report = engine.apply(plan, store, locks)

        assert report.succeeded
        assert node_groups.names() == ['workers']
        assert node_groups.operations('create') == [('create', 'legacy'), ('create', 'workers')]
        final = store.read()[0].get('node_group.workers')
        assert final.provider_id == workers.provider_id
        assert final.deposed == []
        assert not make_plan(specs, store, registry).has_changes()

    def test_destroy_removes_deposed_objects(self, engine, registry, store, locks):
        """Test destroy deletes both the current and the left-behind object."""
        node_groups = registry.get('node_group')
        adopt_legacy_node_group(engine, registry, store, locks)
        node_groups.fail_next('delete', name='legacy')
        specs = [spec('node_group', 'workers', instance_type='t3.large')]
        engine.apply(make_plan(specs, store, registry), store, locks)

        report = engine.apply(make_plan(specs, store, registry, destroy=True), store, locks)

        assert report.succeeded
        assert node_groups.names() == []
        assert store.read()[0].resources == {}


class TestApplyEngineFailures:
    """Test failure isolation, retries and halting."""

    def test_partial_failure_isolates_subtree(self, engine, cluster, registry, store, locks):
        """Test a failed node group skips its dependents and nothing else."""
        registry.get('node_group').fail_next('create', name='workers')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        outcomes = report.outcomes()
        assert outcomes['node_group.workers'] == Outcome.FAILED
        assert outcomes['helm_release.ingress'] == Outcome.SKIPPED
        for address in ('vpc.main', 'subnet.a', 'eks_cluster.main', 'ecr_repository.app'):
            assert outcomes[address] == Outcome.APPLIED
        assert report.exit_code == 1
        assert isinstance(report.first_error(), PermanentProviderError)
        assert report.results['create:helm_release.ingress'].skipped_reason == (
            'dependency create:node_group.workers did not succeed'
        )
        assert registry.get('helm_release').calls == []

        state, _ = store.read()
        assert state.get('node_group.workers').status == ResourceStatus.TAINTED
        assert 'Injected create failure' in state.get('node_group.workers').error
        assert not state.has('helm_release.ingress')

    def test_retry_after_partial_failure(self, engine, cluster, registry, store, locks):
        """Test the next apply picks up exactly the failed subtree."""
        registry.get('node_group').fail_next('create', name='workers')
        engine.apply(make_plan(cluster, store, registry), store, locks)

        plan = make_plan(cluster, store, registry)
        report = engine.apply(plan, store, locks)

        assert [a.id for a in plan.changes()] == ['create:node_group.workers', 'create:helm_release.ingress']
        assert report.succeeded
        assert store.read()[0].get('node_group.workers').status == ResourceStatus.APPLIED

    def test_transient_failure_is_retried(self, engine, cluster, registry, store, locks, sleeps):
        """Test transient errors are retried with backoff."""
        registry.get('vpc').fail_next(
            'create', name='main', error=lambda: TransientProviderError('Rate exceeded'), times=2
        )

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        assert report.succeeded
        assert report.results['create:vpc.main'].attempts == 3
        assert sleeps == [0.5, 1.0]

    def test_transient_failure_exhausts_retries(self, engine, cluster, registry, store, locks):
        """Test a persistently transient error ends as a permanent failure."""
        registry.get('ecr_repository').fail_next(
            'create', error=lambda: TransientProviderError('timeout'), times=None
        )

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        result = report.results['create:ecr_repository.app']
        assert result.status == ExecutionStatus.FAILED
        assert isinstance(result.error, PermanentProviderError)
        assert 'Gave up after 3 attempts' in result.error.message
        assert report.outcomes()['helm_release.ingress'] == Outcome.APPLIED

    def test_permanent_failure_is_not_retried(self, engine, cluster, registry, store, locks, sleeps):
        """Test permanent errors fail on the first attempt."""
        registry.get('vpc').fail_next('create')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        assert report.results['create:vpc.main'].attempts == 1
        assert sleeps == []
        assert report.addresses_with(Outcome.SKIPPED) == [
            'eks_cluster.main', 'helm_release.ingress', 'node_group.workers', 'subnet.a'
        ]

    def test_delete_failure_taints_existing_entry(self, engine, cluster, registry, store, locks):
        """Test a failed delete keeps the object tracked and tainted."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        registry.get('helm_release').fail_next('delete')

        report = engine.apply(make_plan(cluster, store, registry, destroy=True), store, locks)

        entry = store.read()[0].get('helm_release.ingress')
        assert entry.status == ResourceStatus.TAINTED
        assert entry.provider_id is not None
        assert report.outcomes()['node_group.workers'] == Outcome.SKIPPED
        assert report.outcomes()['ecr_repository.app'] == Outcome.APPLIED

    def test_transient_state_write_is_retried(self, engine, registry, locks, sleeps):
        """Test a state write that fails transiently is retried without repeating the create."""
        store = FlakyStateStore(ConnectionError("connection reset"))
        specs = [spec('vpc', 'main', cidr_block='10.0.0.0/16')]

        report = engine.apply(make_plan(specs, store, registry), store, locks)

        assert report.succeeded
        assert store.attempts == 2
        assert sleeps == [0.5]
        assert registry.get('vpc').operations() == [('create', 'main')]
        assert store.read()[0].get('vpc.main').provider_id == 'vpc-0001'

    def test_failed_state_write_keeps_created_object(self, engine, registry, locks, sleeps):
        """Test a create whose state write fails is tainted with its provider id and outputs."""
        store = FlakyStateStore(StateError("disk full"))
        specs = [spec('vpc', 'main', cidr_block='10.0.0.0/16')]

        report = engine.apply(make_plan(specs, store, registry), store, locks)

        assert not report.succeeded
        assert sleeps == []
        entry = store.read()[0].get('vpc.main')
        assert entry.status == ResourceStatus.TAINTED
        assert entry.error == 'disk full'
        assert entry.provider_id == 'vpc-0001'
        assert entry.outputs['id'] == 'vpc-0001'

        plan = make_plan(specs, store, registry)
        assert [a.id for a in plan.actions] == ['delete:vpc.main', 'create:vpc.main']
        assert plan.get('delete:vpc.main').provider_id == 'vpc-0001'

    def test_fail_fast_stops_independent_branches(self, registry, cluster, store, locks):
        """Test fail-fast skips work that would otherwise have run."""
        engine = ApplyEngine(registry, max_workers=1, fail_fast=True, lock_retries=0,
                             retry=RetryStrategy(max_retries=0))
        registry.get('ecr_repository').fail_next('create')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        assert report.outcomes()['ecr_repository.app'] == Outcome.FAILED
        assert report.outcomes()['vpc.main'] == Outcome.SKIPPED
        assert 'fail-fast' in report.results['create:vpc.main'].skipped_reason
        assert registry.get('vpc').calls == []

    def test_without_fail_fast_independent_branches_continue(self, registry, cluster, store, locks):
        """Test the default keeps applying unrelated resources."""
        engine = ApplyEngine(registry, max_workers=1, lock_retries=0, retry=RetryStrategy(max_retries=0))
        registry.get('ecr_repository').fail_next('create')

        report = engine.apply(make_plan(cluster, store, registry), store, locks)

        assert report.outcomes()['vpc.main'] == Outcome.APPLIED
        assert report.outcomes()['helm_release.ingress'] == Outcome.APPLIED


class TestApplyEngineSafety:
    """Test staleness, locking and cancellation."""

    def test_stale_plan_is_rejected(self, engine, cluster, registry, store, locks):
        """Test a plan computed before another apply cannot be executed."""
        plan = make_plan(cluster, store, registry)
        engine.apply(plan, store, locks)
        calls = total_calls(registry)

        with pytest.raises(StalePlanError) as exc_info:
            engine.apply(plan, store, locks)

        assert exc_info.value.plan_serial == 0
        assert exc_info.value.state_serial == 6
        assert total_calls(registry) == calls
        assert locks.current(store.describe()) is None

    def test_busy_lock(self, engine, cluster, registry, store, locks):
        """Test apply refuses to run while another operator holds the lock."""
        locks.acquire(store.describe(), holder='bob@ci:42')

        with pytest.raises(LockBusyError) as exc_info:
            engine.apply(make_plan(cluster, store, registry), store, locks)

        assert exc_info.value.holder == 'bob@ci:42'
        assert total_calls(registry) == 0
        assert store.read()[1] == 0
        assert locks.current(store.describe()).holder == 'bob@ci:42'

    def test_racing_operators(self, registry, cluster, store):
        """Test two concurrent applies never both execute."""
        for kind in registry.kinds():
            registry.get(kind).latency = 0.02
        locks = LockManager(InMemoryLockBackend())
        plans = [make_plan(cluster, store, registry) for _ in range(2)]
        barrier = threading.Barrier(2)
        reports, errors = [], []

        def operator(index):
            engine = ApplyEngine(registry, lock_retries=0)
            barrier.wait()
            try:
                reports.append(engine.apply(plans[index], store, locks, holder=f'operator-{index}'))
            except (LockBusyError, StalePlanError) as e:
                errors.append(e)

        threads = [threading.Thread(target=operator, args=(i,)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(reports) == 1
        assert len(errors) == 1
        assert reports[0].succeeded
        assert len(registry.get('vpc').operations('create')) == 1

    def test_lease_lost_halts_scheduling(self, engine, cluster, registry, store, locks, clock):
        """Test no new action starts once the lock lease has expired."""
        engine.max_workers = 1

        def expire_after_first(result):
            if result.status == ExecutionStatus.SUCCESS and result.address == 'ecr_repository.app':
                clock.advance(engine.lease_seconds + 1)

        report = engine.apply(make_plan(cluster, store, registry), store, locks,
                              progress_callback=expire_after_first)

        assert isinstance(report.error, LockLostError)
        assert report.exit_code == 1
        assert report.outcomes()['ecr_repository.app'] == Outcome.APPLIED
        assert report.outcomes()['vpc.main'] == Outcome.SKIPPED
        assert report.results['create:vpc.main'].skipped_reason == 'state lock lost'

    def test_cancel(self, engine, cluster, registry, store, locks):
        """Test cancellation lets in-flight work finish and skips the rest."""
        engine.max_workers = 1

        def cancel_after_first(result):
            if result.status == ExecutionStatus.SUCCESS:
                engine.cancel()

        report = engine.apply(make_plan(cluster, store, registry), store, locks,
                              progress_callback=cancel_after_first)

        assert report.cancelled
        assert not report.succeeded
        assert report.summary()['applied'] == 1
        assert report.summary()['skipped'] == 5
        assert store.read()[1] == 1

    def test_concurrent_writer_is_fatal(self, engine, cluster, registry, store, locks):
        """Test an out-of-band state write stops the run."""
        engine.max_workers = 1
        interfered = []

        def interfere(result):
            if result.status == ExecutionStatus.SUCCESS and not interfered:
                doc, serial = store.read()
                store.write_if_serial_matches(doc, serial)
                interfered.append(serial)

        report = engine.apply(make_plan(cluster, store, registry), store, locks,
                              progress_callback=interfere)

        assert isinstance(report.error, StaleWriteError)
        failed = [r for r in report.results.values() if r.status == ExecutionStatus.FAILED]
        assert len(failed) == 1
        assert isinstance(failed[0].error, StaleWriteError)
        assert report.summary()['skipped'] == 4

    def test_max_workers_bounds_concurrency(self, registry, store, locks):
        """Test no more than max_workers provider calls run at once."""
        repositories = registry.get('ecr_repository')
        repositories.latency = 0.05
        specs = [spec('ecr_repository', f'repo{i}', name=f'repo{i}') for i in range(8)]
        engine = ApplyEngine(registry, max_workers=3, lock_retries=0)

        report = engine.apply(make_plan(specs, store, registry), store, locks)

        assert report.succeeded
        assert 1 < repositories.max_concurrency <= 3
        assert store.read()[1] == 8

    def test_noop_actions_make_no_calls(self, engine, cluster, registry, store, locks):
        """Test unchanged resources in a mixed plan are recorded without provider calls."""
        engine.apply(make_plan(cluster, store, registry), store, locks)
        cluster[5] = spec('ecr_repository', 'app', name='app', image_scanning=True)
        vpc_calls = len(registry.get('vpc').calls)

        plan = make_plan(cluster, store, registry)
        report = engine.apply(plan, store, locks)

        assert [a.id for a in plan.changes()] == ['update:ecr_repository.app']
        assert report.results['noop:vpc.main'].status == ExecutionStatus.UNCHANGED
        assert report.results['noop:vpc.main'].action == Action.NOOP
        assert len(registry.get('vpc').calls) == vpc_calls
