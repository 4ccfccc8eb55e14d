"""Example usage of the reconciler with in-memory providers."""

from pathlib import Path

from kubeconverge.config import Config
from kubeconverge.lock import InMemoryLockBackend, LockManager
from kubeconverge.orchestrator import Outcome, Reconciler
from kubeconverge.providers import InMemoryProvider, ProviderRegistry
from kubeconverge.state import InMemoryStateStore
from kubeconverge.utils import setup_logging

CONFIG_PATH = Path(__file__).with_name('cluster.yaml')


def build_registry():
    """In-memory adapters for every kind in cluster.yaml."""
    return ProviderRegistry([
        InMemoryProvider('vpc', replace_fields=['cidr_block']),
        InMemoryProvider('subnet', replace_fields=['cidr_block']),
        InMemoryProvider('iam_role'),
        InMemoryProvider('eks_cluster', replace_fields=['name']),
        InMemoryProvider('node_group', create_before_destroy=True),
        InMemoryProvider('ecr_repository'),
        InMemoryProvider('helm_release'),
    ])


def print_report(report):
    for address, outcome in sorted(report.outcomes().items()):
        print(f"  {outcome.value:<10} {address}")
    print(f"  -> {report.summary()} (state serial {report.final_serial})")


def example_first_apply(reconciler):
    """Example: Creating everything from empty state."""
    print("=== First Apply ===")

    plan = reconciler.plan()
    print(f"Plan: {plan.summary()}")
    for action in plan.changes():
        print(f"  {action.describe()}")

    print_report(reconciler.apply(plan))


def example_partial_failure(reconciler, registry):
    """Example: A failing node group skips the ingress release only."""
    print("\n=== Partial Failure ===")

    registry.get('node_group').fail_next('create', name='workers[0]')
    registry.get('node_group').remove_out_of_band('workers[0]')
    reconciler.state_store.write_if_serial_matches(
        reconciler.read_state().without_resource('node_group.workers[0]'),
        reconciler.read_state().serial
    )

    report = reconciler.converge()
    print_report(report)
    print(f"Failed: {report.addresses_with(Outcome.FAILED)}")
    print(f"Skipped: {report.addresses_with(Outcome.SKIPPED)}")

    print("\nRetrying; the tainted node group is planned again:")
    print_report(reconciler.converge())


def example_idempotent_apply(reconciler):
    """Example: A converged system plans no changes."""
    print("\n=== Idempotent Apply ===")

    plan = reconciler.plan()
    print(f"Has changes: {plan.has_changes()}")


def example_destroy(reconciler):
    """Example: Deleting in reverse dependency order."""
    print("\n=== Destroy ===")

    plan = reconciler.plan(destroy=True)
    for action in plan.actions:
        print(f"  {action.describe()}")
    print_report(reconciler.apply(plan))


def main():
    """Run all examples."""
    setup_logging('warning', log_dir=None)

    print("kubeconverge Reconciler Examples")
    print("=" * 60)

    registry = build_registry()
    reconciler = Reconciler(
        Config(str(CONFIG_PATH)).load(),
        InMemoryStateStore(),
        LockManager(InMemoryLockBackend()),
        registry,
    )

    example_first_apply(reconciler)
    example_partial_failure(reconciler, registry)
    example_idempotent_apply(reconciler)
    example_destroy(reconciler)

    print("\n" + "=" * 60)
    print("Examples completed!")


if __name__ == '__main__':
    main()
