"""Reconciler that wires configuration, state, locks and adapters together."""

from pathlib import Path
from typing import List, Optional, Sequence, Union

from kubeconverge.config.models import BackendConfig, EngineSettings, ResourceSpec
from kubeconverge.config.parser import Config
from kubeconverge.lock.backends import FileLockBackend
from kubeconverge.lock.dynamodb import DynamoDBLockBackend
from kubeconverge.lock.manager import LockManager
from kubeconverge.lock.models import default_holder
from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.state.models import StateDocument
from kubeconverge.state.s3_store import S3StateStore
from kubeconverge.state.store import LocalStateStore, StateStore
from kubeconverge.utils.aws_client import AWSClientManager
from kubeconverge.utils.logging import get_logger
from .executor import ApplyEngine, ApplyReport, ProgressCallback
from .graph import ResourceGraph
from .planner import Plan, Planner

logger = get_logger(__name__)


class Reconciler:
    """Coordinates planning and applying for one state document."""

    def __init__(
        self,
        resources: Union[Config, Sequence[ResourceSpec]],
        state_store: StateStore,
        lock_manager: LockManager,
        registry: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
        lock_key: Optional[str] = None,
        holder: Optional[str] = None
    ):
        """Initialize reconciler.

        Args:
            resources: Loaded configuration or already expanded specs
            state_store: Where the state document lives
            lock_manager: Lock guarding the state document
            registry: Provider adapters by kind
            settings: Engine settings (configuration settings if omitted)
            lock_key: Lock key, defaults to the state store description
            holder: Operator identity recorded in the lock
        """
        if isinstance(resources, Config):
            self.specs: List[ResourceSpec] = resources.resource_specs()
            settings = settings or resources.settings
        else:
            self.specs = list(resources)
        self.settings = settings or EngineSettings()
        self.state_store = state_store
        self.lock_manager = lock_manager
        self.registry = registry
        self.lock_key = lock_key or state_store.describe()
        self.holder = holder or default_holder()
        self.planner = Planner()
        self.engine = ApplyEngine.from_settings(registry, self.settings)

    @classmethod
    def from_config(
        cls,
        config: Config,
        registry: ProviderRegistry,
        settings: Optional[EngineSettings] = None,
        holder: Optional[str] = None,
        client_manager: Optional[AWSClientManager] = None
    ) -> "Reconciler":
        """Build a reconciler whose store and lock follow ``config.backend``."""
        backend = config.backend
        state_store, lock_manager = build_backend(backend, client_manager)
        return cls(
            config,
            state_store,
            lock_manager,
            registry,
            settings=settings,
            lock_key=backend.lock_key,
            holder=holder,
        )

    def build_graph(self) -> ResourceGraph:
        return ResourceGraph.build(self.specs)

    def read_state(self) -> StateDocument:
        state, _ = self.state_store.read()
        return state

    def plan(self, destroy: bool = False) -> Plan:
        """Compute a plan from a state snapshot read under the lock.

        Graph errors surface here, before any lock is taken.
        """
        graph = self.build_graph()
        with self.lock_manager.hold(
            self.lock_key,
            holder=self.holder,
            lease_seconds=self.settings.lease_seconds,
            renew_fraction=self.settings.renew_fraction,
            retries=self.settings.lock_retries,
            base_delay=self.settings.lock_retry_base_delay,
            operation="plan"
        ):
            state, _ = self.state_store.read()
        return self.planner.plan(graph, state, self.registry, destroy=destroy)

    def apply(self, plan: Plan, progress_callback: Optional[ProgressCallback] = None) -> ApplyReport:
        return self.engine.apply(
            plan,
            self.state_store,
            self.lock_manager,
            holder=self.holder,
            lock_key=self.lock_key,
            progress_callback=progress_callback
        )

    def destroy(self, progress_callback: Optional[ProgressCallback] = None) -> ApplyReport:
        """Plan and apply deletion of every tracked resource."""
        return self.apply(self.plan(destroy=True), progress_callback)

    def converge(self, progress_callback: Optional[ProgressCallback] = None) -> ApplyReport:
        """Plan and immediately apply."""
        return self.apply(self.plan(), progress_callback)

    def cancel(self) -> None:
        self.engine.cancel()


def build_backend(
    backend: BackendConfig,
    client_manager: Optional[AWSClientManager] = None
):
    """Create the state store and lock manager described by ``backend``.

    Returns:
        Tuple of (StateStore, LockManager)
    """
    if backend.type == "s3":
        client_manager = client_manager or AWSClientManager(
            profile=backend.profile, region=backend.region
        )
        store = S3StateStore(client_manager.get_client('s3'), backend.bucket, backend.key)
        locks = DynamoDBLockBackend(client_manager.get_client('dynamodb'), backend.lock_table)
        logger.debug(f"Using s3://{backend.bucket}/{backend.key} with lock table {backend.lock_table}")
    else:
        state_path = Path(backend.path)
        store = LocalStateStore(str(state_path))
        locks = FileLockBackend(str(state_path.parent / "locks"))
        logger.debug(f"Using local state {state_path}")
    return store, LockManager(locks)
