"""In-memory provider used by tests and dry runs."""

import contextlib
import copy
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from kubeconverge.utils.errors import ErrorContext, PermanentProviderError, ResourceNotFoundError
from kubeconverge.utils.logging import get_logger
from .base import ProviderAdapter

logger = get_logger(__name__)

ErrorFactory = Union[BaseException, Callable[[], BaseException]]


@dataclass
class _Fault:
    operation: str
    name: Optional[str]
    error: ErrorFactory
    remaining: Optional[int]  # None means every call


@dataclass
class CallRecord:
    """One provider call as seen by the mock."""
    operation: str
    name: str
    provider_id: Optional[str]
    succeeded: bool


class InMemoryProvider(ProviderAdapter):
    """Thread-safe mock adapter for one resource kind.

    Objects are keyed by logical name, which doubles as the natural key:
    creating a name that already exists adopts the existing object. Faults
    can be injected per operation and name, calls are journaled, and the
    highest number of simultaneous calls is tracked.
    """

    def __init__(
        self,
        kind: str,
        replace_fields: Iterable[str] = (),
        create_before_destroy: bool = False,
        latency: float = 0.0
    ):
        self.kind = kind
        self.replace_fields = frozenset(replace_fields)
        self.create_before_destroy = create_before_destroy
        self.latency = latency

        self._mutex = threading.Lock()
        self._objects: Dict[str, Dict[str, Any]] = {}
        self._names: Dict[str, str] = {}
        self._counter = 0
        self._faults: List[_Fault] = []
        self._in_flight = 0
        self.max_concurrency = 0
        self.calls: List[CallRecord] = []

    # Test hooks

    def fail_next(
        self,
        operation: str,
        name: Optional[str] = None,
        error: Optional[ErrorFactory] = None,
        times: Optional[int] = 1
    ) -> None:
        """Make upcoming ``operation`` calls fail.

        Args:
            operation: create, read, update or delete
            name: Only fail calls for this logical name (any name if None)
            error: Exception instance or factory; permanent failure by default
            times: Number of calls to fail, None for every call
        """
        if error is None:
            error = lambda: PermanentProviderError(f"Injected {operation} failure for {self.kind}")
        with self._mutex:
            self._faults.append(_Fault(operation, name, error, times))

    def clear_faults(self) -> None:
        with self._mutex:
            self._faults.clear()

    def drift(self, name: str, **attributes: Any) -> None:
        """Change an object out of band."""
        with self._mutex:
            self._objects[self._names[name]]['attributes'].update(attributes)

    def remove_out_of_band(self, name: str) -> None:
        with self._mutex:
            provider_id = self._names.pop(name)
            del self._objects[provider_id]

    def names(self) -> List[str]:
        with self._mutex:
            return sorted(self._names)

    def attributes_of(self, name: str) -> Optional[Dict[str, Any]]:
        with self._mutex:
            provider_id = self._names.get(name)
            if provider_id is None:
                return None
            return copy.deepcopy(self._objects[provider_id]['attributes'])

    def operations(self, operation: Optional[str] = None) -> List[Tuple[str, str]]:
        """Successful calls as ``(operation, name)`` pairs, in call order."""
        with self._mutex:
            return [
                (call.operation, call.name) for call in self.calls
                if call.succeeded and (operation is None or call.operation == operation)
            ]

    # Adapter operations

    def create(self, name: str, attributes: Dict[str, Any]) -> Tuple[str, Dict[str, Any]]:
        with self._call('create', name):
            with self._mutex:
                provider_id = self._names.get(name)
                if provider_id is not None:
                    logger.debug(f"Adopting existing {self.kind} '{name}' ({provider_id})")
                else:
                    self._counter += 1
                    provider_id = f"{self.kind}-{self._counter:04d}"
                    self._names[name] = provider_id
                self._objects[provider_id] = {
                    'name': name, 'attributes': copy.deepcopy(attributes)
                }
                self._record('create', name, provider_id)
                return provider_id, self._outputs(provider_id)

    def read(self, provider_id: str) -> Dict[str, Any]:
        with self._call('read', self._name_of(provider_id)):
            with self._mutex:
                obj = self._objects.get(provider_id)
                if obj is None:
                    raise ResourceNotFoundError(
                        provider_id, context=ErrorContext(resource_type=self.kind, operation='read')
                    )
                self._record('read', obj['name'], provider_id)
                return copy.deepcopy(obj['attributes'])

    def update(self, provider_id: str, attributes: Dict[str, Any]) -> Dict[str, Any]:
        with self._call('update', self._name_of(provider_id)):
            with self._mutex:
                obj = self._objects.get(provider_id)
                if obj is None:
                    raise ResourceNotFoundError(
                        provider_id, context=ErrorContext(resource_type=self.kind, operation='update')
                    )
                obj['attributes'] = copy.deepcopy(attributes)
                self._record('update', obj['name'], provider_id)
                return self._outputs(provider_id)

    def delete(self, provider_id: str) -> None:
        with self._call('delete', self._name_of(provider_id)):
            with self._mutex:
                obj = self._objects.pop(provider_id, None)
                name = obj['name'] if obj else provider_id
                if obj is not None and self._names.get(name) == provider_id:
                    del self._names[name]
                self._record('delete', name, provider_id)

    # Internals

    def _outputs(self, provider_id: str) -> Dict[str, Any]:
        obj = self._objects[provider_id]
        outputs = copy.deepcopy(obj['attributes'])
        outputs['id'] = provider_id
        outputs['arn'] = f"arn:mock:{self.kind}:::{obj['name']}"
        return outputs

    def _name_of(self, provider_id: str) -> str:
        with self._mutex:
            obj = self._objects.get(provider_id)
            return obj['name'] if obj else provider_id

    def _record(self, operation: str, name: str, provider_id: Optional[str], succeeded: bool = True):
        self.calls.append(CallRecord(operation, name, provider_id, succeeded))

    def _take_fault(self, operation: str, name: str) -> Optional[BaseException]:
        with self._mutex:
            for fault in self._faults:
                if fault.operation != operation or fault.name not in (None, name):
                    continue
                if fault.remaining is not None:
                    fault.remaining -= 1
                    if fault.remaining <= 0:
                        self._faults.remove(fault)
                error = fault.error
                return error if isinstance(error, BaseException) else error()
        return None

    @contextlib.contextmanager
    def _call(self, operation: str, name: str) -> Iterator[None]:
        with self._mutex:
            self._in_flight += 1
            self.max_concurrency = max(self.max_concurrency, self._in_flight)
        try:
            if self.latency:
                time.sleep(self.latency)
            fault = self._take_fault(operation, name)
            if fault is not None:
                with self._mutex:
                    self._record(operation, name, None, succeeded=False)
                raise fault
            yield
        finally:
            with self._mutex:
                self._in_flight -= 1
