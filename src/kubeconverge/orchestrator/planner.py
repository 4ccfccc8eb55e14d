"""Diff declared resources against state and produce an ordered plan."""

import json
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Set, Tuple

from pydantic import BaseModel, Field

from kubeconverge.config.models import ResourceSpec
from kubeconverge.config.references import UnresolvedReference, find_references, resolve_references
from kubeconverge.providers.base import ProviderRegistry
from kubeconverge.state.models import ResourceState, ResourceStatus, StateDocument
from kubeconverge.utils.errors import ValidationError
from kubeconverge.utils.logging import get_logger
from .graph import ResourceGraph, order_nodes

logger = get_logger(__name__)


class Action(str, Enum):
    """Kind of change applied to one resource."""
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    NOOP = "noop"


class AttributeChange(BaseModel):
    """Difference in one declared attribute."""

    field: str
    before: Any = None
    after: Any = None
    requires_replacement: bool = False


class PlannedAction(BaseModel):
    """One step of a plan."""

    id: str = Field(..., description="Unique within the plan, e.g. create:vpc.main")
    action: Action
    address: str
    kind: str
    name: str
    attributes: Dict[str, Any] = Field(
        default_factory=dict, description="Declared attributes to apply (create/update)"
    )
    changes: List[AttributeChange] = Field(default_factory=list)
    provider_id: Optional[str] = Field(None, description="Existing object the action operates on")
    dependencies: List[str] = Field(
        default_factory=list, description="Addresses recorded as dependencies once applied"
    )
    depends_on: List[str] = Field(
        default_factory=list, description="Action ids that must succeed first"
    )
    reason: str = ""
    replacement: bool = Field(False, description="Half of a lowered replace")
    deposed: bool = Field(
        False, description="Deletes an object left behind by a create-before-destroy replace"
    )

    @property
    def is_noop(self) -> bool:
        return self.action == Action.NOOP

    def describe(self) -> str:
        label = self.action.value
        if self.replacement:
            label = f"{label} (replace)"
        elif self.deposed:
            label = f"{label} (deposed {self.provider_id})"
        return f"{label} {self.address}"


class Plan(BaseModel):
    """Ordered actions computed against one state document."""

    actions: List[PlannedAction] = Field(default_factory=list)
    state_serial: int = 0
    state_lineage: str = ""
    destroy: bool = False
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def get(self, action_id: str) -> Optional[PlannedAction]:
        for action in self.actions:
            if action.id == action_id:
                return action
        return None

    def actions_for(self, address: str) -> List[PlannedAction]:
        return [action for action in self.actions if action.address == address]

    def changes(self) -> List[PlannedAction]:
        """Actions other than noop, in order."""
        return [action for action in self.actions if not action.is_noop]

    def has_changes(self) -> bool:
        return any(not action.is_noop for action in self.actions)

    def replaced_addresses(self) -> List[str]:
        return sorted({action.address for action in self.actions if action.replacement})

    def summary(self) -> Dict[str, int]:
        """Count of resources per kind of change; a replace counts once."""
        summary = {'create': 0, 'update': 0, 'replace': 0, 'delete': 0, 'noop': 0}
        replaced = set(self.replaced_addresses())
        for action in self.actions:
            if action.address in replaced:
                continue
            summary[action.action.value] += 1
        summary['replace'] = len(replaced)
        return summary

    def to_json(self) -> str:
        return json.dumps(self.model_dump(mode="json"), indent=2) + "\n"

    def save(self, path: str) -> None:
        plan_path = Path(path)
        plan_path.parent.mkdir(parents=True, exist_ok=True)
        plan_path.write_text(self.to_json(), encoding="utf-8")

    @classmethod
    def load(cls, path: str) -> "Plan":
        try:
            return cls.model_validate_json(Path(path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            raise ValidationError(f"Cannot load plan from {path}: {e}", cause=e)


def _action_id(action: Action, address: str) -> str:
    return f"{action.value}:{address}"


def _deposed_id(address: str, provider_id: str) -> str:
    return f"{_action_id(Action.DELETE, address)}@{provider_id}"


def diff_attributes(
    before: Dict[str, Any],
    after: Dict[str, Any],
    replace_fields: Set[str] = frozenset()
) -> List[AttributeChange]:
    """Field-by-field difference of two attribute mappings, sorted by field."""
    changes = []
    for field in sorted(set(before) | set(after)):
        old, new = before.get(field), after.get(field)
        if field in before and field in after and old == new:
            continue
        changes.append(AttributeChange(
            field=field, before=old, after=new, requires_replacement=field in replace_fields
        ))
    return changes


class Planner:
    """Computes plans from a resource graph and a state document."""

    def plan(
        self,
        graph: ResourceGraph,
        state: StateDocument,
        registry: ProviderRegistry,
        destroy: bool = False
    ) -> Plan:
        """Compute the ordered actions that converge ``state`` to ``graph``.

        Args:
            graph: Declared resources
            state: Last-applied state document
            registry: Adapters, consulted for replace semantics
            destroy: Delete everything in state instead of converging

        Returns:
            Plan bound to the state's serial and lineage

        Raises:
            ConfigurationError: If a resource kind has no adapter
        """
        logger.info(f"Planning against state serial {state.serial} "
                    f"({len(graph)} declared, {len(state.resources)} tracked)")

        decisions: Dict[str, Tuple[str, str, List[AttributeChange]]] = {}
        if not destroy:
            for address in graph.topological_order():
                decisions[address] = self._decide(graph.get(address), state, registry)
            self._propagate_replacements(graph, decisions)
        create_first = self._replace_strategies(graph, state, decisions, registry)

        removed = sorted(set(state.resources) - set(decisions))
        actions: Dict[str, PlannedAction] = {}

        for address, (decision, reason, changes) in decisions.items():
            spec = graph.get(address)
            current = state.get(address)
            for action in self._lower(decision, spec, current, changes, reason,
                                      create_first.get(address, False)):
                actions[action.id] = action

        for address in removed:
            current = state.get(address)
            registry.get(current.kind)
            if current.status == ResourceStatus.ABSENT and current.deposed:
                continue
            action = PlannedAction(
                id=_action_id(Action.DELETE, address),
                action=Action.DELETE,
                address=address,
                kind=current.kind,
                name=current.name,
                provider_id=current.provider_id,
                changes=diff_attributes(current.attributes, {}),
                reason="destroy requested" if destroy else "no longer declared",
            )
            actions[action.id] = action

        for address in state.addresses():
            current = state.get(address)
            for provider_id in current.deposed:
                action = PlannedAction(
                    id=_deposed_id(address, provider_id),
                    action=Action.DELETE,
                    address=address,
                    kind=current.kind,
                    name=current.name,
                    provider_id=provider_id,
                    reason="left behind by an earlier replace",
                    deposed=True,
                )
                actions[action.id] = action

        edges = self._edges(graph, state, actions)
        for before, after in edges:
            if before not in actions[after].depends_on:
                actions[after].depends_on.append(before)
        for action in actions.values():
            action.depends_on.sort()

        nodes = {
            (action.address, action.action.value, action.id): action.id for action in actions.values()
        }
        by_id = {action_id: node for node, action_id in nodes.items()}
        ordered = order_nodes(nodes, [(by_id[a], by_id[b]) for a, b in edges])

        plan = Plan(
            actions=[actions[nodes[node]] for node in ordered],
            state_serial=state.serial,
            state_lineage=state.lineage,
            destroy=destroy,
        )
        logger.info(f"Plan: {plan.summary()}")
        return plan

    def _decide(
        self,
        spec: ResourceSpec,
        state: StateDocument,
        registry: ProviderRegistry
    ) -> Tuple[str, str, List[AttributeChange]]:
        adapter = registry.get(spec.kind)
        current = state.get(spec.address)

        if current is None or current.status == ResourceStatus.ABSENT:
            return "create", "not yet created", diff_attributes({}, spec.attributes)

        if current.kind != spec.kind:
            changes = diff_attributes(current.attributes, spec.attributes, set(spec.attributes))
            return "replace", f"kind changed from {current.kind}", changes

        changes = diff_attributes(current.attributes, spec.attributes, set(adapter.replace_fields))

        if current.is_tainted:
            if not current.provider_id:
                return "create", "previous create failed", changes
            return "replace", "tainted by a failed operation", changes

        forcing = [change.field for change in changes if change.requires_replacement]
        if forcing:
            return "replace", f"{', '.join(forcing)} cannot be changed in place", changes
        if changes:
            return "update", "attributes changed", changes
        if self._references_drifted(spec, current, state):
            return "update", "referenced outputs changed", changes
        return "noop", "", changes

    @staticmethod
    def _references_drifted(spec: ResourceSpec, current: ResourceState, state: StateDocument) -> bool:
        try:
            resolved = resolve_references(spec.attributes, state.outputs_of)
        except UnresolvedReference:
            return False
        return resolved != current.resolved_attributes

    @staticmethod
    def _propagate_replacements(
        graph: ResourceGraph,
        decisions: Dict[str, Tuple[str, str, List[AttributeChange]]]
    ) -> None:
        """Turn noop consumers of replaced or changed producer outputs into updates."""
        for address in graph.topological_order():
            decision, reason, changes = decisions[address]
            if decision != "noop":
                continue
            for reference in sorted(find_references(graph.get(address).attributes),
                                    key=lambda ref: (ref.address, ref.output)):
                producer, _, producer_changes = decisions[reference.address]
                if producer == "replace":
                    decisions[address] = ("update", f"{reference.address} is replaced", changes)
                    break
                if producer == "update" and reference.output in {c.field for c in producer_changes}:
                    decisions[address] = ("update", f"{reference} changes", changes)
                    break

    @staticmethod
    def _replace_strategies(
        graph: ResourceGraph,
        state: StateDocument,
        decisions: Dict[str, Tuple[str, str, List[AttributeChange]]],
        registry: ProviderRegistry
    ) -> Dict[str, bool]:
        """Whether each replaced resource creates its successor before deleting itself.

        A create-before-destroy resource falls back to destroy-first when a
        producer it uses is replaced destroy-first: the consumer's old object
        has to be gone before the producer's old object, and the producer's
        new object before the consumer's new one.
        """
        create_first: Dict[str, bool] = {}
        for address in graph.topological_order():
            if decisions.get(address, ("",))[0] != "replace":
                continue
            spec = graph.get(address)
            current = state.get(address)
            # Kind changes always destroy first; the old adapter cannot hand over
            first = current.kind == spec.kind and registry.get(spec.kind).create_before_destroy
            demoted_by = sorted(
                dep for dep in graph.dependencies(address)
                if create_first.get(dep) is False and dep in current.dependencies
            )
            if first and demoted_by:
                logger.info(f"{address} is replaced destroy-first because "
                            f"{demoted_by[0]} is replaced destroy-first")
                first = False
            create_first[address] = first
        return create_first

    @staticmethod
    def _lower(
        decision: str,
        spec: ResourceSpec,
        current: Optional[ResourceState],
        changes: List[AttributeChange],
        reason: str,
        create_first: bool
    ) -> List[PlannedAction]:
        common = dict(
            address=spec.address,
            kind=spec.kind,
            name=spec.name,
            attributes=dict(spec.attributes),
            changes=changes,
            dependencies=sorted(spec.dependency_addresses()),
            reason=reason,
        )

        if decision != "replace":
            action = Action(decision)
            return [PlannedAction(
                id=_action_id(action, spec.address),
                action=action,
                provider_id=current.provider_id if current and action != Action.CREATE else None,
                **common
            )]

        create = PlannedAction(
            id=_action_id(Action.CREATE, spec.address),
            action=Action.CREATE,
            replacement=True,
            **common
        )
        delete = PlannedAction(
            id=_action_id(Action.DELETE, spec.address),
            action=Action.DELETE,
            address=spec.address,
            kind=current.kind,
            name=current.name,
            provider_id=current.provider_id,
            changes=changes,
            reason=reason,
            replacement=True,
            deposed=create_first,
        )
        return [create, delete] if create_first else [delete, create]

    @staticmethod
    def _edges(
        graph: ResourceGraph,
        state: StateDocument,
        actions: Dict[str, PlannedAction]
    ) -> List[Tuple[str, str]]:
        """``(before, after)`` action-id pairs."""
        edges: Set[Tuple[str, str]] = set()

        def converging(address: str) -> Optional[str]:
            for action in (Action.CREATE, Action.UPDATE, Action.NOOP):
                action_id = _action_id(action, address)
                if action_id in actions:
                    return action_id
            return None

        def deleting(address: str) -> List[str]:
            return [action.id for action in actions.values()
                    if action.action == Action.DELETE and action.address == address]

        for action in actions.values():
            if action.action == Action.DELETE:
                continue
            # Producers converge before consumers
            for dep in graph.dependencies(action.address):
                producer = converging(dep)
                if producer:
                    edges.add((producer, action.id))

        for action in actions.values():
            if action.action != Action.DELETE:
                continue
            address = action.address
            left_behind = action.id != _action_id(Action.DELETE, address)
            create = None if left_behind else actions.get(_action_id(Action.CREATE, address))
            if create is not None:
                edges.add((create.id, action.id) if action.deposed else (action.id, create.id))

            # The old object goes away only after everything that used it
            keeps_address = create is not None and not action.deposed
            for consumer in sorted(state.resources):
                if address not in state.resources[consumer].dependencies:
                    continue
                for consumer_delete in deleting(consumer):
                    edges.add((consumer_delete, action.id))
                consumer_converge = converging(consumer)
                if consumer_converge is None or keeps_address:
                    continue
                if left_behind and actions[consumer_converge].is_noop:
                    continue
                edges.add((consumer_converge, action.id))

        return sorted(edges)
