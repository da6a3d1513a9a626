"""Pure operations over one organization's infrastructure graph."""

from __future__ import annotations

import json
import logging
import random
import re
import uuid
from collections import Counter
from copy import deepcopy
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import ActionValidationError, ComponentNotFoundError
from .schemas import (
    ComponentPatch,
    FidelityLevel,
    InfrastructureComponent,
    ModifyInfrastructureParameters,
    Position,
)

logger = logging.getLogger(__name__)


CANVAS_WIDTH = 800.0
CANVAS_HEIGHT = 600.0

_HORIZONTAL_BANDS: Tuple[Tuple[str, Tuple[float, float]], ...] = (
    ("left", (100.0, 300.0)),
    ("right", (500.0, 700.0)),
    ("center", (350.0, 450.0)),
)
_VERTICAL_BANDS: Tuple[Tuple[str, Tuple[float, float]], ...] = (
    ("top", (100.0, 250.0)),
    ("bottom", (400.0, 550.0)),
    ("middle", (250.0, 350.0)),
)
ADJACENT_JITTER = 50.0

_CHANGE_LABELS: Dict[str, Callable[[Any], str]] = {
    "ip": lambda value: f"IP to {value}",
    "name": lambda value: f"name to {value}",
    "hostname": lambda value: f"hostname to {value}",
    "ports": lambda _value: "ports configuration",
}


@dataclass
class MutationResult:
    operation: str
    components: List[InfrastructureComponent]
    message: str
    component: Optional[InfrastructureComponent] = None
    changes: List[str] = field(default_factory=list)
    previous: Dict[str, Any] = field(default_factory=dict)

    @property
    def changed(self) -> bool:
        return self.operation != "describe" and (self.operation != "update" or bool(self.changes))


# ----------------------------------------------------------------------
# Defaults and layout
# ----------------------------------------------------------------------
def default_hostname(name: str) -> str:
    return re.sub(r"\s+", "", name.lower()) + ".local"


def random_private_ip(rng: random.Random) -> str:
    return f"192.168.{rng.randint(0, 254)}.{rng.randint(1, 254)}"


def _clamp(value: float, upper: float) -> float:
    return round(min(max(value, 0.0), upper), 2)


def layout_position(
    instructions: Optional[str],
    components: Sequence[InfrastructureComponent],
    rng: random.Random,
) -> Position:
    """Map coarse layout hints onto canvas coordinates."""

    x = rng.uniform(200.0, 600.0)
    y = rng.uniform(200.0, 500.0)
    hint = (instructions or "").lower()
    for keyword, (low, high) in _HORIZONTAL_BANDS:
        if keyword in hint:
            x = rng.uniform(low, high)
            break
    for keyword, (low, high) in _VERTICAL_BANDS:
        if keyword in hint:
            y = rng.uniform(low, high)
            break
    if "adjacent" in hint or "next to" in hint:
        if components:
            anchor = components[-1].position
            x, y = anchor.x, anchor.y
        x += rng.uniform(-ADJACENT_JITTER, ADJACENT_JITTER)
        y += rng.uniform(-ADJACENT_JITTER, ADJACENT_JITTER)
    return Position(x=_clamp(x, CANVAS_WIDTH), y=_clamp(y, CANVAS_HEIGHT))


# ----------------------------------------------------------------------
# Graph helpers
# ----------------------------------------------------------------------
_RESOLUTION_ORDER: Tuple[Tuple[str, Callable[[InfrastructureComponent, str], bool]], ...] = (
    ("exact name", lambda c, needle: c.name.lower() == needle),
    ("name substring", lambda c, needle: needle in c.name.lower() or c.name.lower() in needle),
    ("hostname", lambda c, needle: needle in c.hostname.lower()),
    ("metadata", lambda c, needle: needle in json.dumps(c.metadata, ensure_ascii=False).lower()),
)


def resolve_component(
    components: Sequence[InfrastructureComponent], term: str
) -> InfrastructureComponent:
    """Find a component from a natural-language reference.

    Matching rules are tried in order (exact name, name substring in either
    direction, hostname substring, serialized metadata substring) and the
    first rule with any hit wins.
    """

    needle = term.lower().strip()
    if needle:
        for rule, matches in _RESOLUTION_ORDER:
            for component in components:
                if matches(component, needle):
                    logger.debug("Resolved '%s' to %s by %s", term, component.id, rule)
                    return component
    raise ComponentNotFoundError(term, by_name=True)


def find_component(
    components: Sequence[InfrastructureComponent], component_id: str
) -> InfrastructureComponent:
    for component in components:
        if component.id == component_id:
            return component
    raise ComponentNotFoundError(component_id)


def _check_targets(
    components: Sequence[InfrastructureComponent], targets: Iterable[str], *, owner: Optional[str] = None
) -> List[str]:
    known = {component.id for component in components}
    checked: List[str] = []
    for target in targets:
        if target not in known or target == owner:
            raise ComponentNotFoundError(target)
        if target not in checked:
            checked.append(target)
    return checked


def detach_component(
    components: Sequence[InfrastructureComponent], component_id: str
) -> List[InfrastructureComponent]:
    """Drop a component and every edge that points at it."""

    find_component(components, component_id)
    remaining: List[InfrastructureComponent] = []
    for component in components:
        if component.id == component_id:
            continue
        clone = component.model_copy(deep=True)
        clone.connections = [target for target in clone.connections if target != component_id]
        remaining.append(clone)
    return remaining


def connect_components(
    components: Sequence[InfrastructureComponent],
    source_id: str,
    target_id: str,
    *,
    bidirectional: bool = False,
) -> List[InfrastructureComponent]:
    find_component(components, source_id)
    find_component(components, target_id)
    if source_id == target_id:
        raise ActionValidationError([("targetEntityId", "a component cannot connect to itself")])
    edges = {(source_id, target_id)}
    if bidirectional:
        edges.add((target_id, source_id))
    linked: List[InfrastructureComponent] = []
    for component in components:
        clone = component.model_copy(deep=True)
        for origin, target in sorted(edges):
            if clone.id == origin and target not in clone.connections:
                clone.connections.append(target)
        linked.append(clone)
    return linked


def build_component(
    patch: Optional[ComponentPatch],
    components: Sequence[InfrastructureComponent],
    rng: random.Random,
    layout_instructions: Optional[str] = None,
) -> InfrastructureComponent:
    missing: List[Tuple[str, str]] = []
    if patch is None or patch.kind is None:
        missing.append(("entity.type", "Field required for add"))
    if patch is None or not (patch.name or "").strip():
        missing.append(("entity.name", "Field required for add"))
    if missing or patch is None or patch.kind is None or patch.name is None:
        raise ActionValidationError(missing)

    name = patch.name.strip()
    return InfrastructureComponent(
        id=str(uuid.uuid4()),
        kind=patch.kind,
        name=name,
        hostname=patch.hostname or default_hostname(name),
        ip=patch.ip or random_private_ip(rng),
        fidelity=patch.fidelity or FidelityLevel.VIRTUAL,
        ports=[port.model_copy() for port in patch.ports or []],
        metadata=dict(patch.metadata or {}),
        position=patch.position or layout_position(layout_instructions, components, rng),
        connections=_check_targets(components, patch.connections or []),
    )


def merge_component(
    existing: InfrastructureComponent,
    patch: Optional[ComponentPatch],
    *,
    rename: bool = True,
    known: Sequence[InfrastructureComponent] = (),
) -> Tuple[InfrastructureComponent, List[str]]:
    """Apply only the supplied fields of ``patch``; returns the copy and changed names."""

    updated = existing.model_copy(deep=True)
    if patch is None:
        return updated, []
    provided = patch.provided()
    provided.pop("id", None)
    if not rename:
        provided.pop("name", None)

    changes: List[str] = []
    for name in ComponentPatch.model_fields:
        if name not in provided:
            continue
        value = provided[name]
        if name == "metadata":
            value = {**existing.metadata, **value}
        elif name == "connections":
            value = _check_targets(known, value, owner=existing.id)
        if getattr(existing, name) != value:
            setattr(updated, name, deepcopy(value))
            changes.append(name)
    return updated, changes


def count_by_kind(components: Sequence[InfrastructureComponent]) -> Dict[str, int]:
    return dict(Counter(component.kind.value for component in components))


def describe_components(
    components: Sequence[InfrastructureComponent], organization_name: str = "Unknown Company"
) -> str:
    if not components:
        return "No infrastructure components found for this company."

    connection_count = sum(len(component.connections) for component in components)
    lines = [
        f"{organization_name} Infrastructure Layout:",
        "",
        f"Total Components: {len(components)}",
        f"Total Connections: {connection_count}",
        "",
        "Component Breakdown:",
    ]
    for kind, count in count_by_kind(components).items():
        lines.append(f"- {kind.replace('_', ' ').upper()}: {count}")
    lines.extend(["", "Key Components:"])
    for component in components[:5]:
        if component.connections:
            connected = f" (connected to {len(component.connections)} other components)"
        else:
            connected = " (no connections)"
        lines.append(f"- {component.name} ({component.kind.value}) at {component.hostname}{connected}")
    return "\n".join(lines)


def _describe_changes(updated: InfrastructureComponent, changes: Sequence[str]) -> str:
    labels = [
        _CHANGE_LABELS[name](getattr(updated, name)) if name in _CHANGE_LABELS else name
        for name in changes
    ]
    return ", ".join(labels)


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------
class MutationEngine:
    """Applies add/remove/update/describe to copies of a component list."""

    def __init__(self, rng: Optional[random.Random] = None) -> None:
        self.rng = rng or random.Random()

    def apply(
        self,
        components: Sequence[InfrastructureComponent],
        parameters: ModifyInfrastructureParameters,
        organization_name: str = "Unknown Company",
    ) -> MutationResult:
        working = [component.model_copy(deep=True) for component in components]
        operation = parameters.operation
        if operation == "add":
            return self._add(working, parameters)
        if operation == "remove":
            return self._remove(working, parameters)
        if operation == "update":
            return self._update(working, parameters)
        return MutationResult(
            operation="describe",
            components=working,
            message=describe_components(working, organization_name),
            previous={"counts": count_by_kind(working)},
        )

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------
    def _add(
        self, working: List[InfrastructureComponent], parameters: ModifyInfrastructureParameters
    ) -> MutationResult:
        component = build_component(
            parameters.entity, working, self.rng, parameters.layout_instructions
        )
        working.append(component)
        logger.info("Added %s component %s (%s)", component.kind.value, component.name, component.id)
        return MutationResult(
            operation="add",
            components=working,
            component=component,
            changes=["added"],
            message=f"Added {component.kind.value} '{component.name}' to company infrastructure",
        )

    def _remove(
        self, working: List[InfrastructureComponent], parameters: ModifyInfrastructureParameters
    ) -> MutationResult:
        target, _ = self._target(working, parameters)
        remaining = detach_component(working, target.id)
        logger.info("Removed component %s (%s)", target.name, target.id)
        return MutationResult(
            operation="remove",
            components=remaining,
            component=target,
            changes=["removed"],
            message=f"Removed '{target.name}' from company infrastructure",
        )

    def _update(
        self, working: List[InfrastructureComponent], parameters: ModifyInfrastructureParameters
    ) -> MutationResult:
        target, by_id = self._target(working, parameters)
        updated, changes = merge_component(
            target, parameters.entity, rename=by_id, known=working
        )
        next_components = [updated if c.id == target.id else c for c in working]
        if changes:
            message = f"Updated {_describe_changes(updated, changes)} for '{target.name}' in company infrastructure"
        else:
            message = f"No changes applied to '{target.name}'"
        return MutationResult(
            operation="update",
            components=next_components,
            component=updated,
            changes=changes,
            message=message,
            previous={"ip": target.ip, "name": target.name, "hostname": target.hostname},
        )

    @staticmethod
    def _target(
        working: Sequence[InfrastructureComponent], parameters: ModifyInfrastructureParameters
    ) -> Tuple[InfrastructureComponent, bool]:
        """Resolve the operation target; the flag is true when matched by id."""

        entity = parameters.entity
        explicit_id = parameters.entity_id or (entity.id if entity is not None else None)
        if explicit_id:
            return find_component(working, explicit_id), True
        if entity is not None and entity.name:
            return resolve_component(working, entity.name), False
        raise ActionValidationError(
            [("entityId", f"an id or entity name is required for {parameters.operation}")]
        )


__all__ = [
    "ADJACENT_JITTER",
    "CANVAS_HEIGHT",
    "CANVAS_WIDTH",
    "MutationEngine",
    "MutationResult",
    "build_component",
    "connect_components",
    "count_by_kind",
    "default_hostname",
    "describe_components",
    "detach_component",
    "find_component",
    "layout_position",
    "merge_component",
    "random_private_ip",
    "resolve_component",
]
