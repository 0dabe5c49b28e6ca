"""Watch events and their mapping to reconcile requests.

Each watched kind gets an explicit entry in ``EVENT_HANDLERS``: a predicate
deciding whether the event matters and a mapper turning it into requests for
target PVCs. Deletes are never acted on; owner-reference garbage collection
and the cleanup path take care of teardown.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any, Callable

from populator.claims import (
    Request,
    claim_has_source_data_ref,
    is_shadow_claim,
    request_for,
    shadow_owner_request,
)
from populator.indexer import ClaimIndex


class ResourceKind(enum.Enum):
    CLAIM = "PersistentVolumeClaim"
    SHADOW_CLAIM = "ShadowPersistentVolumeClaim"
    STORAGE_CLASS = "StorageClass"
    SOURCE = "ReplicationDestination"


class EventType(enum.Enum):
    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass(frozen=True)
class WatchEvent:
    kind: ResourceKind
    type: EventType
    obj: Any


def claim_event(event_type: EventType, claim: Any) -> WatchEvent:
    """Tag a PVC event as a shadow claim or a (potential) target claim."""
    kind = ResourceKind.SHADOW_CLAIM if is_shadow_claim(claim) else ResourceKind.CLAIM
    return WatchEvent(kind=kind, type=event_type, obj=claim)


def _not_deleted(event: WatchEvent) -> bool:
    return event.type is not EventType.DELETED


def _claim_predicate(event: WatchEvent) -> bool:
    return _not_deleted(event) and claim_has_source_data_ref(event.obj)


def _created_only(event: WatchEvent) -> bool:
    return event.type is EventType.ADDED


def _map_claim(event: WatchEvent, index: ClaimIndex) -> list[Request]:
    return [request_for(event.obj)]


def _map_shadow_claim(event: WatchEvent, index: ClaimIndex) -> list[Request]:
    request = shadow_owner_request(event.obj)
    return [request] if request else []


def _map_storage_class(event: WatchEvent, index: ClaimIndex) -> list[Request]:
    return index.requests_for_storage_class(event.obj)


def _map_source(event: WatchEvent, index: ClaimIndex) -> list[Request]:
    return index.requests_for_source(event.obj)


Predicate = Callable[[WatchEvent], bool]
Mapper = Callable[[WatchEvent, ClaimIndex], list[Request]]

EVENT_HANDLERS: dict[ResourceKind, tuple[Predicate, Mapper]] = {
    ResourceKind.CLAIM: (_claim_predicate, _map_claim),
    ResourceKind.SHADOW_CLAIM: (_not_deleted, _map_shadow_claim),
    ResourceKind.STORAGE_CLASS: (_created_only, _map_storage_class),
    ResourceKind.SOURCE: (_not_deleted, _map_source),
}


def requests_for_event(event: WatchEvent, index: ClaimIndex) -> list[Request]:
    """Reconcile requests triggered by event (empty if it is filtered out)."""
    predicate, mapper = EVENT_HANDLERS[event.kind]
    if not predicate(event):
        return []
    return mapper(event, index)
