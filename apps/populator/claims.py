"""PVC-level constants and predicates shared across the populator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from kubernetes import client

from common.k8s import SOURCE_GROUP, SOURCE_KIND
from common.labels import VOLSYNC_LABEL_PREFIX, get_annotations, has_label, obj_name, obj_namespace

SHADOW_PVC_PREFIX = "vs-prime"
ANNOTATION_SELECTED_NODE = "volume.kubernetes.io/selected-node"
ANNOTATION_POPULATED_FROM = VOLSYNC_LABEL_PREFIX + "/populated-from"
ANNOTATION_MIGRATED_TO = "pv.kubernetes.io/migrated-to"
LABEL_SHADOW_PVC_FOR = VOLSYNC_LABEL_PREFIX + "/populator-pvc-for"

CLAIM_LOST = "Lost"
WAIT_FOR_FIRST_CONSUMER = "WaitForFirstConsumer"


@dataclass(frozen=True)
class Request:
    """Reconcile request: identifies one target claim."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


def request_for(claim: Any) -> Request:
    return Request(namespace=obj_namespace(claim), name=obj_name(claim))


def claim_has_source_data_ref(claim: client.V1PersistentVolumeClaim) -> bool:
    """True if the claim asks to be populated from a ReplicationDestination."""
    spec = claim.spec
    if spec is None or spec.data_source_ref is None:
        return False
    ref = spec.data_source_ref
    return ref.api_group == SOURCE_GROUP and ref.kind == SOURCE_KIND and bool(ref.name)


def claim_is_bound(claim: client.V1PersistentVolumeClaim) -> bool:
    return bool(claim.spec and claim.spec.volume_name)


def shadow_claim_name(target: client.V1PersistentVolumeClaim) -> str:
    return f"{SHADOW_PVC_PREFIX}-{target.metadata.uid}"


def is_shadow_claim(claim: client.V1PersistentVolumeClaim) -> bool:
    return has_label(claim, LABEL_SHADOW_PVC_FOR)


def shadow_owner_request(shadow: client.V1PersistentVolumeClaim) -> Request | None:
    """Request for the target claim that controls this shadow claim."""
    for ref in shadow.metadata.owner_references or []:
        if ref.kind == "PersistentVolumeClaim" and ref.controller:
            return Request(namespace=shadow.metadata.namespace, name=ref.name)
    return None


def selected_node(claim: client.V1PersistentVolumeClaim) -> str | None:
    return get_annotations(claim).get(ANNOTATION_SELECTED_NODE) or None
