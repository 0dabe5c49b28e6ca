"""Thin VolumeSnapshot accessors over CustomObjectsApi.

Snapshots are handled as plain dicts, the same way the rest of the code base
treats custom objects.
"""

from __future__ import annotations

from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from common.k8s import KubeClients, SNAP_GROUP, SNAP_PLURAL, SNAP_VERSION, is_not_found
from common.labels import obj_name, obj_namespace, obj_resource_version


def get_snapshot(clients: KubeClients, name: str, namespace: str) -> dict[str, Any] | None:
    """Fetch a VolumeSnapshot, or None if it does not exist."""
    try:
        return clients.custom.get_namespaced_custom_object(
            SNAP_GROUP, SNAP_VERSION, namespace, SNAP_PLURAL, name
        )
    except ApiException as exc:
        if is_not_found(exc):
            return None
        raise


def list_snapshots(clients: KubeClients, namespace: str,
                   label_selector: str | None = None) -> list[dict[str, Any]]:
    kwargs: dict[str, Any] = {}
    if label_selector:
        kwargs['label_selector'] = label_selector
    resp = clients.custom.list_namespaced_custom_object(
        SNAP_GROUP, SNAP_VERSION, namespace, SNAP_PLURAL, **kwargs
    )
    return resp.get("items", [])


def update_snapshot(clients: KubeClients, snapshot: dict[str, Any]) -> dict[str, Any]:
    """Replace the snapshot. The body carries its resourceVersion, so a
    concurrent writer turns this into a 409 ApiException."""
    return clients.custom.replace_namespaced_custom_object(
        SNAP_GROUP, SNAP_VERSION, obj_namespace(snapshot), SNAP_PLURAL,
        obj_name(snapshot), snapshot
    )


def delete_snapshot_if_unchanged(clients: KubeClients, snapshot: dict[str, Any]) -> None:
    """Delete the snapshot only if nobody modified it since we read it."""
    preconditions = client.V1Preconditions(resource_version=obj_resource_version(snapshot))
    clients.custom.delete_namespaced_custom_object(
        SNAP_GROUP, SNAP_VERSION, obj_namespace(snapshot), SNAP_PLURAL, obj_name(snapshot),
        body=client.V1DeleteOptions(preconditions=preconditions),
    )
