"""Reclaim temporary objects bound to an owner.

PVCs and Jobs created for an owner are exclusively ours and are removed with a
single label-filtered collection delete. VolumeSnapshots can be shared (the
ReplicationDestination that produced them, populator claims restoring from
them, users who pinned them with the do-not-delete label), so each one is
inspected before anything is deleted:

1. do-not-delete wins: the owner's cleanup label and owner reference are
   removed and the snapshot is left alone.
2. Another owner reference, or an in-use label of a different claim, means the
   snapshot is still shared: same relinquish, no delete.
3. Anything else is deleted with a resourceVersion precondition, so a labeler
   racing with us makes the delete fail instead of losing the snapshot.
"""

from __future__ import annotations

import enum
import logging
from typing import Any

from kubernetes.client.rest import ApiException

from common.k8s import KubeClients, is_not_found
from common.labels import (
    CLEANUP_LABEL_KEY,
    DO_NOT_DELETE_LABEL_KEY,
    has_foreign_in_use_label,
    is_marked_do_not_delete,
    is_snapshot,
    mark_for_cleanup,
    obj_name,
    obj_namespace,
    obj_uid,
    other_owner_references,
    unmark_for_cleanup_and_remove_ownership,
)
from common.snapshots import delete_snapshot_if_unchanged, get_snapshot, list_snapshots, update_snapshot

logger = logging.getLogger(__name__)

BACKGROUND_PROPAGATION = "Background"


class ObjectKind(enum.Enum):
    """Kinds of temporary objects that can be reclaimed for an owner."""
    PVC = "PersistentVolumeClaim"
    JOB = "Job"
    SNAPSHOT = "VolumeSnapshot"


def cleanup_objects(clients: KubeClients, owner: Any, kinds: list[ObjectKind]) -> None:
    """Delete every object of the given kinds marked for cleanup by owner.

    Raises:
        ApiException: on any API error other than not-found (conflicts included)
    """
    uid = obj_uid(owner)
    namespace = obj_namespace(owner)
    selector = f"{CLEANUP_LABEL_KEY}={uid}"
    logger.info(f"Deleting temporary objects owned by {uid} in {namespace}")

    for kind in kinds:
        try:
            if kind is ObjectKind.SNAPSHOT:
                cleanup_snapshots(clients, owner)
            elif kind is ObjectKind.PVC:
                clients.core.delete_collection_namespaced_persistent_volume_claim(
                    namespace, label_selector=selector,
                    propagation_policy=BACKGROUND_PROPAGATION,
                )
            elif kind is ObjectKind.JOB:
                clients.batch.delete_collection_namespaced_job(
                    namespace, label_selector=selector,
                    propagation_policy=BACKGROUND_PROPAGATION,
                )
        except ApiException as exc:
            if is_not_found(exc):
                continue
            logger.error(f"Unable to delete {kind.value}(s) owned by {uid}: {exc.reason}")
            raise


def cleanup_snapshots(clients: KubeClients, owner: Any) -> None:
    selector = f"{CLEANUP_LABEL_KEY}={obj_uid(owner)}"
    snapshots = list_snapshots(clients, obj_namespace(owner), selector)
    cleanup_snapshots_with_label_check(clients, owner, snapshots)


def cleanup_snapshots_with_label_check(clients: KubeClients, owner: Any,
                                       snapshots: list[dict[str, Any]]) -> None:
    owner_uid = obj_uid(owner)
    remaining = relinquish_snapshots_with_do_not_delete_label(clients, owner, snapshots)

    for snapshot in remaining:
        if snapshot_is_shared(snapshot, owner_uid):
            logger.info(f"Snapshot {obj_name(snapshot)} is still in use - "
                        f"removing ownership of {owner_uid} only")
            _relinquish(clients, owner, snapshot)
            continue

        logger.info(f"Deleting snapshot {obj_name(snapshot)}")
        try:
            delete_snapshot_if_unchanged(clients, snapshot)
        except ApiException as exc:
            if is_not_found(exc):
                continue
            logger.error(f"Failed to delete snapshot {obj_name(snapshot)}: {exc.reason}")
            raise


def snapshot_is_shared(snapshot: dict[str, Any], owner_uid: str) -> bool:
    """True if anything other than owner still references the snapshot."""
    return bool(other_owner_references(snapshot, owner_uid)) or \
        has_foreign_in_use_label(snapshot, owner_uid)


def relinquish_owned_snapshots_with_do_not_delete_label(clients: KubeClients, owner: Any) -> None:
    """Give up ownership of every do-not-delete snapshot in owner's namespace."""
    snapshots = list_snapshots(clients, obj_namespace(owner), DO_NOT_DELETE_LABEL_KEY)
    relinquish_snapshots_with_do_not_delete_label(clients, owner, snapshots)


def relinquish_snapshots_with_do_not_delete_label(clients: KubeClients, owner: Any,
                                                  snapshots: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """Relinquish protected snapshots and return the ones that were not protected.

    A failed update does not stop the others from being relinquished; the
    last error is raised once every snapshot has been handled.
    """
    remaining = []
    last_error: ApiException | None = None
    for snapshot in snapshots:
        if not is_marked_do_not_delete(snapshot):
            remaining.append(snapshot)
            continue
        logger.info(f"Not deleting snapshot {obj_name(snapshot)} protected with label "
                    f"{DO_NOT_DELETE_LABEL_KEY} - removing ownership and cleanup label")
        try:
            _relinquish(clients, owner, snapshot)
        except ApiException as exc:
            last_error = exc
    if last_error is not None:
        raise last_error
    return remaining


def _relinquish(clients: KubeClients, owner: Any, snapshot: dict[str, Any]) -> None:
    if not unmark_for_cleanup_and_remove_ownership(snapshot, owner):
        return
    try:
        update_snapshot(clients, snapshot)
    except ApiException as exc:
        if is_not_found(exc):
            return
        logger.error(f"Error removing cleanup label or ownerRef from snapshot "
                     f"{obj_namespace(snapshot)}/{obj_name(snapshot)}: {exc.reason}")
        raise


def mark_old_snapshot_for_cleanup(clients: KubeClients, owner: Any,
                                  old_image: dict[str, Any] | None,
                                  latest_image: dict[str, Any] | None) -> bool:
    """Label a retired image so the next cleanup run reclaims it.

    Only applies when both references are VolumeSnapshots and they differ.
    Deletion itself is left to cleanup_objects, so the sharing checks apply.

    Returns:
        True if the old snapshot was labeled by this call
    """
    if not is_snapshot(latest_image) or not is_snapshot(old_image):
        return False
    if old_image["name"] == latest_image["name"]:
        return False

    namespace = obj_namespace(owner)
    old_snap = get_snapshot(clients, old_image["name"], namespace)
    if old_snap is None:
        return False

    if is_marked_do_not_delete(old_snap):
        logger.info(f"Snapshot {namespace}/{old_image['name']} is marked do-not-delete, "
                    "will not mark for cleanup")
        return False

    if not mark_for_cleanup(owner, old_snap):
        return False
    try:
        update_snapshot(clients, old_snap)
    except ApiException as exc:
        if is_not_found(exc):
            return False
        logger.error(f"Unable to update snapshot {namespace}/{old_image['name']} "
                     f"with cleanup label: {exc.reason}")
        raise
    return True
