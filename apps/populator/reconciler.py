"""Populate PVCs from the latest snapshot of a ReplicationDestination.

A PVC opts in with a dataSourceRef pointing at a ReplicationDestination. The
flow, recomputed from live objects on every call:

1. Storage class checks (missing class, in-tree class, WaitForFirstConsumer)
2. Ensure the shadow PVC (``vs-prime-<uid>``) restoring from the latest image
3. Once the shadow PVC has a PV, patch the PV's claimRef to the target PVC
4. Once the binder marks the shadow PVC Lost, release the snapshot and delete
   the shadow PVC

Every step that waits on another controller returns without error; watches on
PVCs, StorageClasses and ReplicationDestinations bring us back.
"""

from __future__ import annotations

import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from common.cleanup import ObjectKind, cleanup_objects
from common.k8s import KubeClients, is_not_found
from common.labels import (
    is_marked_do_not_delete,
    obj_name,
    release_snapshot_in_use,
    remove_owner_reference,
    snapshot_in_use_label_key,
)
from common.snapshots import list_snapshots, update_snapshot
from populator.claims import (
    ANNOTATION_MIGRATED_TO,
    CLAIM_LOST,
    WAIT_FOR_FIRST_CONSUMER,
    Request,
    claim_has_source_data_ref,
    selected_node,
)
from populator.rebind import RebindCoordinator, RebindResult
from populator.shadow import ShadowVolumeProvisioner

logger = logging.getLogger(__name__)

INTREE_PROVISIONER_PREFIX = "kubernetes.io/"


class StorageClassNotSupported(Exception):
    """Storage class can never provision from a snapshot (in-tree, not migrated)."""


def check_intree_storage_class(claim: client.V1PersistentVolumeClaim,
                               storage_class: client.V1StorageClass) -> None:
    """Raise StorageClassNotSupported for in-tree classes the claim was not migrated off."""
    if not (storage_class.provisioner or "").startswith(INTREE_PROVISIONER_PREFIX):
        return
    if (claim.metadata.annotations or {}).get(ANNOTATION_MIGRATED_TO):
        return
    raise StorageClassNotSupported(
        f"in-tree volume plugin {storage_class.provisioner!r} cannot use volume populator"
    )


class PopulatorReconciler:
    """Level-triggered reconciler for PVCs with a ReplicationDestination dataSourceRef."""

    def __init__(self, clients: KubeClients,
                 provisioner: ShadowVolumeProvisioner | None = None,
                 rebinder: RebindCoordinator | None = None):
        self.clients = clients
        self.provisioner = provisioner or ShadowVolumeProvisioner(clients)
        self.rebinder = rebinder or RebindCoordinator(clients)

    def reconcile(self, request: Request) -> None:
        """Drive one target PVC a step further.

        Raises:
            ApiException: unexpected API errors and conflicts, for backoff retry
        """
        try:
            target = self.clients.core.read_namespaced_persistent_volume_claim(
                request.name, request.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return
            logger.error(f"Failed to get PVC {request}: {exc.reason}")
            raise

        if not claim_has_source_data_ref(target):
            return

        if not target.spec.volume_name:
            if not self._populate(request, target):
                return

        self._finish(request, target)

    def _populate(self, request: Request, target: client.V1PersistentVolumeClaim) -> bool:
        """Steps 1-3. Returns True once the PV points at the target."""
        node_name = None
        if target.spec.storage_class_name:
            storage_class = self._get_storage_class(target.spec.storage_class_name)
            if storage_class is None:
                # The StorageClass watch brings us back once it exists
                logger.info(f"StorageClass {target.spec.storage_class_name} for {request} "
                            "not found, waiting")
                return False
            try:
                check_intree_storage_class(target, storage_class)
            except StorageClassNotSupported as exc:
                logger.error(f"Ignoring PVC {request}: {exc}")
                return False
            if storage_class.volume_binding_mode == WAIT_FOR_FIRST_CONSUMER:
                node_name = selected_node(target)
                if not node_name:
                    logger.info(f"VolumeBindingMode is WaitForFirstConsumer, waiting for "
                                f"selected-node annotation on {request}")
                    return False

        shadow = self.provisioner.ensure(target, node_name)
        if shadow is None:
            return False
        self.provisioner.ensure_snapshot_owner_references(target, shadow)

        result = self.rebinder.try_rebind(target, shadow)
        if result is not RebindResult.REBOUND:
            # Don't start cleaning up yet - the bind controller must acknowledge the switch
            return False
        return True

    def _finish(self, request: Request, target: client.V1PersistentVolumeClaim) -> None:
        """Step 4: wait for the shadow PVC to be Lost, then clean up."""
        shadow = self.provisioner.get(target)
        if shadow is not None and (shadow.status is None or shadow.status.phase != CLAIM_LOST):
            logger.info(f"Waiting for pv rebind from {shadow.metadata.name} to {request}")
            return

        self.release_snapshots(target, shadow)
        if shadow is not None and shadow.metadata.deletion_timestamp is None:
            logger.info(f"Cleanup - deleting temp volume populator PVC {shadow.metadata.name}")
            cleanup_objects(self.clients, target, [ObjectKind.PVC])
        logger.info(f"Populator finished for {request}")

    def release_snapshots(self, target: client.V1PersistentVolumeClaim,
                          shadow: client.V1PersistentVolumeClaim | None) -> None:
        """Drop target's in-use label from the snapshots carrying it.

        Protected (do-not-delete) snapshots also lose the shadow PVC's owner
        reference, otherwise deleting the shadow PVC would take them along.
        Must run before the shadow PVC is deleted.
        """
        shadow_uid = shadow.metadata.uid if shadow is not None else None
        selector = snapshot_in_use_label_key(target)
        for snapshot in list_snapshots(self.clients, target.metadata.namespace, selector):
            updated = release_snapshot_in_use(snapshot, target)
            if shadow_uid and is_marked_do_not_delete(snapshot):
                updated = remove_owner_reference(snapshot, shadow_uid) or updated
            if updated:
                logger.info(f"Releasing snapshot {obj_name(snapshot)} used by {target.metadata.name}")
                update_snapshot(self.clients, snapshot)

    def _get_storage_class(self, name: str) -> client.V1StorageClass | None:
        try:
            return self.clients.storage.read_storage_class(name)
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise
