"""Create and track the shadow PVC that restores data from a snapshot.

The shadow claim is named ``vs-prime-<target uid>``, so at most one can exist
per target and creating it twice is harmless.
"""

from __future__ import annotations

import logging
from typing import Any

from kubernetes import client
from kubernetes.client.rest import ApiException

from common.k8s import (
    KubeClients,
    SOURCE_GROUP,
    SOURCE_PLURAL,
    SOURCE_VERSION,
    is_conflict,
    is_not_found,
)
from common.labels import (
    add_owner_reference,
    is_snapshot,
    mark_for_cleanup,
    mark_snapshot_in_use,
    owner_reference_for,
    set_owned_by_volsync,
    snapshot_in_use_label_key,
)
from common.snapshots import get_snapshot, list_snapshots, update_snapshot
from populator.claims import ANNOTATION_SELECTED_NODE, LABEL_SHADOW_PVC_FOR, shadow_claim_name

logger = logging.getLogger(__name__)


class ShadowVolumeProvisioner:
    """Ensures a shadow PVC exists for a target PVC."""

    def __init__(self, clients: KubeClients):
        self.clients = clients

    def get(self, target: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim | None:
        """Return the shadow claim for target, or None if there is none yet."""
        try:
            return self.clients.core.read_namespaced_persistent_volume_claim(
                shadow_claim_name(target), target.metadata.namespace
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def ensure(self, target: client.V1PersistentVolumeClaim,
               node_name: str | None = None) -> client.V1PersistentVolumeClaim | None:
        """Return the shadow claim for target, creating it if needed.

        Returns None (no error) while the ReplicationDestination, its latest
        image or the snapshot behind it is not available yet. A watch on the
        ReplicationDestination triggers the next attempt.

        Args:
            target: The user's claim
            node_name: Selected node to carry over (WaitForFirstConsumer classes)
        """
        shadow = self.get(target)
        if shadow is not None:
            return shadow

        namespace = target.metadata.namespace
        source = self._get_source(target)
        if source is None:
            logger.info(f"ReplicationDestination {namespace}/{target.spec.data_source_ref.name} "
                        f"not found, cannot populate {namespace}/{target.metadata.name} yet")
            return None

        latest_image = (source.get("status") or {}).get("latestImage")
        if not latest_image:
            logger.info(f"ReplicationDestination {namespace}/{source['metadata']['name']} "
                        "has no latestImage, cannot populate volume yet")
            return None
        if not is_snapshot(latest_image):
            # CopyMethod Direct: the image is a PVC, not something we can restore from
            logger.error(f"ReplicationDestination {namespace}/{source['metadata']['name']} "
                         "latestImage is not a volumesnapshot, unable to populate volume")
            return None

        snapshot = self._mark_snapshot_in_use(target, latest_image["name"])
        if snapshot is None:
            return None

        shadow = self._build_shadow(target, latest_image, node_name)
        logger.info(f"Creating temp populator pvc {namespace}/{shadow.metadata.name} "
                    f"from snapshot {latest_image['name']}")
        try:
            return self.clients.core.create_namespaced_persistent_volume_claim(namespace, shadow)
        except ApiException as exc:
            if is_conflict(exc):
                # Already created by an earlier attempt whose response we lost
                return self.get(target)
            logger.error(f"Failed to create populator PVC {shadow.metadata.name}: {exc.reason}")
            raise

    def ensure_snapshot_owner_references(self, target: client.V1PersistentVolumeClaim,
                                         shadow: client.V1PersistentVolumeClaim) -> None:
        """Make the shadow claim an owner of every snapshot target is using.

        Once the shadow claim is deleted the cluster garbage collector removes
        the snapshot, unless some other owner (a ReplicationDestination, another
        shadow claim) still holds it.
        """
        ref = owner_reference_for(shadow, "PersistentVolumeClaim", "v1")
        selector = snapshot_in_use_label_key(target)
        for snapshot in list_snapshots(self.clients, target.metadata.namespace, selector):
            if add_owner_reference(snapshot, ref):
                logger.info(f"Adding owner reference of {shadow.metadata.name} "
                            f"to snapshot {snapshot['metadata']['name']}")
                update_snapshot(self.clients, snapshot)

    def _get_source(self, target: client.V1PersistentVolumeClaim) -> dict[str, Any] | None:
        try:
            return self.clients.custom.get_namespaced_custom_object(
                SOURCE_GROUP, SOURCE_VERSION, target.metadata.namespace, SOURCE_PLURAL,
                target.spec.data_source_ref.name,
            )
        except ApiException as exc:
            if is_not_found(exc):
                return None
            raise

    def _mark_snapshot_in_use(self, target: client.V1PersistentVolumeClaim,
                              snapshot_name: str) -> dict[str, Any] | None:
        """Record target as a consumer of the snapshot so cleanup leaves it alone."""
        namespace = target.metadata.namespace
        snapshot = get_snapshot(self.clients, snapshot_name, namespace)
        if snapshot is None:
            logger.info(f"VolumeSnapshot {namespace}/{snapshot_name} not found, "
                        "cannot populate volume yet")
            return None
        if mark_snapshot_in_use(snapshot, target):
            snapshot = update_snapshot(self.clients, snapshot)
            logger.info(f"Snapshot {namespace}/{snapshot_name} marked in use by "
                        f"{target.metadata.name}")
        return snapshot

    @staticmethod
    def _build_shadow(target: client.V1PersistentVolumeClaim, latest_image: dict[str, Any],
                      node_name: str | None) -> client.V1PersistentVolumeClaim:
        annotations = {ANNOTATION_SELECTED_NODE: node_name} if node_name else None
        shadow = client.V1PersistentVolumeClaim(
            api_version="v1",
            kind="PersistentVolumeClaim",
            metadata=client.V1ObjectMeta(
                name=shadow_claim_name(target),
                namespace=target.metadata.namespace,
                annotations=annotations,
                labels={LABEL_SHADOW_PVC_FOR: target.metadata.name},
                owner_references=[client.V1OwnerReference(
                    api_version="v1",
                    kind="PersistentVolumeClaim",
                    name=target.metadata.name,
                    uid=target.metadata.uid,
                    controller=True,
                    block_owner_deletion=True,
                )],
            ),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=target.spec.access_modes,
                resources=target.spec.resources,
                storage_class_name=target.spec.storage_class_name,
                volume_mode=target.spec.volume_mode,
                data_source_ref=client.V1TypedObjectReference(
                    api_group=latest_image.get("apiGroup"),
                    kind=latest_image["kind"],
                    name=latest_image["name"],
                ),
            ),
        )
        mark_for_cleanup(target, shadow)
        set_owned_by_volsync(shadow)
        return shadow
