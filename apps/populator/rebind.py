"""Hand the shadow claim's PV over to the target claim.

We only *request* the hand-off by patching the PV's claimRef. The cluster's
bind controller then notices the new claimRef, binds the target and marks the
shadow claim Lost. Both sides are read-patch-retry loops, re-issuing an
already applied patch changes nothing.
"""

from __future__ import annotations

import enum
import logging

from kubernetes import client
from kubernetes.client.rest import ApiException

from common.k8s import KubeClients, is_not_found
from populator.claims import ANNOTATION_POPULATED_FROM

logger = logging.getLogger(__name__)


class RebindResult(enum.Enum):
    NOT_BOUND = "not-bound"   # shadow claim has no PV yet
    PATCHED = "patched"       # claimRef patch sent, binder has to acknowledge
    REBOUND = "rebound"       # PV already points at the target claim


def claim_ref_matches(claim_ref: client.V1ObjectReference | None,
                      target: client.V1PersistentVolumeClaim) -> bool:
    if claim_ref is None:
        return False
    return (claim_ref.name == target.metadata.name
            and claim_ref.namespace == target.metadata.namespace
            and claim_ref.uid == target.metadata.uid)


class RebindCoordinator:
    """Patches a PV's claimRef from the shadow claim to the target claim."""

    def __init__(self, clients: KubeClients):
        self.clients = clients

    def try_rebind(self, target: client.V1PersistentVolumeClaim,
                   shadow: client.V1PersistentVolumeClaim) -> RebindResult:
        volume_name = shadow.spec.volume_name
        if not volume_name:
            logger.info(f"Temp volume populator pvc {shadow.metadata.name} has no PV yet")
            return RebindResult.NOT_BOUND

        try:
            pv = self.clients.core.read_persistent_volume(volume_name)
        except ApiException as exc:
            if is_not_found(exc):
                return RebindResult.NOT_BOUND
            raise

        if claim_ref_matches(pv.spec.claim_ref, target):
            return RebindResult.REBOUND

        # Empty and foreign claimRefs are treated alike
        patch = {
            "metadata": {
                "annotations": {
                    ANNOTATION_POPULATED_FROM:
                        f"{target.metadata.namespace}/{shadow.spec.data_source_ref.name}",
                },
            },
            "spec": {
                "claimRef": {
                    "namespace": target.metadata.namespace,
                    "name": target.metadata.name,
                    "uid": target.metadata.uid,
                    "resourceVersion": target.metadata.resource_version,
                },
            },
        }
        logger.info(f"Patching PV {volume_name} claim to {target.metadata.namespace}/"
                    f"{target.metadata.name}")
        try:
            self.clients.core.patch_persistent_volume(volume_name, patch)
        except ApiException as exc:
            logger.error(f"Error patching PV {volume_name} claim: {exc.reason}")
            raise
        return RebindResult.PATCHED
