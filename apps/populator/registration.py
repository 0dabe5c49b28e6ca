"""Register the populator with the volume-data-source-validator.

If the VolumePopulator CRD is installed, a cluster-scoped VolumePopulator
object must advertise ReplicationDestination as a valid dataSourceRef kind,
otherwise the validator flags our PVCs.
"""

from __future__ import annotations

import logging

from kubernetes.client.rest import ApiException

from common.k8s import (
    KubeClients,
    POPULATOR_GROUP,
    POPULATOR_KIND,
    POPULATOR_PLURAL,
    POPULATOR_VERSION,
    SOURCE_GROUP,
    SOURCE_KIND,
    is_conflict,
    is_not_found,
)
from common.labels import CREATED_BY_LABEL_KEY, CREATED_BY_LABEL_VALUE, set_owned_by_volsync

logger = logging.getLogger(__name__)

VOLPOP_CR_NAME = "volsync-volume-populator"
VOLPOP_CRD_NAME = f"{POPULATOR_PLURAL}.{POPULATOR_GROUP}"
MAX_ATTEMPTS = 3


def is_volume_populator_crd_present(clients: KubeClients) -> bool:
    try:
        clients.apiext.read_custom_resource_definition(VOLPOP_CRD_NAME)
    except ApiException as exc:
        if is_not_found(exc):
            return False
        raise
    return True


def _source_kind() -> dict:
    return {"group": SOURCE_GROUP, "kind": SOURCE_KIND}


def volume_populator_body() -> dict:
    return {
        "apiVersion": f"{POPULATOR_GROUP}/{POPULATOR_VERSION}",
        "kind": POPULATOR_KIND,
        "metadata": {
            "name": VOLPOP_CR_NAME,
            "labels": {CREATED_BY_LABEL_KEY: CREATED_BY_LABEL_VALUE},
        },
        "sourceKind": _source_kind(),
    }


def _apply_desired_state(obj: dict) -> bool:
    """Set sourceKind and the created-by label on obj. True if obj changed."""
    updated = set_owned_by_volsync(obj)
    if obj.get("sourceKind") != _source_kind():
        obj["sourceKind"] = _source_kind()
        updated = True
    return updated


def ensure_volume_populator_cr_if_crd_present(clients: KubeClients) -> bool:
    """Create or update our VolumePopulator object if the CRD exists.

    An existing object with a different sourceKind or without the created-by
    label is corrected in place. Conflicts with concurrent writers are retried.

    Returns:
        True if the VolumePopulator object is in the desired state afterwards
    """
    if not is_volume_populator_crd_present(clients):
        logger.info("VolumePopulator CRD not present, skipping populator registration")
        return False

    for attempt in range(1, MAX_ATTEMPTS + 1):
        try:
            existing = clients.custom.get_cluster_custom_object(
                POPULATOR_GROUP, POPULATOR_VERSION, POPULATOR_PLURAL, VOLPOP_CR_NAME
            )
        except ApiException as exc:
            if not is_not_found(exc):
                raise
            existing = None

        try:
            if existing is None:
                logger.info(f"Creating VolumePopulator {VOLPOP_CR_NAME}")
                clients.custom.create_cluster_custom_object(
                    POPULATOR_GROUP, POPULATOR_VERSION, POPULATOR_PLURAL, volume_populator_body()
                )
            elif _apply_desired_state(existing):
                logger.info(f"Updating VolumePopulator {VOLPOP_CR_NAME}")
                clients.custom.replace_cluster_custom_object(
                    POPULATOR_GROUP, POPULATOR_VERSION, POPULATOR_PLURAL, VOLPOP_CR_NAME, existing
                )
            return True
        except ApiException as exc:
            if is_conflict(exc) and attempt < MAX_ATTEMPTS:
                logger.info(f"VolumePopulator {VOLPOP_CR_NAME} changed concurrently, retrying")
                continue
            logger.error(f"Failed to ensure VolumePopulator {VOLPOP_CR_NAME}: {exc.reason}")
            raise
