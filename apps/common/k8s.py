"""Kubernetes client bootstrap and API constants shared by the populator."""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass

from kubernetes import client, config as k8s_config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

logger = logging.getLogger(__name__)

SNAP_GROUP = "snapshot.storage.k8s.io"
SNAP_VERSION = "v1"
SNAP_PLURAL = "volumesnapshots"
SNAP_KIND = "VolumeSnapshot"

SOURCE_GROUP = "volsync.backube"
SOURCE_VERSION = "v1alpha1"
SOURCE_PLURAL = "replicationdestinations"
SOURCE_KIND = "ReplicationDestination"

POPULATOR_GROUP = "populator.storage.k8s.io"
POPULATOR_VERSION = "v1beta1"
POPULATOR_PLURAL = "volumepopulators"
POPULATOR_KIND = "VolumePopulator"


@dataclass
class KubeClients:
    """Bundle of the API clients used by the populator."""
    core: client.CoreV1Api
    storage: client.StorageV1Api
    batch: client.BatchV1Api
    custom: client.CustomObjectsApi
    apiext: client.ApiextensionsV1Api


def init_clients() -> KubeClients:
    """Initialize Kubernetes API clients (in-cluster first, then kubeconfig)."""
    try:
        k8s_config.load_incluster_config()
    except ConfigException:
        try:
            k8s_config.load_kube_config()
        except Exception as exc:
            logger.error(f"Failed to load kubeconfig: {exc}")
            sys.exit(3)
    return KubeClients(
        core=client.CoreV1Api(),
        storage=client.StorageV1Api(),
        batch=client.BatchV1Api(),
        custom=client.CustomObjectsApi(),
        apiext=client.ApiextensionsV1Api(),
    )


def is_not_found(exc: ApiException) -> bool:
    return getattr(exc, 'status', None) == 404


def is_conflict(exc: ApiException) -> bool:
    return getattr(exc, 'status', None) == 409
