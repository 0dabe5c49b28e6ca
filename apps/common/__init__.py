"""Common utilities shared by the populator controller."""

from .k8s import KubeClients, init_clients
from .cleanup import (
    ObjectKind,
    cleanup_objects,
    mark_old_snapshot_for_cleanup,
    relinquish_owned_snapshots_with_do_not_delete_label,
)

__all__ = [
    'KubeClients',
    'init_clients',
    'ObjectKind',
    'cleanup_objects',
    'mark_old_snapshot_for_cleanup',
    'relinquish_owned_snapshots_with_do_not_delete_label',
]
