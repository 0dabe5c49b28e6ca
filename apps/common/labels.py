"""Label, annotation and owner-reference primitives for temporary objects.

Works on both typed client models (``V1PersistentVolumeClaim`` and friends)
and plain dicts as returned by ``CustomObjectsApi`` (VolumeSnapshots,
ReplicationDestinations). Mutating helpers return True only when they changed
the object, so callers can skip no-op updates.

Labels used:
- ``volsync.backube/cleanup=<owner uid>``: object is reclaimed with its owner
- ``volsync.backube/do-not-delete``: never delete, only relinquish
- ``volsync.backube/volpop-pvc-<claim uid>``: snapshot in use by a populator claim
- ``app.kubernetes.io/created-by=volsync``: object is managed by us
"""

from __future__ import annotations

from typing import Any

from common.k8s import SNAP_GROUP, SNAP_KIND

VOLSYNC_LABEL_PREFIX = "volsync.backube"
CLEANUP_LABEL_KEY = VOLSYNC_LABEL_PREFIX + "/cleanup"
DO_NOT_DELETE_LABEL_KEY = VOLSYNC_LABEL_PREFIX + "/do-not-delete"
DO_NOT_DELETE_LABEL_VALUE = "true"
SNAPSHOT_IN_USE_LABEL_PREFIX = VOLSYNC_LABEL_PREFIX + "/volpop-pvc-"

CREATED_BY_LABEL_KEY = "app.kubernetes.io/created-by"
CREATED_BY_LABEL_VALUE = "volsync"


# --- metadata accessors -----------------------------------------------------

def _is_dict(obj: Any) -> bool:
    return isinstance(obj, dict)


def _metadata(obj: Any) -> Any:
    if _is_dict(obj):
        return obj.setdefault("metadata", {})
    return obj.metadata


def meta_value(obj: Any, field: str) -> Any:
    """Read a metadata field by its snake_case name from a model or a dict.

    Dicts use the camelCase wire name (``resource_version`` -> ``resourceVersion``).
    """
    if _is_dict(obj):
        head, *rest = field.split("_")
        camel = head + "".join(part.capitalize() for part in rest)
        return obj.get("metadata", {}).get(camel)
    if obj.metadata is None:
        return None
    return getattr(obj.metadata, field)


def obj_uid(obj: Any) -> str | None:
    return meta_value(obj, "uid")


def obj_name(obj: Any) -> str | None:
    return meta_value(obj, "name")


def obj_namespace(obj: Any) -> str | None:
    return meta_value(obj, "namespace")


def obj_resource_version(obj: Any) -> str | None:
    return meta_value(obj, "resource_version")


def get_labels(obj: Any) -> dict[str, str]:
    """Return the object's labels ({} when unset). Do not mutate the result."""
    return meta_value(obj, "labels") or {}


def _set_labels(obj: Any, labels: dict[str, str]) -> None:
    if _is_dict(obj):
        _metadata(obj)["labels"] = labels
    else:
        obj.metadata.labels = labels


def get_annotations(obj: Any) -> dict[str, str]:
    return meta_value(obj, "annotations") or {}


def set_annotation(obj: Any, key: str, value: str) -> bool:
    annotations = dict(get_annotations(obj))
    if annotations.get(key) == value:
        return False
    annotations[key] = value
    if _is_dict(obj):
        _metadata(obj)["annotations"] = annotations
    else:
        obj.metadata.annotations = annotations
    return True


# --- labels ------------------------------------------------------------------

def has_label(obj: Any, key: str) -> bool:
    return key in get_labels(obj)


def has_label_with_value(obj: Any, key: str, value: str) -> bool:
    return get_labels(obj).get(key) == value


def add_label(obj: Any, key: str, value: str) -> bool:
    """Ensure label key=value is present. Returns True if an update was made."""
    labels = dict(get_labels(obj))
    if labels.get(key) == value:
        return False
    labels[key] = value
    _set_labels(obj, labels)
    return True


def remove_label(obj: Any, key: str) -> bool:
    labels = dict(get_labels(obj))
    if key not in labels:
        return False
    del labels[key]
    _set_labels(obj, labels)
    return True


def set_owned_by_volsync(obj: Any) -> bool:
    return add_label(obj, CREATED_BY_LABEL_KEY, CREATED_BY_LABEL_VALUE)


def mark_for_cleanup(owner: Any, obj: Any) -> bool:
    """Mark obj to be reclaimed when cleanup runs for owner."""
    return add_label(obj, CLEANUP_LABEL_KEY, obj_uid(owner))


def is_marked_for_cleanup_by(obj: Any, owner_uid: str) -> bool:
    return has_label_with_value(obj, CLEANUP_LABEL_KEY, owner_uid)


def mark_do_not_delete(obj: Any) -> bool:
    return add_label(obj, DO_NOT_DELETE_LABEL_KEY, DO_NOT_DELETE_LABEL_VALUE)


def is_marked_do_not_delete(obj: Any) -> bool:
    # Presence is what counts: any actor may set it, with any value
    return has_label(obj, DO_NOT_DELETE_LABEL_KEY)


# --- in-use (manual reference count) ------------------------------------------

def snapshot_in_use_label_key(claim: Any) -> str:
    return SNAPSHOT_IN_USE_LABEL_PREFIX + obj_uid(claim)


def mark_snapshot_in_use(snapshot: dict[str, Any], claim: Any) -> bool:
    """Label the snapshot as used by claim (key carries the uid, value the name)."""
    return add_label(snapshot, snapshot_in_use_label_key(claim), obj_name(claim))


def release_snapshot_in_use(snapshot: dict[str, Any], claim: Any) -> bool:
    return remove_label(snapshot, snapshot_in_use_label_key(claim))


def in_use_consumers(snapshot: dict[str, Any]) -> set[str]:
    """UIDs of every claim currently holding an in-use label on the snapshot."""
    return {
        key[len(SNAPSHOT_IN_USE_LABEL_PREFIX):]
        for key in get_labels(snapshot)
        if key.startswith(SNAPSHOT_IN_USE_LABEL_PREFIX)
    }


def has_foreign_in_use_label(snapshot: dict[str, Any], consumer_uid: str) -> bool:
    return bool(in_use_consumers(snapshot) - {consumer_uid})


# --- owner references (dict objects) --------------------------------------------

def owner_reference_for(owner: Any, kind: str, api_version: str,
                        controller: bool = False) -> dict[str, Any]:
    """Build a wire-format ownerReference pointing at owner."""
    ref: dict[str, Any] = {
        "apiVersion": api_version,
        "kind": kind,
        "name": obj_name(owner),
        "uid": obj_uid(owner),
    }
    if controller:
        ref["controller"] = True
        ref["blockOwnerDeletion"] = True
    return ref


def owner_references(obj: dict[str, Any]) -> list[dict[str, Any]]:
    return obj.get("metadata", {}).get("ownerReferences") or []


def has_owner_reference(obj: dict[str, Any], uid: str) -> bool:
    return any(ref.get("uid") == uid for ref in owner_references(obj))


def add_owner_reference(obj: dict[str, Any], ref: dict[str, Any]) -> bool:
    if has_owner_reference(obj, ref["uid"]):
        return False
    _metadata(obj)["ownerReferences"] = owner_references(obj) + [ref]
    return True


def remove_owner_reference(obj: dict[str, Any], uid: str) -> bool:
    refs = owner_references(obj)
    remaining = [ref for ref in refs if ref.get("uid") != uid]
    if len(remaining) == len(refs):
        return False
    _metadata(obj)["ownerReferences"] = remaining
    return True


def other_owner_references(obj: dict[str, Any], uid: str) -> list[dict[str, Any]]:
    return [ref for ref in owner_references(obj) if ref.get("uid") != uid]


def unmark_for_cleanup_and_remove_ownership(obj: dict[str, Any], owner: Any) -> bool:
    """Drop owner's cleanup label and reference plus the created-by label.

    True if obj changed.
    """
    owner_uid = obj_uid(owner)
    updated = False
    if is_marked_for_cleanup_by(obj, owner_uid):
        updated = remove_label(obj, CLEANUP_LABEL_KEY)
    updated = remove_label(obj, CREATED_BY_LABEL_KEY) or updated
    return remove_owner_reference(obj, owner_uid) or updated


# --- typed image references ------------------------------------------------------

def is_snapshot(image: dict[str, Any] | None) -> bool:
    """True if a typed reference ({apiGroup, kind, name}) names a VolumeSnapshot."""
    if not image:
        return False
    return (image.get("kind") == SNAP_KIND
            and image.get("apiGroup") == SNAP_GROUP
            and bool(image.get("name")))
