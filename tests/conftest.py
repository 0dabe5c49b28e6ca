"""Shared pytest fixtures: an in-memory stand-in for the Kubernetes API.

The fake implements only the calls the populator makes. It bumps
resourceVersions on writes, enforces resourceVersion checks on replace and
delete preconditions (409), raises 404 for missing objects and records every
mutating call in ``cluster.writes``. Like envtest, it never garbage collects
dependents of deleted owners.
"""

import copy
import itertools
import uuid
from typing import Any

import pytest
from kubernetes import client
from kubernetes.client.rest import ApiException

from common.k8s import KubeClients, SNAP_GROUP, SNAP_KIND, SNAP_PLURAL, SOURCE_GROUP, SOURCE_KIND, SOURCE_PLURAL

NAMESPACE = "test-ns"


def _not_found(what: str) -> ApiException:
    return ApiException(status=404, reason=f"{what} not found")


def _conflict(what: str) -> ApiException:
    return ApiException(status=409, reason=f"{what} conflict")


def selector_matches(labels: dict[str, str] | None, selector: str | None) -> bool:
    labels = labels or {}
    if not selector:
        return True
    for term in selector.split(","):
        if "=" in term:
            key, value = term.split("=", 1)
            if labels.get(key) != value:
                return False
        elif term not in labels:
            return False
    return True


def snapshot_image(name: str) -> dict[str, str]:
    return {"apiGroup": SNAP_GROUP, "kind": SNAP_KIND, "name": name}


class FakeCoreV1Api:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    def read_namespaced_persistent_volume_claim(self, name, namespace):
        try:
            return self.cluster.pvcs[(namespace, name)]
        except KeyError:
            raise _not_found(f"pvc {namespace}/{name}") from None

    def create_namespaced_persistent_volume_claim(self, namespace, body):
        key = (namespace, body.metadata.name)
        if key in self.cluster.pvcs:
            raise _conflict(f"pvc {namespace}/{body.metadata.name} already exists")
        body.metadata.namespace = namespace
        body.metadata.uid = str(uuid.uuid4())
        body.metadata.resource_version = self.cluster.next_rv()
        body.status = client.V1PersistentVolumeClaimStatus(phase="Pending")
        self.cluster.pvcs[key] = body
        self.cluster.writes.append(("create", "PersistentVolumeClaim", body.metadata.name))
        return body

    def delete_collection_namespaced_persistent_volume_claim(self, namespace, label_selector=None,
                                                              propagation_policy=None):
        self.cluster.writes.append(("deletecollection", "PersistentVolumeClaim", label_selector))
        for key, pvc in list(self.cluster.pvcs.items()):
            if key[0] == namespace and selector_matches(pvc.metadata.labels, label_selector):
                del self.cluster.pvcs[key]

    def list_persistent_volume_claim_for_all_namespaces(self, **kwargs):
        return client.V1PersistentVolumeClaimList(items=list(self.cluster.pvcs.values()))

    def list_namespaced_persistent_volume_claim(self, namespace, **kwargs):
        return client.V1PersistentVolumeClaimList(
            items=[pvc for key, pvc in self.cluster.pvcs.items() if key[0] == namespace])

    def read_persistent_volume(self, name):
        try:
            return self.cluster.pvs[name]
        except KeyError:
            raise _not_found(f"pv {name}") from None

    def patch_persistent_volume(self, name, body):
        pv = self.read_persistent_volume(name)
        annotations = dict(pv.metadata.annotations or {})
        annotations.update(body.get("metadata", {}).get("annotations", {}))
        pv.metadata.annotations = annotations
        claim_ref = body.get("spec", {}).get("claimRef")
        if claim_ref is not None:
            pv.spec.claim_ref = client.V1ObjectReference(
                kind="PersistentVolumeClaim",
                api_version="v1",
                name=claim_ref["name"],
                namespace=claim_ref["namespace"],
                uid=claim_ref["uid"],
                resource_version=claim_ref["resourceVersion"],
            )
        pv.metadata.resource_version = self.cluster.next_rv()
        self.cluster.writes.append(("patch", "PersistentVolume", name))
        return pv


class FakeStorageV1Api:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    def read_storage_class(self, name):
        try:
            return self.cluster.storage_classes[name]
        except KeyError:
            raise _not_found(f"storageclass {name}") from None

    def list_storage_class(self, **kwargs):
        return client.V1StorageClassList(items=list(self.cluster.storage_classes.values()))


class FakeBatchV1Api:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    def delete_collection_namespaced_job(self, namespace, label_selector=None, propagation_policy=None):
        self.cluster.writes.append(("deletecollection", "Job", label_selector))


class FakeCustomObjectsApi:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    def _get(self, plural, namespace, name):
        try:
            return self.cluster.custom[(plural, namespace, name)]
        except KeyError:
            raise _not_found(f"{plural} {namespace}/{name}") from None

    def get_namespaced_custom_object(self, group, version, namespace, plural, name):
        return copy.deepcopy(self._get(plural, namespace, name))

    def list_namespaced_custom_object(self, group, version, namespace, plural, label_selector=None, **kwargs):
        items = [
            copy.deepcopy(obj) for (p, ns, _), obj in sorted(self.cluster.custom.items(), key=lambda kv: str(kv[0]))
            if p == plural and ns == namespace
            and selector_matches(obj["metadata"].get("labels"), label_selector)
        ]
        return {"items": items}

    def list_cluster_custom_object(self, group, version, plural, **kwargs):
        return {"items": [copy.deepcopy(obj) for (p, _, _), obj in self.cluster.custom.items() if p == plural]}

    def replace_namespaced_custom_object(self, group, version, namespace, plural, name, body):
        stored = self._get(plural, namespace, name)
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise _conflict(f"{plural} {namespace}/{name} was modified")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self.cluster.next_rv()
        self.cluster.custom[(plural, namespace, name)] = body
        self.cluster.writes.append(("replace", plural, name))
        return copy.deepcopy(body)

    def delete_namespaced_custom_object(self, group, version, namespace, plural, name, body=None):
        stored = self._get(plural, namespace, name)
        preconditions = body.preconditions if body is not None else None
        if preconditions is not None and preconditions.resource_version is not None \
                and preconditions.resource_version != stored["metadata"]["resourceVersion"]:
            raise _conflict(f"{plural} {namespace}/{name} precondition failed")
        del self.cluster.custom[(plural, namespace, name)]
        self.cluster.writes.append(("delete", plural, name))
        return {}

    def get_cluster_custom_object(self, group, version, plural, name):
        return copy.deepcopy(self._get(plural, None, name))

    def create_cluster_custom_object(self, group, version, plural, body):
        key = (plural, None, body["metadata"]["name"])
        if key in self.cluster.custom:
            raise _conflict(f"{plural} {body['metadata']['name']} already exists")
        body = copy.deepcopy(body)
        body["metadata"]["resourceVersion"] = self.cluster.next_rv()
        self.cluster.custom[key] = body
        self.cluster.writes.append(("create", plural, body["metadata"]["name"]))
        return copy.deepcopy(body)


    def replace_cluster_custom_object(self, group, version, plural, name, body):
        return self.replace_namespaced_custom_object(group, version, None, plural, name, body)


class FakeApiextensionsV1Api:
    def __init__(self, cluster: "FakeCluster"):
        self.cluster = cluster

    def read_custom_resource_definition(self, name):
        if name not in self.cluster.crds:
            raise _not_found(f"crd {name}")
        return {"metadata": {"name": name}}


class FakeCluster:
    """In-memory cluster state plus builders for test objects."""

    def __init__(self):
        self.pvcs: dict[tuple[str, str], client.V1PersistentVolumeClaim] = {}
        self.pvs: dict[str, client.V1PersistentVolume] = {}
        self.storage_classes: dict[str, client.V1StorageClass] = {}
        self.custom: dict[tuple[str, str | None, str], dict[str, Any]] = {}
        self.crds: set[str] = set()
        self.writes: list[tuple] = []
        self._rv = itertools.count(1)
        self.clients = KubeClients(
            core=FakeCoreV1Api(self),
            storage=FakeStorageV1Api(self),
            batch=FakeBatchV1Api(self),
            custom=FakeCustomObjectsApi(self),
            apiext=FakeApiextensionsV1Api(self),
        )

    def next_rv(self) -> str:
        return str(next(self._rv))

    # --- builders ---------------------------------------------------------------

    def add_claim(self, name: str, namespace: str = NAMESPACE, source: str | None = "rd",
                  storage_class: str | None = None, volume_name: str | None = None,
                  annotations: dict[str, str] | None = None) -> client.V1PersistentVolumeClaim:
        data_source_ref = None
        if source:
            data_source_ref = client.V1TypedObjectReference(
                api_group=SOURCE_GROUP, kind=SOURCE_KIND, name=source)
        pvc = client.V1PersistentVolumeClaim(
            api_version="v1",
            kind="PersistentVolumeClaim",
            metadata=client.V1ObjectMeta(
                name=name, namespace=namespace, uid=str(uuid.uuid4()),
                resource_version=self.next_rv(), annotations=annotations,
            ),
            spec=client.V1PersistentVolumeClaimSpec(
                access_modes=["ReadWriteOnce"],
                resources=client.V1VolumeResourceRequirements(requests={"storage": "1Gi"}),
                storage_class_name=storage_class,
                volume_mode="Filesystem",
                volume_name=volume_name,
                data_source_ref=data_source_ref,
            ),
            status=client.V1PersistentVolumeClaimStatus(phase="Bound" if volume_name else "Pending"),
        )
        self.pvcs[(namespace, name)] = pvc
        return pvc

    def add_source(self, name: str = "rd", namespace: str = NAMESPACE,
                   latest_image: dict[str, str] | None = None) -> dict[str, Any]:
        obj = {
            "apiVersion": f"{SOURCE_GROUP}/v1alpha1",
            "kind": SOURCE_KIND,
            "metadata": {"name": name, "namespace": namespace, "uid": str(uuid.uuid4()),
                         "resourceVersion": self.next_rv()},
        }
        if latest_image is not None:
            obj["status"] = {"latestImage": latest_image}
        self.custom[(SOURCE_PLURAL, namespace, name)] = obj
        return copy.deepcopy(obj)

    def add_snapshot(self, name: str, namespace: str = NAMESPACE, labels: dict[str, str] | None = None,
                     owner_refs: list[dict[str, Any]] | None = None) -> dict[str, Any]:
        obj = {
            "apiVersion": f"{SNAP_GROUP}/v1",
            "kind": SNAP_KIND,
            "metadata": {"name": name, "namespace": namespace, "uid": str(uuid.uuid4()),
                         "resourceVersion": self.next_rv(), "labels": dict(labels or {})},
        }
        if owner_refs:
            obj["metadata"]["ownerReferences"] = list(owner_refs)
        self.custom[(SNAP_PLURAL, namespace, name)] = obj
        return copy.deepcopy(obj)

    def add_storage_class(self, name: str, provisioner: str = "csi.example.com",
                          binding_mode: str = "Immediate") -> client.V1StorageClass:
        sc = client.V1StorageClass(
            metadata=client.V1ObjectMeta(name=name),
            provisioner=provisioner,
            volume_binding_mode=binding_mode,
        )
        self.storage_classes[name] = sc
        return sc

    def add_pv(self, name: str, claim: client.V1PersistentVolumeClaim | None = None) -> client.V1PersistentVolume:
        claim_ref = None
        if claim is not None:
            claim_ref = client.V1ObjectReference(
                kind="PersistentVolumeClaim", name=claim.metadata.name,
                namespace=claim.metadata.namespace, uid=claim.metadata.uid,
            )
        pv = client.V1PersistentVolume(
            metadata=client.V1ObjectMeta(name=name, resource_version=self.next_rv()),
            spec=client.V1PersistentVolumeSpec(claim_ref=claim_ref),
        )
        self.pvs[name] = pv
        return pv

    # --- inspection ---------------------------------------------------------------

    def snapshot(self, name: str, namespace: str = NAMESPACE) -> dict[str, Any] | None:
        obj = self.custom.get((SNAP_PLURAL, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def pvc(self, name: str, namespace: str = NAMESPACE) -> client.V1PersistentVolumeClaim | None:
        return self.pvcs.get((namespace, name))


@pytest.fixture
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture
def clients(cluster: FakeCluster) -> KubeClients:
    return cluster.clients
