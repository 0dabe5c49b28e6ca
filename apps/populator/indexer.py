"""In-memory PVC cache with two secondary indices.

StorageClass and ReplicationDestination changes must find the PVCs that
depend on them without listing every PVC in the cluster:

- (namespace, ReplicationDestination name) -> PVC keys
- StorageClass name -> PVC keys (only PVCs with a ReplicationDestination ref)

The cache is fed by the PVC watch and read by the other watch threads.
"""

from __future__ import annotations

import threading
from collections import defaultdict

from kubernetes import client

from common.labels import obj_name, obj_namespace
from populator.claims import Request, claim_has_source_data_ref, claim_is_bound


class ClaimIndex:
    """Thread-safe claim cache keyed by Request."""

    def __init__(self):
        self._lock = threading.Lock()
        self._claims: dict[Request, client.V1PersistentVolumeClaim] = {}
        self._by_source: dict[tuple[str, str], set[Request]] = defaultdict(set)
        self._by_storage_class: dict[str, set[Request]] = defaultdict(set)

    def upsert(self, claim: client.V1PersistentVolumeClaim) -> None:
        key = Request(namespace=obj_namespace(claim), name=obj_name(claim))
        with self._lock:
            self._unindex(key)
            self._claims[key] = claim
            if not claim_has_source_data_ref(claim):
                return
            self._by_source[(key.namespace, claim.spec.data_source_ref.name)].add(key)
            if claim.spec.storage_class_name:
                self._by_storage_class[claim.spec.storage_class_name].add(key)

    def delete(self, claim: client.V1PersistentVolumeClaim) -> None:
        key = Request(namespace=obj_namespace(claim), name=obj_name(claim))
        with self._lock:
            self._unindex(key)

    def get(self, key: Request) -> client.V1PersistentVolumeClaim | None:
        with self._lock:
            return self._claims.get(key)

    def claims_for_source(self, namespace: str, name: str) -> list[Request]:
        with self._lock:
            return sorted(self._by_source.get((namespace, name), ()), key=str)

    def claims_for_storage_class(self, name: str) -> list[Request]:
        with self._lock:
            return sorted(self._by_storage_class.get(name, ()), key=str)

    def requests_for_source(self, source: dict) -> list[Request]:
        """Unbound claims populated from this ReplicationDestination."""
        keys = self.claims_for_source(obj_namespace(source), obj_name(source))
        return self._unbound(keys)

    def requests_for_storage_class(self, storage_class: client.V1StorageClass) -> list[Request]:
        """Unbound populator claims that use this StorageClass."""
        return self._unbound(self.claims_for_storage_class(storage_class.metadata.name))

    def __len__(self) -> int:
        with self._lock:
            return len(self._claims)

    def _unbound(self, keys: list[Request]) -> list[Request]:
        with self._lock:
            return [key for key in keys
                    if key in self._claims and not claim_is_bound(self._claims[key])]

    def _unindex(self, key: Request) -> None:
        old = self._claims.pop(key, None)
        if old is None or not claim_has_source_data_ref(old):
            return
        source_key = (key.namespace, old.spec.data_source_ref.name)
        self._by_source[source_key].discard(key)
        if not self._by_source[source_key]:
            del self._by_source[source_key]
        sc_name = old.spec.storage_class_name
        if sc_name:
            self._by_storage_class[sc_name].discard(key)
            if not self._by_storage_class[sc_name]:
                del self._by_storage_class[sc_name]
