"""Tests for populator/registration.py."""

import pytest
from kubernetes.client.rest import ApiException

from common.k8s import POPULATOR_PLURAL
from common.labels import CREATED_BY_LABEL_KEY
from populator.registration import (
    MAX_ATTEMPTS,
    VOLPOP_CR_NAME,
    VOLPOP_CRD_NAME,
    ensure_volume_populator_cr_if_crd_present,
    volume_populator_body,
)


def test_skipped_without_crd(cluster, clients) -> None:
    assert ensure_volume_populator_cr_if_crd_present(clients) is False
    assert cluster.writes == []


def test_creates_volume_populator(cluster, clients) -> None:
    cluster.crds.add(VOLPOP_CRD_NAME)

    assert ensure_volume_populator_cr_if_crd_present(clients) is True

    stored = cluster.custom[(POPULATOR_PLURAL, None, VOLPOP_CR_NAME)]
    assert stored["sourceKind"] == {"group": "volsync.backube", "kind": "ReplicationDestination"}
    assert stored["kind"] == "VolumePopulator"


def test_existing_volume_populator_is_left_alone(cluster, clients) -> None:
    cluster.crds.add(VOLPOP_CRD_NAME)
    ensure_volume_populator_cr_if_crd_present(clients)
    writes = len(cluster.writes)

    assert ensure_volume_populator_cr_if_crd_present(clients) is True
    assert len(cluster.writes) == writes


def test_lost_create_race_is_retried(cluster, clients, monkeypatch) -> None:
    cluster.crds.add(VOLPOP_CRD_NAME)
    original_create = clients.custom.create_cluster_custom_object

    def created_meanwhile(group, version, plural, body):
        # Someone else wins the race with an outdated object
        stale = volume_populator_body()
        stale["sourceKind"] = {"group": "old.group", "kind": "Stale"}
        original_create(group, version, plural, stale)
        raise ApiException(status=409, reason="AlreadyExists")

    monkeypatch.setattr(clients.custom, "create_cluster_custom_object", created_meanwhile)
    assert ensure_volume_populator_cr_if_crd_present(clients) is True

    stored = cluster.custom[(POPULATOR_PLURAL, None, VOLPOP_CR_NAME)]
    assert stored["sourceKind"] == {"group": "volsync.backube", "kind": "ReplicationDestination"}


def test_stale_volume_populator_is_corrected(cluster, clients) -> None:
    cluster.crds.add(VOLPOP_CRD_NAME)
    stale = volume_populator_body()
    stale["sourceKind"] = {"group": "old.group", "kind": "Stale"}
    del stale["metadata"]["labels"]
    clients.custom.create_cluster_custom_object("populator.storage.k8s.io", "v1beta1", POPULATOR_PLURAL, stale)

    assert ensure_volume_populator_cr_if_crd_present(clients) is True

    stored = cluster.custom[(POPULATOR_PLURAL, None, VOLPOP_CR_NAME)]
    assert stored["sourceKind"] == {"group": "volsync.backube", "kind": "ReplicationDestination"}
    assert stored["metadata"]["labels"] == {CREATED_BY_LABEL_KEY: "volsync"}
    assert cluster.writes[-1] == ("replace", POPULATOR_PLURAL, VOLPOP_CR_NAME)


def test_persistent_conflicts_give_up(cluster, clients, monkeypatch) -> None:
    cluster.crds.add(VOLPOP_CRD_NAME)
    stale = volume_populator_body()
    stale["sourceKind"] = {"group": "old.group", "kind": "Stale"}
    clients.custom.create_cluster_custom_object("populator.storage.k8s.io", "v1beta1", POPULATOR_PLURAL, stale)
    attempts = []

    def always_conflicts(*args, **kwargs):
        attempts.append(args)
        raise ApiException(status=409, reason="Conflict")

    monkeypatch.setattr(clients.custom, "replace_cluster_custom_object", always_conflicts)
    with pytest.raises(ApiException):
        ensure_volume_populator_cr_if_crd_present(clients)
    assert len(attempts) == MAX_ATTEMPTS


def test_other_errors_propagate(cluster, clients, monkeypatch) -> None:
    def forbidden(*args, **kwargs):
        raise ApiException(status=403, reason="Forbidden")

    monkeypatch.setattr(clients.apiext, "read_custom_resource_definition", forbidden)
    with pytest.raises(ApiException):
        ensure_volume_populator_cr_if_crd_present(clients)


def test_body_is_cluster_scoped() -> None:
    body = volume_populator_body()
    assert body["apiVersion"] == "populator.storage.k8s.io/v1beta1"
    assert "namespace" not in body["metadata"]
