from __future__ import annotations

from types import SimpleNamespace
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from kube_pitr.config import PITRConfig
from kube_pitr.errors import AlreadyExistsError, ConflictError, TransientAPIError
from kube_pitr.k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesResourceClient,
    load_kubernetes_clients,
)


def _clients(
    *,
    core_api: Mock | None = None,
    batch_api: Mock | None = None,
    custom_api: Mock | None = None,
) -> KubernetesClients:
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api or Mock(),
        batch_api=batch_api or Mock(),
        custom_api=custom_api or Mock(),
    )


def _resource_client(**apis: Mock) -> KubernetesResourceClient:
    return KubernetesResourceClient(_clients(**apis), request_timeout_seconds=7)


def test_list_backups_passes_selector_and_returns_items() -> None:
    custom_api = Mock()
    custom_api.list_namespaced_custom_object.return_value = {"items": [{"metadata": {"name": "b1"}}]}

    items = _resource_client(custom_api=custom_api).list_backups("db", "app.kubernetes.io/instance=src")

    assert items == [{"metadata": {"name": "b1"}}]
    custom_api.list_namespaced_custom_object.assert_called_once_with(
        group="dataprotection.kubeblocks.io",
        version="v1alpha1",
        namespace="db",
        plural="backups",
        label_selector="app.kubernetes.io/instance=src",
        _request_timeout=7,
    )


def test_get_cluster_with_missing_object_returns_none() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = ApiException(status=404, reason="Not Found")

    assert _resource_client(custom_api=custom_api).get_cluster("db", "gone") is None


def test_get_job_with_permission_error_raises_transient_error_with_hint() -> None:
    batch_api = Mock()
    batch_api.read_namespaced_job.side_effect = ApiException(status=403, reason="Forbidden")

    with pytest.raises(TransientAPIError, match="RBAC allows get on jobs") as excinfo:
        _resource_client(batch_api=batch_api).get_job("db", "pitr-phy-c-mysql-0")

    assert excinfo.value.status == 403
    assert excinfo.value.retryable is True


def test_replace_cluster_status_with_version_conflict_raises_conflict_error() -> None:
    custom_api = Mock()
    exception = ApiException(status=409, reason="Conflict")
    exception.body = '{"reason":"Conflict","message":"the object has been modified"}'
    custom_api.replace_namespaced_custom_object_status.side_effect = exception

    with pytest.raises(ConflictError):
        _resource_client(custom_api=custom_api).replace_cluster_status("db", "c", {"metadata": {}})


def test_create_job_with_existing_name_raises_already_exists_error() -> None:
    batch_api = Mock()
    exception = ApiException(status=409, reason="Conflict")
    exception.body = '{"reason":"AlreadyExists","message":"jobs.batch \\"pitr-phy-c-mysql-0\\" already exists"}'
    batch_api.create_namespaced_job.side_effect = exception
    body = SimpleNamespace(metadata=SimpleNamespace(name="pitr-phy-c-mysql-0"))

    with pytest.raises(AlreadyExistsError):
        _resource_client(batch_api=batch_api).create_job("db", body)


def test_delete_job_with_missing_job_returns_false() -> None:
    batch_api = Mock()
    batch_api.delete_namespaced_job.side_effect = ApiException(status=404, reason="Not Found")

    assert _resource_client(batch_api=batch_api).delete_job("db", "pitr-phy-c-mysql-0") is False


def test_delete_job_uses_foreground_propagation() -> None:
    batch_api = Mock()

    assert _resource_client(batch_api=batch_api).delete_job("db", "pitr-phy-c-mysql-0") is True

    body = batch_api.delete_namespaced_job.call_args.kwargs["body"]
    assert body.propagation_policy == "Foreground"


def test_list_cron_jobs_with_unexpected_error_wraps_it() -> None:
    batch_api = Mock()
    batch_api.list_namespaced_cron_job.side_effect = OSError("connection reset")

    with pytest.raises(TransientAPIError, match="connection reset"):
        _resource_client(batch_api=batch_api).list_cron_jobs("db", "kubeblocks.io/pitr-trigger")


def test_resource_client_with_non_positive_timeout_raises_value_error() -> None:
    with pytest.raises(ValueError, match="request_timeout_seconds"):
        KubernetesResourceClient(_clients(), request_timeout_seconds=0)


def test_resource_client_from_config_applies_configured_request_timeout() -> None:
    batch_api = Mock()

    resources = KubernetesResourceClient.from_config(
        _clients(batch_api=batch_api),
        PITRConfig(request_timeout_seconds=9),
    )
    resources.get_job("db", "pitr-phy-orders-mysql-0")

    assert resources.request_timeout_seconds == 9
    batch_api.read_namespaced_job.assert_called_once_with(
        name="pitr-phy-orders-mysql-0",
        namespace="db",
        _request_timeout=9,
    )


def test_load_kubernetes_clients_with_in_cluster_mode_uses_incluster_auth(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_incluster_config = Mock()
    load_kube_config = Mock()
    api_client = Mock()
    custom_api = Mock()

    monkeypatch.setattr("kube_pitr.k8s.config.load_incluster_config", load_incluster_config)
    monkeypatch.setattr("kube_pitr.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("kube_pitr.k8s.client.ApiClient", Mock(return_value=api_client))
    monkeypatch.setattr("kube_pitr.k8s.client.CoreV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("kube_pitr.k8s.client.BatchV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("kube_pitr.k8s.client.CustomObjectsApi", Mock(return_value=custom_api))

    clients = load_kubernetes_clients(kubeconfig_path="~/.kube/config", context="ignored", in_cluster=True)

    load_incluster_config.assert_called_once_with()
    load_kube_config.assert_not_called()
    assert clients.api_client is api_client
    assert clients.custom_api is custom_api


def test_load_kubernetes_clients_with_kubeconfig_mode_expands_path_and_context(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    load_kube_config = Mock()

    monkeypatch.setenv("HOME", "/tmp/kube-pitr-home")
    monkeypatch.setattr("kube_pitr.k8s.config.load_kube_config", load_kube_config)
    monkeypatch.setattr("kube_pitr.k8s.client.ApiClient", Mock(return_value=Mock()))
    monkeypatch.setattr("kube_pitr.k8s.client.CoreV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("kube_pitr.k8s.client.BatchV1Api", Mock(return_value=Mock()))
    monkeypatch.setattr("kube_pitr.k8s.client.CustomObjectsApi", Mock(return_value=Mock()))

    load_kubernetes_clients(kubeconfig_path="~/.kube/config", context="dev-cluster", in_cluster=False)

    load_kube_config.assert_called_once_with(
        config_file="/tmp/kube-pitr-home/.kube/config",
        context="dev-cluster",
    )


def test_load_kubernetes_clients_with_invalid_context_raises_authentication_error(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "kube_pitr.k8s.config.load_kube_config",
        Mock(side_effect=RuntimeError("context does not exist")),
    )

    with pytest.raises(KubernetesAuthenticationError, match="context 'missing-context'"):
        load_kubernetes_clients(kubeconfig_path="/etc/kube-pitr/config", context="missing-context", in_cluster=False)
