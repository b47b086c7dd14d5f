from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Protocol, TypeVar
import logging

from kubernetes import client, config
from kubernetes.client import ApiException

from .config import PITRConfig
from .errors import AlreadyExistsError, ConflictError, TransientAPIError
from .models import (
    BACKUP_GROUP,
    BACKUP_PLURAL,
    BACKUP_VERSION,
    CLUSTER_GROUP,
    CLUSTER_PLURAL,
    CLUSTER_VERSION,
)

DEFAULT_REQUEST_TIMEOUT_SECONDS = 20
T = TypeVar("T")

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    batch_api: client.BatchV1Api
    custom_api: client.CustomObjectsApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class ResourceClient(Protocol):
    """Typed object access the PITR core needs from the cluster API."""

    def list_backups(self, namespace: str, label_selector: str) -> list[dict[str, Any]]: ...

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any] | None: ...

    def replace_cluster_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    def get_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None: ...

    def create_pvc(
        self, namespace: str, body: client.V1PersistentVolumeClaim
    ) -> client.V1PersistentVolumeClaim: ...

    def delete_pvc(self, namespace: str, name: str) -> bool: ...

    def get_job(self, namespace: str, name: str) -> client.V1Job | None: ...

    def create_job(self, namespace: str, body: client.V1Job) -> client.V1Job: ...

    def delete_job(self, namespace: str, name: str) -> bool: ...

    def list_cron_jobs(self, namespace: str, label_selector: str) -> list[client.V1CronJob]: ...

    def delete_cron_job(self, namespace: str, name: str) -> bool: ...


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        batch_api=client.BatchV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
    )


class KubernetesResourceClient:
    def __init__(
        self,
        clients: KubernetesClients,
        *,
        request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS,
    ) -> None:
        if request_timeout_seconds <= 0:
            raise ValueError("request_timeout_seconds must be positive")
        self.clients = clients
        self.request_timeout_seconds = request_timeout_seconds

    @classmethod
    def from_config(cls, clients: KubernetesClients, config: PITRConfig) -> KubernetesResourceClient:
        return cls(clients, request_timeout_seconds=config.request_timeout_seconds)

    def list_backups(self, namespace: str, label_selector: str) -> list[dict[str, Any]]:
        response = _safe_kubernetes_call(
            operation=f"list Backups in namespace '{namespace}' matching '{label_selector}'",
            hint="Verify the dataprotection CRDs are installed and RBAC allows list on backups.",
            func=lambda: self.clients.custom_api.list_namespaced_custom_object(
                group=BACKUP_GROUP,
                version=BACKUP_VERSION,
                namespace=namespace,
                plural=BACKUP_PLURAL,
                label_selector=label_selector,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return list(response.get("items") or [])

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any] | None:
        return _read_or_none(
            operation=f"read Cluster '{namespace}/{name}'",
            hint="Verify RBAC allows get on clusters.",
            func=lambda: self.clients.custom_api.get_namespaced_custom_object(
                group=CLUSTER_GROUP,
                version=CLUSTER_VERSION,
                namespace=namespace,
                plural=CLUSTER_PLURAL,
                name=name,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def replace_cluster_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        return _safe_kubernetes_call(
            operation=f"update status of Cluster '{namespace}/{name}'",
            hint="Verify RBAC allows update on clusters/status.",
            func=lambda: self.clients.custom_api.replace_namespaced_custom_object_status(
                group=CLUSTER_GROUP,
                version=CLUSTER_VERSION,
                namespace=namespace,
                plural=CLUSTER_PLURAL,
                name=name,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def get_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
        return _read_or_none(
            operation=f"read PVC '{namespace}/{name}'",
            hint="Verify RBAC allows get on persistentvolumeclaims.",
            func=lambda: self.clients.core_api.read_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def create_pvc(
        self, namespace: str, body: client.V1PersistentVolumeClaim
    ) -> client.V1PersistentVolumeClaim:
        return _safe_kubernetes_call(
            operation=f"create PVC '{namespace}/{body.metadata.name}'",
            hint="Verify RBAC allows create on persistentvolumeclaims and the storage class exists.",
            func=lambda: self.clients.core_api.create_namespaced_persistent_volume_claim(
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_pvc(self, namespace: str, name: str) -> bool:
        return _delete_if_present(
            operation=f"delete PVC '{namespace}/{name}'",
            hint="Verify RBAC allows delete on persistentvolumeclaims.",
            func=lambda: self.clients.core_api.delete_namespaced_persistent_volume_claim(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(),
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def get_job(self, namespace: str, name: str) -> client.V1Job | None:
        return _read_or_none(
            operation=f"read Job '{namespace}/{name}'",
            hint="Verify RBAC allows get on jobs.",
            func=lambda: self.clients.batch_api.read_namespaced_job(
                name=name,
                namespace=namespace,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def create_job(self, namespace: str, body: client.V1Job) -> client.V1Job:
        return _safe_kubernetes_call(
            operation=f"create Job '{namespace}/{body.metadata.name}'",
            hint="Verify RBAC allows create on jobs and the restore image can be pulled.",
            func=lambda: self.clients.batch_api.create_namespaced_job(
                namespace=namespace,
                body=body,
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def delete_job(self, namespace: str, name: str) -> bool:
        return _delete_if_present(
            operation=f"delete Job '{namespace}/{name}'",
            hint="Verify RBAC allows delete on jobs.",
            func=lambda: self.clients.batch_api.delete_namespaced_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
                _request_timeout=self.request_timeout_seconds,
            ),
        )

    def list_cron_jobs(self, namespace: str, label_selector: str) -> list[client.V1CronJob]:
        response = _safe_kubernetes_call(
            operation=f"list CronJobs in namespace '{namespace}' matching '{label_selector}'",
            hint="Verify RBAC allows list on cronjobs.",
            func=lambda: self.clients.batch_api.list_namespaced_cron_job(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=self.request_timeout_seconds,
            ),
        )
        return list(response.items or [])

    def delete_cron_job(self, namespace: str, name: str) -> bool:
        return _delete_if_present(
            operation=f"delete CronJob '{namespace}/{name}'",
            hint="Verify RBAC allows delete on cronjobs.",
            func=lambda: self.clients.batch_api.delete_namespaced_cron_job(
                name=name,
                namespace=namespace,
                body=client.V1DeleteOptions(propagation_policy="Foreground"),
                _request_timeout=self.request_timeout_seconds,
            ),
        )


def _read_or_none(*, operation: str, hint: str, func: Callable[[], T]) -> T | None:
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            return None
        raise _translate_api_exception(operation=operation, hint=hint, error=error) from error


def _delete_if_present(*, operation: str, hint: str, func: Callable[[], Any]) -> bool:
    try:
        func()
    except ApiException as error:
        if error.status == 404:
            logger.debug("Skipped %s: already absent", operation)
            return False
        raise _translate_api_exception(operation=operation, hint=hint, error=error) from error
    return True


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise _translate_api_exception(operation=operation, hint=hint, error=error) from error
    except TransientAPIError:
        raise
    except Exception as error:
        raise TransientAPIError(
            f"Kubernetes API call failed while trying to {operation}: {error}. {hint}"
        ) from error


def _translate_api_exception(*, operation: str, hint: str, error: ApiException) -> TransientAPIError:
    message = _format_api_exception_message(operation=operation, hint=hint, error=error)
    if error.status == 409:
        if _is_already_exists(error):
            return AlreadyExistsError(message, status=error.status)
        return ConflictError(message, status=error.status)
    return TransientAPIError(message, status=error.status)


def _is_already_exists(error: ApiException) -> bool:
    body = error.body if isinstance(error.body, str) else ""
    reason = error.reason or ""
    return "AlreadyExists" in body or "AlreadyExists" in reason or "already exists" in body


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes API call failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
