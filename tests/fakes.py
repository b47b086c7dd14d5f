from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Any
import copy

from kubernetes import client

from kube_pitr.errors import AlreadyExistsError, ConflictError
from kube_pitr.models import (
    APP_INSTANCE_LABEL_KEY,
    BACKUP_TYPE_LABEL_KEY,
    COMPONENT_NAME_LABEL_KEY,
    RESTORE_FROM_SOURCE_CLUSTER_ANNOTATION_KEY,
    RESTORE_FROM_TIME_ANNOTATION_KEY,
    SynthesizedComponent,
    format_timestamp,
)

NAMESPACE = "default"
SOURCE_CLUSTER = "source-cluster"
CLUSTER_NAME = "cluster-for-pitr"
COMPONENT = "mysql"
NOW = datetime(2026, 2, 23, 12, 0, tzinfo=UTC)


def hours(value: float) -> timedelta:
    return timedelta(hours=value)


def backup_dict(
    name: str,
    *,
    backup_type: str,
    start: datetime,
    stop: datetime,
    phase: str = "Completed",
    log_start: datetime | None = None,
    log_stop: datetime | None = None,
    log_pvc: str | None = None,
    source_cluster: str = SOURCE_CLUSTER,
    component: str = COMPONENT,
    namespace: str = NAMESPACE,
) -> dict[str, Any]:
    status: dict[str, Any] = {
        "phase": phase,
        "startTimestamp": format_timestamp(start),
        "completionTimestamp": format_timestamp(stop),
    }
    if log_start is not None and log_stop is not None:
        status["manifests"] = {
            "backupLog": {"startTime": format_timestamp(log_start), "stopTime": format_timestamp(log_stop)}
        }
    if log_pvc:
        status["persistentVolumeClaimName"] = log_pvc
    return {
        "apiVersion": "dataprotection.kubeblocks.io/v1alpha1",
        "kind": "Backup",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": {
                APP_INSTANCE_LABEL_KEY: source_cluster,
                COMPONENT_NAME_LABEL_KEY: component,
                BACKUP_TYPE_LABEL_KEY: backup_type,
            },
        },
        "spec": {"backupPolicyName": "test-fake", "backupType": backup_type},
        "status": status,
    }


def base_backup(name: str, *, start: datetime, stop: datetime, **kwargs: Any) -> dict[str, Any]:
    return backup_dict(name, backup_type="snapshot", start=start, stop=stop, **kwargs)


def incremental_backup(
    name: str,
    *,
    start: datetime,
    stop: datetime,
    log_pvc: str = "remote-pvc",
    **kwargs: Any,
) -> dict[str, Any]:
    return backup_dict(
        name,
        backup_type="incremental",
        start=start,
        stop=stop,
        log_start=start,
        log_stop=stop,
        log_pvc=log_pvc,
        **kwargs,
    )


def cluster_dict(
    *,
    name: str = CLUSTER_NAME,
    namespace: str = NAMESPACE,
    restore_time: datetime | None = NOW,
    source_cluster: str | None = SOURCE_CLUSTER,
    components: tuple[tuple[str, int], ...] = ((COMPONENT, 1),),
    phase: str | None = None,
    conditions: list[dict[str, str]] | None = None,
) -> dict[str, Any]:
    annotations: dict[str, str] = {}
    if restore_time is not None:
        annotations[RESTORE_FROM_TIME_ANNOTATION_KEY] = format_timestamp(restore_time)
    if source_cluster is not None:
        annotations[RESTORE_FROM_SOURCE_CLUSTER_ANNOTATION_KEY] = source_cluster
    status: dict[str, Any] = {"observedGeneration": 1}
    if phase is not None:
        status["phase"] = phase
    if conditions is not None:
        status["conditions"] = conditions
    return {
        "apiVersion": "apps.kubeblocks.io/v1alpha1",
        "kind": "Cluster",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "uid": f"uid-{name}",
            "annotations": annotations,
        },
        "spec": {
            "clusterDefinitionRef": "test-clusterdef",
            "componentSpecs": [
                {"name": component_name, "componentDefRef": "replicasets", "replicas": replicas}
                for component_name, replicas in components
            ],
        },
        "status": status,
    }


def synthesized_component(
    *,
    name: str = COMPONENT,
    data_mount_path: str = "/var/lib/mysql",
    with_data_mount: bool = True,
    claim_templates: tuple[str, ...] = ("data",),
) -> SynthesizedComponent:
    mounts = [client.V1VolumeMount(name="data", mount_path=data_mount_path)] if with_data_mount else []
    return SynthesizedComponent(
        namespace=NAMESPACE,
        cluster_name=CLUSTER_NAME,
        name=name,
        replicas=1,
        volume_claim_template_names=claim_templates,
        pod_spec=client.V1PodSpec(
            containers=[
                client.V1Container(name="mysql", image="apecloud/apecloud-mysql-server:latest", volume_mounts=mounts)
            ],
        ),
    )


def pvc(name: str, *, phase: str = "Pending", namespace: str = NAMESPACE) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace),
        spec=client.V1PersistentVolumeClaimSpec(access_modes=["ReadWriteOnce"]),
        status=client.V1PersistentVolumeClaimStatus(phase=phase),
    )


def cron_job(name: str, *, labels: dict[str, str], namespace: str = NAMESPACE) -> client.V1CronJob:
    return client.V1CronJob(
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        spec=client.V1CronJobSpec(schedule="*/5 * * * *", job_template=client.V1JobTemplateSpec()),
    )


def set_job_condition(job: client.V1Job, condition_type: str, *, message: str | None = None) -> None:
    job.status = client.V1JobStatus(
        conditions=[client.V1JobCondition(type=condition_type, status="True", message=message)]
    )


class FakeResourceClient:
    """In-memory stand-in for the cluster API with resource versions and injectable conflicts."""

    def __init__(self) -> None:
        self.backups: dict[tuple[str, str], dict[str, Any]] = {}
        self.clusters: dict[tuple[str, str], dict[str, Any]] = {}
        self.pvcs: dict[tuple[str, str], client.V1PersistentVolumeClaim] = {}
        self.jobs: dict[tuple[str, str], client.V1Job] = {}
        self.cron_jobs: dict[tuple[str, str], client.V1CronJob] = {}
        self.pending_conflicts = 0
        self.created: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, str]] = []
        self.status_writes = 0
        self._version = 0

    def add_backup(self, raw: dict[str, Any]) -> None:
        metadata = raw["metadata"]
        self.backups[(metadata["namespace"], metadata["name"])] = copy.deepcopy(raw)

    def add_cluster(self, raw: dict[str, Any]) -> None:
        stored = copy.deepcopy(raw)
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.clusters[(stored["metadata"]["namespace"], stored["metadata"]["name"])] = stored

    def update_cluster_phase(self, namespace: str, name: str, phase: str) -> None:
        stored = self.clusters[(namespace, name)]
        stored.setdefault("status", {})["phase"] = phase
        stored["metadata"]["resourceVersion"] = self._next_version()

    def add_pvc(self, claim: client.V1PersistentVolumeClaim) -> None:
        self.pvcs[(claim.metadata.namespace, claim.metadata.name)] = claim

    def add_cron_job(self, cron: client.V1CronJob) -> None:
        self.cron_jobs[(cron.metadata.namespace, cron.metadata.name)] = cron

    def list_backups(self, namespace: str, label_selector: str) -> list[dict[str, Any]]:
        return [
            copy.deepcopy(raw)
            for (item_namespace, _), raw in sorted(self.backups.items())
            if item_namespace == namespace and _matches(raw["metadata"].get("labels") or {}, label_selector)
        ]

    def get_cluster(self, namespace: str, name: str) -> dict[str, Any] | None:
        stored = self.clusters.get((namespace, name))
        return copy.deepcopy(stored) if stored is not None else None

    def replace_cluster_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        stored = self.clusters[(namespace, name)]
        if self.pending_conflicts > 0:
            self.pending_conflicts -= 1
            stored["metadata"]["resourceVersion"] = self._next_version()
            raise ConflictError("the object has been modified", status=409)
        if body["metadata"].get("resourceVersion") != stored["metadata"]["resourceVersion"]:
            raise ConflictError("the object has been modified", status=409)
        stored["status"] = copy.deepcopy(body.get("status") or {})
        stored["metadata"]["resourceVersion"] = self._next_version()
        self.status_writes += 1
        return copy.deepcopy(stored)

    def get_pvc(self, namespace: str, name: str) -> client.V1PersistentVolumeClaim | None:
        return self.pvcs.get((namespace, name))

    def create_pvc(self, namespace: str, body: client.V1PersistentVolumeClaim) -> client.V1PersistentVolumeClaim:
        key = (namespace, body.metadata.name)
        if key in self.pvcs:
            raise AlreadyExistsError(f"persistentvolumeclaims {body.metadata.name} already exists", status=409)
        body.status = client.V1PersistentVolumeClaimStatus(phase="Pending")
        self.pvcs[key] = body
        self.created.append(("PersistentVolumeClaim", body.metadata.name))
        return body

    def delete_pvc(self, namespace: str, name: str) -> bool:
        if self.pvcs.pop((namespace, name), None) is None:
            return False
        self.deleted.append(("PersistentVolumeClaim", name))
        return True

    def get_job(self, namespace: str, name: str) -> client.V1Job | None:
        return self.jobs.get((namespace, name))

    def create_job(self, namespace: str, body: client.V1Job) -> client.V1Job:
        key = (namespace, body.metadata.name)
        if key in self.jobs:
            raise AlreadyExistsError(f"jobs {body.metadata.name} already exists", status=409)
        self.jobs[key] = body
        self.created.append(("Job", body.metadata.name))
        return body

    def delete_job(self, namespace: str, name: str) -> bool:
        if self.jobs.pop((namespace, name), None) is None:
            return False
        self.deleted.append(("Job", name))
        return True

    def list_cron_jobs(self, namespace: str, label_selector: str) -> list[client.V1CronJob]:
        return [
            cron
            for (item_namespace, _), cron in sorted(self.cron_jobs.items())
            if item_namespace == namespace and _matches(cron.metadata.labels or {}, label_selector)
        ]

    def delete_cron_job(self, namespace: str, name: str) -> bool:
        if self.cron_jobs.pop((namespace, name), None) is None:
            return False
        self.deleted.append(("CronJob", name))
        return True

    def _next_version(self) -> str:
        self._version += 1
        return str(self._version)


def _matches(labels: dict[str, str], selector: str) -> bool:
    for requirement in filter(None, (part.strip() for part in selector.split(","))):
        if "=" in requirement:
            key, value = requirement.split("=", 1)
            if labels.get(key) != value:
                return False
        elif requirement not in labels:
            return False
    return True
