from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Mapping
import logging

from kubernetes import client

from .config import PITRConfig
from .errors import AlreadyExistsError, LineageNotFoundError
from .k8s import ResourceClient
from .lineage import has_backups, select_lineage
from .models import PVC_PHASE_BOUND, BackupLineage, ClusterRecord, format_timestamp
from .plan import (
    build_log_replay_pvc,
    build_restore_job,
    data_pvc_name,
    log_replay_pvc_name,
    restore_job_name,
)

JOB_CONDITION_COMPLETE = "Complete"
JOB_CONDITION_FAILED = "Failed"

logger = logging.getLogger(__name__)


class RestoreJobState(str, Enum):
    WAITING_FOR_DATA_VOLUME = "WaitingForDataVolume"
    JOB_PENDING = "JobPending"
    JOB_RUNNING = "JobRunning"
    JOB_FAILED = "JobFailed"
    WAITING_CLUSTER = "WaitingCluster"
    DONE = "Done"

    @property
    def requeue(self) -> bool:
        return self not in {RestoreJobState.JOB_FAILED, RestoreJobState.DONE}


@dataclass(frozen=True)
class OrdinalResult:
    component: str
    ordinal: int
    job_name: str
    state: RestoreJobState
    message: str = ""


@dataclass(frozen=True)
class ReconcileResult:
    ordinals: tuple[OrdinalResult, ...]

    @property
    def failed(self) -> tuple[OrdinalResult, ...]:
        return tuple(item for item in self.ordinals if item.state is RestoreJobState.JOB_FAILED)

    @property
    def done(self) -> bool:
        return bool(self.ordinals) and all(item.state is RestoreJobState.DONE for item in self.ordinals)

    @property
    def should_requeue(self) -> bool:
        if self.failed:
            return False
        return any(item.state.requeue for item in self.ordinals)


def job_terminal_condition(job: client.V1Job) -> tuple[str, str] | None:
    """Return (type, message) of the first true Complete/Failed condition, if any."""
    status = job.status
    for condition in (status.conditions if status else None) or []:
        if condition.type not in {JOB_CONDITION_COMPLETE, JOB_CONDITION_FAILED}:
            continue
        # An unset status counts as true; some writers only record the condition type.
        if condition.status in {"True", "", None}:
            return condition.type, (condition.message or condition.reason or "").strip()
    return None


def observe_restore_job(
    *,
    pvc: client.V1PersistentVolumeClaim | None,
    job: client.V1Job | None,
    cluster_running: bool,
) -> RestoreJobState:
    phase = pvc.status.phase if pvc is not None and pvc.status else None
    if phase != PVC_PHASE_BOUND:
        return RestoreJobState.WAITING_FOR_DATA_VOLUME
    if job is None:
        return RestoreJobState.JOB_PENDING

    terminal = job_terminal_condition(job)
    if terminal is None:
        return RestoreJobState.JOB_RUNNING
    if terminal[0] == JOB_CONDITION_FAILED:
        return RestoreJobState.JOB_FAILED
    if not cluster_running:
        return RestoreJobState.WAITING_CLUSTER
    return RestoreJobState.DONE


class RestoreJobController:
    def __init__(
        self,
        *,
        resources: ResourceClient,
        config: PITRConfig,
        data_mount_paths: Mapping[str, str] | None = None,
    ) -> None:
        self.resources = resources
        self.config = config
        # Component name -> the workload's data mount path, as used by the injected steps.
        self.data_mount_paths = dict(data_mount_paths or {})

    def reconcile(self, cluster: ClusterRecord) -> ReconcileResult:
        if not cluster.components:
            logger.warning("Cluster %s/%s declares no components to restore", cluster.namespace, cluster.name)
            return ReconcileResult(ordinals=())

        restored = [component for component in cluster.components if self._has_backups(cluster, component.name)]
        if not restored:
            raise LineageNotFoundError(
                source_cluster=cluster.source_cluster or "",
                component=",".join(component.name for component in cluster.components),
                target_time=format_timestamp(cluster.restore_time) if cluster.restore_time else "",
                detail="no component of the source cluster has backups",
            )

        lineages: dict[str, BackupLineage] = {}
        results: list[OrdinalResult] = []
        for component in restored:
            for ordinal in range(max(0, component.replicas)):
                results.append(
                    self.reconcile_ordinal(
                        cluster=cluster,
                        component_name=component.name,
                        ordinal=ordinal,
                        lineages=lineages,
                    )
                )
        return ReconcileResult(ordinals=tuple(results))

    def reconcile_ordinal(
        self,
        *,
        cluster: ClusterRecord,
        component_name: str,
        ordinal: int,
        lineages: dict[str, BackupLineage] | None = None,
    ) -> OrdinalResult:
        namespace = cluster.namespace
        job_name = restore_job_name(cluster.name, component_name, ordinal)
        pvc = self.resources.get_pvc(
            namespace,
            data_pvc_name(self.config.data_volume_name, cluster.name, component_name, ordinal),
        )
        job = self.resources.get_job(namespace, job_name)
        state = observe_restore_job(pvc=pvc, job=job, cluster_running=cluster.is_running)
        logger.debug("Restore job %s/%s observed as %s", namespace, job_name, state.value)

        message = ""
        if state is RestoreJobState.JOB_PENDING:
            lineage = self._lineage_for(cluster, component_name, lineages if lineages is not None else {})
            self._ensure_log_replay_volume(cluster=cluster, component_name=component_name, ordinal=ordinal)
            self._create_restore_job(
                cluster=cluster,
                component_name=component_name,
                ordinal=ordinal,
                lineage=lineage,
            )
        elif state is RestoreJobState.JOB_FAILED and job is not None:
            terminal = job_terminal_condition(job)
            message = terminal[1] if terminal else ""
            logger.warning(
                "Restore job %s/%s failed; delete it to retry: %s",
                namespace,
                job_name,
                message or "no message",
            )

        return OrdinalResult(
            component=component_name,
            ordinal=ordinal,
            job_name=job_name,
            state=state,
            message=message,
        )

    def _has_backups(self, cluster: ClusterRecord, component_name: str) -> bool:
        found = has_backups(
            self.resources,
            namespace=cluster.namespace,
            source_cluster=cluster.source_cluster or "",
            component=component_name,
        )
        if not found:
            logger.debug(
                "Component %s/%s/%s has no backups in %s; not restoring it",
                cluster.namespace,
                cluster.name,
                component_name,
                cluster.source_cluster,
            )
        return found

    def _lineage_for(
        self,
        cluster: ClusterRecord,
        component_name: str,
        lineages: dict[str, BackupLineage],
    ) -> BackupLineage:
        if component_name not in lineages:
            lineages[component_name] = select_lineage(
                self.resources,
                namespace=cluster.namespace,
                source_cluster=cluster.source_cluster or "",
                component=component_name,
                target_time=cluster.restore_time,
            )
        return lineages[component_name]

    def _ensure_log_replay_volume(self, *, cluster: ClusterRecord, component_name: str, ordinal: int) -> None:
        name = log_replay_pvc_name(cluster.name, component_name, ordinal)
        if self.resources.get_pvc(cluster.namespace, name) is not None:
            return
        body = build_log_replay_pvc(
            cluster=cluster,
            component_name=component_name,
            ordinal=ordinal,
            config=self.config,
        )
        try:
            self.resources.create_pvc(cluster.namespace, body)
        except AlreadyExistsError:
            logger.debug("Log-replay PVC %s/%s already exists", cluster.namespace, name)
            return
        logger.info("Created log-replay PVC %s/%s", cluster.namespace, name)

    def _create_restore_job(
        self,
        *,
        cluster: ClusterRecord,
        component_name: str,
        ordinal: int,
        lineage: BackupLineage,
    ) -> None:
        body = build_restore_job(
            cluster=cluster,
            component_name=component_name,
            ordinal=ordinal,
            lineage=lineage,
            config=self.config,
            data_mount_path=self.data_mount_paths.get(component_name),
        )
        try:
            self.resources.create_job(cluster.namespace, body)
        except AlreadyExistsError:
            # Another pass created it between our read and write.
            logger.debug("Restore job %s/%s already exists", cluster.namespace, body.metadata.name)
            return
        logger.info(
            "Created restore job %s/%s from %s",
            cluster.namespace,
            body.metadata.name,
            ", ".join(lineage.backup_names),
        )
