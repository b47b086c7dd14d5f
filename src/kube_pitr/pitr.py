"""Entry points the cluster reconciler calls on every pass while a restore annotation is present.

Each function re-reads what it needs from the API and keeps nothing between calls, so the
reconciler may invoke them any number of times, in any pass, after any interruption.
"""
from __future__ import annotations

from typing import Any, Iterable
import logging

from .cleanup import cleanup_restore_resources
from .conditions import PITR_CONDITION_TYPE, REASON_RESTORE_COMPLETED, set_cluster_condition
from .config import PITRConfig
from .errors import InvalidRestoreTimeError, JobFailedError, LineageNotFoundError, PITRError, TemplateError
from .k8s import ResourceClient
from .lineage import has_backups, select_lineage
from .models import ClusterRecord, SynthesizedComponent, format_timestamp
from .plan import data_volume_mount, inject_restore_steps, restore_job_name
from .restore_job import (
    JOB_CONDITION_COMPLETE,
    ReconcileResult,
    RestoreJobController,
    job_terminal_condition,
)

REASON_RESTORE_IN_PROGRESS = "RestoreInProgress"

logger = logging.getLogger(__name__)


def do_pitr_prepare(
    resources: ResourceClient,
    cluster: ClusterRecord | dict[str, Any],
    component: SynthesizedComponent,
    config: PITRConfig | None = None,
) -> bool:
    """Inject the restore steps into the component's pod spec. Returns whether the spec changed."""
    config = config or PITRConfig()
    record = _as_record(cluster)
    if not record.restore_requested or restore_completed(record):
        return False
    _require_restore_time(resources, record, config)

    if not has_backups(
        resources,
        namespace=record.namespace,
        source_cluster=record.source_cluster or "",
        component=component.name,
    ):
        logger.debug(
            "Component %s/%s/%s has no backups in %s; leaving its template unchanged",
            record.namespace,
            record.name,
            component.name,
            record.source_cluster,
        )
        return False

    try:
        lineage = select_lineage(
            resources,
            namespace=record.namespace,
            source_cluster=record.source_cluster or "",
            component=component.name,
            target_time=record.restore_time,
        )
        return inject_restore_steps(component, lineage, config)
    except (LineageNotFoundError, TemplateError) as error:
        _surface_failure(resources, record, config, error)
        raise


def do_pitr_if_need(
    resources: ResourceClient,
    cluster: ClusterRecord | dict[str, Any],
    config: PITRConfig | None = None,
    components: Iterable[SynthesizedComponent] = (),
) -> bool:
    """Drive the restore jobs one step. Returns True when the caller should requeue.

    Pass the synthesized components given to do_pitr_prepare so each Job mounts the data volume
    where the workload does. Components not passed use config.data_mount_path.
    """
    config = config or PITRConfig()
    record = _as_record(cluster)
    if not record.restore_requested:
        return False

    current = _refetch(resources, record)
    if current is None or not current.restore_requested or restore_completed(current):
        return False
    _require_restore_time(resources, current, config)

    try:
        data_mount_paths = {
            component.name: data_volume_mount(component, config).mount_path for component in components
        }
        controller = RestoreJobController(resources=resources, config=config, data_mount_paths=data_mount_paths)
        result = controller.reconcile(current)
    except (LineageNotFoundError, TemplateError) as error:
        _surface_failure(resources, current, config, error)
        raise

    if result.failed:
        first = result.failed[0]
        error = JobFailedError(namespace=current.namespace, job_name=first.job_name, message=first.message)
        _surface_failure(resources, current, config, error)
        return False

    if result.done:
        set_cluster_condition(
            resources,
            namespace=current.namespace,
            name=current.name,
            status="True",
            reason=REASON_RESTORE_COMPLETED,
            message=_completed_message(current),
            max_attempts=config.conflict_retries,
        )
        return False

    if result.should_requeue:
        set_cluster_condition(
            resources,
            namespace=current.namespace,
            name=current.name,
            status="False",
            reason=REASON_RESTORE_IN_PROGRESS,
            message=_progress_message(result),
            max_attempts=config.conflict_retries,
        )
    return result.should_requeue


def do_pitr_cleanup(
    resources: ResourceClient,
    cluster: ClusterRecord | dict[str, Any],
    config: PITRConfig | None = None,
) -> bool:
    """Remove transient restore resources once the cluster runs. Returns whether cleanup ran."""
    config = config or PITRConfig()
    record = _as_record(cluster)
    if not record.restore_requested:
        return False

    current = _refetch(resources, record)
    if current is None or not current.is_running:
        return False

    if not restore_completed(current):
        active = _active_restore_jobs(resources, current)
        if active:
            logger.info(
                "Deferring PITR cleanup of %s/%s; restore jobs not complete: %s",
                current.namespace,
                current.name,
                ", ".join(active),
            )
            return False
        # Mark completion before deleting, so a later pass never recreates the jobs.
        set_cluster_condition(
            resources,
            namespace=current.namespace,
            name=current.name,
            status="True",
            reason=REASON_RESTORE_COMPLETED,
            message=_completed_message(current),
            max_attempts=config.conflict_retries,
        )

    cleanup_restore_resources(resources, current, config)
    return True


def restore_completed(cluster: ClusterRecord) -> bool:
    condition = cluster.condition(PITR_CONDITION_TYPE)
    return condition is not None and condition.status == "True" and condition.reason == REASON_RESTORE_COMPLETED


def _active_restore_jobs(resources: ResourceClient, cluster: ClusterRecord) -> list[str]:
    active: list[str] = []
    for component in cluster.components:
        for ordinal in range(max(0, component.replicas)):
            name = restore_job_name(cluster.name, component.name, ordinal)
            job = resources.get_job(cluster.namespace, name)
            if job is None:
                continue
            terminal = job_terminal_condition(job)
            if terminal is None or terminal[0] != JOB_CONDITION_COMPLETE:
                active.append(name)
    return active


def _require_restore_time(resources: ResourceClient, cluster: ClusterRecord, config: PITRConfig) -> None:
    if cluster.restore_time is not None:
        return
    error = InvalidRestoreTimeError(
        namespace=cluster.namespace,
        cluster=cluster.name,
        value=cluster.raw_restore_time or "",
    )
    _surface_failure(resources, cluster, config, error)
    raise error


def _surface_failure(
    resources: ResourceClient,
    cluster: ClusterRecord,
    config: PITRConfig,
    error: PITRError,
) -> None:
    logger.warning("PITR restore of %s/%s blocked: %s", cluster.namespace, cluster.name, error)
    set_cluster_condition(
        resources,
        namespace=cluster.namespace,
        name=cluster.name,
        status="False",
        reason=error.reason,
        message=str(error),
        max_attempts=config.conflict_retries,
    )


def _refetch(resources: ResourceClient, cluster: ClusterRecord) -> ClusterRecord | None:
    raw = resources.get_cluster(cluster.namespace, cluster.name)
    if raw is None:
        logger.debug("Cluster %s/%s no longer exists", cluster.namespace, cluster.name)
        return None
    return ClusterRecord.from_dict(raw)


def _as_record(cluster: ClusterRecord | dict[str, Any]) -> ClusterRecord:
    if isinstance(cluster, ClusterRecord):
        return cluster
    return ClusterRecord.from_dict(cluster)


def _completed_message(cluster: ClusterRecord) -> str:
    target = format_timestamp(cluster.restore_time) if cluster.restore_time else "unknown time"
    return f"restored from {cluster.source_cluster} to {target}"


def _progress_message(result: ReconcileResult) -> str:
    return "; ".join(f"{item.job_name}: {item.state.value}" for item in result.ordinals)
