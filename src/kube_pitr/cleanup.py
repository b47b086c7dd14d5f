from __future__ import annotations

from dataclasses import dataclass
import logging

from .config import PITRConfig
from .errors import TemplateError
from .k8s import ResourceClient
from .models import APP_INSTANCE_LABEL_KEY, PITR_TRIGGER_LABEL_KEY, ClusterRecord
from .plan import data_pvc_name, log_replay_pvc_name, restore_job_name

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CleanupResult:
    deleted_jobs: tuple[str, ...] = ()
    deleted_cron_jobs: tuple[str, ...] = ()
    deleted_volumes: tuple[str, ...] = ()

    @property
    def deleted_anything(self) -> bool:
        return bool(self.deleted_jobs or self.deleted_cron_jobs or self.deleted_volumes)


def trigger_label_selector(cluster_name: str) -> str:
    return f"{APP_INSTANCE_LABEL_KEY}={cluster_name},{PITR_TRIGGER_LABEL_KEY}"


def cleanup_restore_resources(
    resources: ResourceClient,
    cluster: ClusterRecord,
    config: PITRConfig,
) -> CleanupResult:
    """Delete restore Jobs, PITR trigger CronJobs and log-replay PVCs of the cluster.

    Absent resources are skipped. Data volumes are never deletion targets.
    """
    namespace = cluster.namespace
    protected = {
        data_pvc_name(config.data_volume_name, cluster.name, component.name, ordinal)
        for component in cluster.components
        for ordinal in range(max(0, component.replicas))
    }

    deleted_jobs: list[str] = []
    deleted_volumes: list[str] = []
    for component in cluster.components:
        for ordinal in range(max(0, component.replicas)):
            job_name = restore_job_name(cluster.name, component.name, ordinal)
            if resources.delete_job(namespace, job_name):
                deleted_jobs.append(job_name)

            volume_name = log_replay_pvc_name(cluster.name, component.name, ordinal)
            if volume_name in protected:
                raise TemplateError(
                    f"log-replay volume name {namespace}/{volume_name} collides with a data volume; refusing to delete"
                )
            if resources.delete_pvc(namespace, volume_name):
                deleted_volumes.append(volume_name)

    deleted_cron_jobs: list[str] = []
    for cron_job in resources.list_cron_jobs(namespace, trigger_label_selector(cluster.name)):
        name = cron_job.metadata.name if cron_job.metadata else None
        if name and resources.delete_cron_job(namespace, name):
            deleted_cron_jobs.append(name)

    result = CleanupResult(
        deleted_jobs=tuple(deleted_jobs),
        deleted_cron_jobs=tuple(deleted_cron_jobs),
        deleted_volumes=tuple(deleted_volumes),
    )
    if result.deleted_anything:
        logger.info(
            "Cleaned up PITR resources of %s/%s: jobs=%s cronjobs=%s volumes=%s",
            namespace,
            cluster.name,
            list(result.deleted_jobs),
            list(result.deleted_cron_jobs),
            list(result.deleted_volumes),
        )
    else:
        logger.debug("No PITR resources left to clean up for %s/%s", namespace, cluster.name)
    return result
