from __future__ import annotations

import hashlib
import logging
import re

from kubernetes import client

from .config import PITRConfig
from .errors import TemplateError
from .models import (
    APP_INSTANCE_LABEL_KEY,
    CLUSTER_GROUP,
    CLUSTER_VERSION,
    COMPONENT_NAME_LABEL_KEY,
    MANAGED_BY_LABEL_KEY,
    MANAGED_BY_LABEL_VALUE,
    BackupLineage,
    ClusterRecord,
    SynthesizedComponent,
    format_timestamp,
)

BASE_RESTORE_CONTAINER_NAME = "pitr-base-restore"
LOG_REPLAY_CONTAINER_NAME = "pitr-log-replay"
RESTORE_STEP_NAMES = (BASE_RESTORE_CONTAINER_NAME, LOG_REPLAY_CONTAINER_NAME)
LOG_VOLUME_PREFIX = "pitr-log"
REPLAY_VOLUME_NAME = "pitr-replay"
JOB_NAME_PREFIX = "pitr-phy"
LOG_REPLAY_PVC_PREFIX = "pitr-replay"
MAX_NAME_LENGTH = 63

logger = logging.getLogger(__name__)


def restore_job_name(cluster_name: str, component_name: str, ordinal: int) -> str:
    return _sanitize_dns_label(f"{JOB_NAME_PREFIX}-{cluster_name}-{component_name}-{ordinal}")


def log_replay_pvc_name(cluster_name: str, component_name: str, ordinal: int) -> str:
    return _sanitize_dns_label(f"{LOG_REPLAY_PVC_PREFIX}-{cluster_name}-{component_name}-{ordinal}")


def data_pvc_name(volume_name: str, cluster_name: str, component_name: str, ordinal: int) -> str:
    # StatefulSet claim naming: <template>-<statefulset>-<ordinal>.
    return f"{volume_name}-{cluster_name}-{component_name}-{ordinal}"


def restore_labels(cluster_name: str, component_name: str) -> dict[str, str]:
    return {
        APP_INSTANCE_LABEL_KEY: cluster_name,
        COMPONENT_NAME_LABEL_KEY: component_name,
        MANAGED_BY_LABEL_KEY: MANAGED_BY_LABEL_VALUE,
    }


def inject_restore_steps(
    component: SynthesizedComponent,
    lineage: BackupLineage,
    config: PITRConfig,
) -> bool:
    """Add the base-restore and log-replay init containers to the component's pod spec.

    Returns False without touching the spec when both steps are already present.
    Raises TemplateError if no container mounts the data volume.
    """
    pod_spec = component.pod_spec
    anchor = data_volume_mount(component, config)

    init_containers = list(pod_spec.init_containers or [])
    present = {container.name for container in init_containers}
    if all(name in present for name in RESTORE_STEP_NAMES):
        logger.debug(
            "Restore steps already present for %s/%s/%s",
            component.namespace,
            component.cluster_name,
            component.name,
        )
        return False
    init_containers = [container for container in init_containers if container.name not in RESTORE_STEP_NAMES]

    log_mounts = _log_volume_mounts(lineage, config)
    data_mount = client.V1VolumeMount(name=anchor.name, mount_path=anchor.mount_path)
    init_containers.append(_base_restore_container(lineage, config, data_mount))
    init_containers.append(_log_replay_container(lineage, config, data_mount, log_mounts))
    pod_spec.init_containers = init_containers

    volumes = list(pod_spec.volumes or [])
    declared = {volume.name for volume in volumes}
    for volume in _log_volumes(lineage):
        if volume.name not in declared:
            volumes.append(volume)
    pod_spec.volumes = volumes

    logger.info(
        "Injected restore steps into %s/%s/%s for recovery to %s",
        component.namespace,
        component.cluster_name,
        component.name,
        format_timestamp(lineage.target_time),
    )
    return True


def data_volume_mount(component: SynthesizedComponent, config: PITRConfig) -> client.V1VolumeMount:
    """Return the workload's mount of the data volume, where the restore steps write."""
    claim_templates = component.volume_claim_template_names
    if claim_templates and config.data_volume_name not in claim_templates:
        raise TemplateError(
            f"component {component.namespace}/{component.cluster_name}/{component.name} has no volume claim "
            f"template named '{config.data_volume_name}'; restored data would not persist"
        )
    anchor = _find_data_volume_mount(component.pod_spec, config.data_volume_name)
    if anchor is None:
        raise TemplateError(
            f"component {component.namespace}/{component.cluster_name}/{component.name} has no container "
            f"mounting the '{config.data_volume_name}' volume to anchor the restore steps"
        )
    return anchor


def build_restore_job(
    *,
    cluster: ClusterRecord,
    component_name: str,
    ordinal: int,
    lineage: BackupLineage,
    config: PITRConfig,
    data_mount_path: str | None = None,
) -> client.V1Job:
    """Render the restore Job of one ordinal.

    data_mount_path should be the workload's own mount path of the data volume, so the Job runs
    the steps exactly as injected into the template. It falls back to config.data_mount_path.
    """
    data_claim = data_pvc_name(config.data_volume_name, cluster.name, component_name, ordinal)
    replay_claim = log_replay_pvc_name(cluster.name, component_name, ordinal)
    data_mount = client.V1VolumeMount(
        name=config.data_volume_name,
        mount_path=data_mount_path or config.data_mount_path,
    )
    replay_mount = client.V1VolumeMount(name=REPLAY_VOLUME_NAME, mount_path=config.replay_mount_path)

    replay_container = _log_replay_container(lineage, config, data_mount, _log_volume_mounts(lineage, config))
    replay_container.volume_mounts.append(replay_mount)
    replay_container.env.append(client.V1EnvVar(name="KB_PITR_REPLAY_DIR", value=config.replay_mount_path))

    volumes = [
        client.V1Volume(
            name=config.data_volume_name,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=data_claim),
        ),
        client.V1Volume(
            name=REPLAY_VOLUME_NAME,
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(claim_name=replay_claim),
        ),
        *_log_volumes(lineage),
    ]

    return client.V1Job(
        api_version="batch/v1",
        kind="Job",
        metadata=client.V1ObjectMeta(
            name=restore_job_name(cluster.name, component_name, ordinal),
            namespace=cluster.namespace,
            labels=restore_labels(cluster.name, component_name),
            owner_references=_owner_references(cluster),
        ),
        spec=client.V1JobSpec(
            backoff_limit=config.job_backoff_limit,
            template=client.V1PodTemplateSpec(
                metadata=client.V1ObjectMeta(labels=restore_labels(cluster.name, component_name)),
                spec=client.V1PodSpec(
                    restart_policy="Never",
                    init_containers=[_base_restore_container(lineage, config, data_mount)],
                    containers=[replay_container],
                    volumes=volumes,
                ),
            ),
        ),
    )


def build_log_replay_pvc(
    *,
    cluster: ClusterRecord,
    component_name: str,
    ordinal: int,
    config: PITRConfig,
) -> client.V1PersistentVolumeClaim:
    return client.V1PersistentVolumeClaim(
        api_version="v1",
        kind="PersistentVolumeClaim",
        metadata=client.V1ObjectMeta(
            name=log_replay_pvc_name(cluster.name, component_name, ordinal),
            namespace=cluster.namespace,
            labels=restore_labels(cluster.name, component_name),
            owner_references=_owner_references(cluster),
        ),
        spec=client.V1PersistentVolumeClaimSpec(
            access_modes=["ReadWriteOnce"],
            storage_class_name=config.log_replay_storage_class,
            resources=client.V1VolumeResourceRequirements(
                requests={"storage": config.log_replay_volume_size},
            ),
        ),
    )


def _base_restore_container(
    lineage: BackupLineage,
    config: PITRConfig,
    data_mount: client.V1VolumeMount,
) -> client.V1Container:
    base = lineage.base
    env = [
        client.V1EnvVar(name="KB_PITR_BACKUP_NAME", value=base.name),
        client.V1EnvVar(name="KB_PITR_DATA_DIR", value=data_mount.mount_path),
    ]
    if base.start_time is not None:
        env.append(client.V1EnvVar(name="KB_PITR_BASE_START_TIME", value=format_timestamp(base.start_time)))
    env.append(client.V1EnvVar(name="KB_PITR_BASE_STOP_TIME", value=format_timestamp(lineage.window_start)))
    if base.backup_tool_name:
        env.append(client.V1EnvVar(name="KB_PITR_BACKUP_TOOL", value=base.backup_tool_name))

    return client.V1Container(
        name=BASE_RESTORE_CONTAINER_NAME,
        image=config.restore_image,
        image_pull_policy=config.image_pull_policy,
        command=[config.restore_entrypoint, "base"],
        env=env,
        volume_mounts=[_copy_mount(data_mount)],
    )


def _log_replay_container(
    lineage: BackupLineage,
    config: PITRConfig,
    data_mount: client.V1VolumeMount,
    log_mounts: list[client.V1VolumeMount],
) -> client.V1Container:
    env = [
        client.V1EnvVar(
            name="KB_PITR_INCREMENTAL_BACKUPS",
            value=",".join(backup.name for backup in lineage.incrementals),
        ),
        client.V1EnvVar(name="KB_PITR_RECOVERY_START_TIME", value=format_timestamp(lineage.window_start)),
        # Replay stops at the requested time, not at the end of the last log window.
        client.V1EnvVar(name="KB_PITR_RECOVERY_TIME", value=format_timestamp(lineage.target_time)),
        client.V1EnvVar(name="KB_PITR_DATA_DIR", value=data_mount.mount_path),
        client.V1EnvVar(name="KB_PITR_LOG_DIRS", value=",".join(mount.mount_path for mount in log_mounts)),
    ]
    return client.V1Container(
        name=LOG_REPLAY_CONTAINER_NAME,
        image=config.restore_image,
        image_pull_policy=config.image_pull_policy,
        command=[config.restore_entrypoint, "replay"],
        env=env,
        volume_mounts=[_copy_mount(data_mount), *log_mounts],
    )


def _log_volume_mounts(lineage: BackupLineage, config: PITRConfig) -> list[client.V1VolumeMount]:
    base_path = config.log_mount_path.rstrip("/") or "/"
    return [
        client.V1VolumeMount(
            name=f"{LOG_VOLUME_PREFIX}-{index}",
            mount_path=f"{base_path}/{index}",
            read_only=True,
        )
        for index, _ in enumerate(lineage.log_volume_names)
    ]


def _log_volumes(lineage: BackupLineage) -> list[client.V1Volume]:
    return [
        client.V1Volume(
            name=f"{LOG_VOLUME_PREFIX}-{index}",
            persistent_volume_claim=client.V1PersistentVolumeClaimVolumeSource(
                claim_name=claim_name,
                read_only=True,
            ),
        )
        for index, claim_name in enumerate(lineage.log_volume_names)
    ]


def _find_data_volume_mount(pod_spec: client.V1PodSpec, volume_name: str) -> client.V1VolumeMount | None:
    for container in pod_spec.containers or []:
        for mount in container.volume_mounts or []:
            if mount.name == volume_name:
                return mount
    return None


def _copy_mount(mount: client.V1VolumeMount) -> client.V1VolumeMount:
    return client.V1VolumeMount(name=mount.name, mount_path=mount.mount_path, read_only=mount.read_only)


def _owner_references(cluster: ClusterRecord) -> list[client.V1OwnerReference] | None:
    if not cluster.uid:
        return None
    return [
        client.V1OwnerReference(
            api_version=f"{CLUSTER_GROUP}/{CLUSTER_VERSION}",
            kind="Cluster",
            name=cluster.name,
            uid=cluster.uid,
            block_owner_deletion=True,
        )
    ]


def _sanitize_dns_label(value: str, max_length: int = MAX_NAME_LENGTH) -> str:
    lowered = value.lower()
    normalized = re.sub(r"[^a-z0-9-]", "-", lowered).strip("-")
    normalized = re.sub(r"-+", "-", normalized)
    if len(normalized) > max_length:
        # Keep long names distinct per ordinal by suffixing a digest of the full name.
        digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:8]
        normalized = f"{normalized[: max_length - len(digest) - 1].rstrip('-')}-{digest}"
    return normalized or JOB_NAME_PREFIX
