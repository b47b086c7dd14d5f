from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from kubernetes import client

APP_INSTANCE_LABEL_KEY = "app.kubernetes.io/instance"
COMPONENT_NAME_LABEL_KEY = "apps.kubeblocks.io/component-name"
BACKUP_TYPE_LABEL_KEY = "dataprotection.kubeblocks.io/backup-type"
PITR_TRIGGER_LABEL_KEY = "kubeblocks.io/pitr-trigger"
MANAGED_BY_LABEL_KEY = "app.kubernetes.io/managed-by"
MANAGED_BY_LABEL_VALUE = "kube-pitr"

RESTORE_FROM_TIME_ANNOTATION_KEY = "kubeblocks.io/restore-from-time"
RESTORE_FROM_SOURCE_CLUSTER_ANNOTATION_KEY = "kubeblocks.io/restore-from-source-cluster"

BACKUP_GROUP = "dataprotection.kubeblocks.io"
BACKUP_VERSION = "v1alpha1"
BACKUP_PLURAL = "backups"
CLUSTER_GROUP = "apps.kubeblocks.io"
CLUSTER_VERSION = "v1alpha1"
CLUSTER_PLURAL = "clusters"

CLUSTER_PHASE_RUNNING = "Running"
BACKUP_PHASE_COMPLETED = "Completed"
PVC_PHASE_BOUND = "Bound"

_BASE_BACKUP_TYPES = frozenset({"snapshot", "full", "datafile"})
_INCREMENTAL_BACKUP_TYPES = frozenset({"incremental", "logfile"})


class BackupKind(str, Enum):
    BASE = "Base"
    INCREMENTAL = "Incremental"


@dataclass(frozen=True)
class ComponentSpec:
    name: str
    replicas: int


@dataclass(frozen=True)
class StatusCondition:
    type: str
    status: str
    reason: str
    message: str
    last_transition_time: str

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> StatusCondition:
        return cls(
            type=str(raw.get("type") or ""),
            status=str(raw.get("status") or "Unknown"),
            reason=str(raw.get("reason") or ""),
            message=str(raw.get("message") or ""),
            last_transition_time=str(raw.get("lastTransitionTime") or ""),
        )

    def to_dict(self) -> dict[str, str]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass(frozen=True)
class ClusterRecord:
    namespace: str
    name: str
    uid: str
    resource_version: str | None
    phase: str | None
    restore_time: datetime | None
    source_cluster: str | None
    components: tuple[ComponentSpec, ...]
    conditions: tuple[StatusCondition, ...] = ()
    # Annotation value as written; restore_time is None when it does not parse.
    raw_restore_time: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> ClusterRecord:
        metadata = raw.get("metadata") or {}
        annotations = metadata.get("annotations") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}

        raw_restore_time = annotations.get(RESTORE_FROM_TIME_ANNOTATION_KEY)
        components = tuple(
            ComponentSpec(name=str(item.get("name") or ""), replicas=_replicas(item.get("replicas")))
            for item in spec.get("componentSpecs") or []
            if item.get("name")
        )
        return cls(
            namespace=str(metadata.get("namespace") or ""),
            name=str(metadata.get("name") or ""),
            uid=str(metadata.get("uid") or ""),
            resource_version=metadata.get("resourceVersion"),
            phase=status.get("phase"),
            restore_time=_lenient_timestamp(raw_restore_time),
            source_cluster=annotations.get(RESTORE_FROM_SOURCE_CLUSTER_ANNOTATION_KEY) or None,
            components=components,
            conditions=tuple(StatusCondition.from_dict(item) for item in status.get("conditions") or []),
            raw_restore_time=str(raw_restore_time) if raw_restore_time else None,
        )

    @property
    def restore_requested(self) -> bool:
        has_time = self.restore_time is not None or bool(self.raw_restore_time)
        return has_time and bool(self.source_cluster)

    @property
    def is_running(self) -> bool:
        return self.phase == CLUSTER_PHASE_RUNNING

    def condition(self, condition_type: str) -> StatusCondition | None:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


@dataclass(frozen=True)
class BackupRecord:
    name: str
    namespace: str
    kind: BackupKind | None
    phase: str | None
    start_time: datetime | None
    completion_time: datetime | None
    log_start_time: datetime | None
    log_stop_time: datetime | None
    log_volume_name: str | None
    backup_tool_name: str | None = None

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> BackupRecord:
        metadata = raw.get("metadata") or {}
        labels = metadata.get("labels") or {}
        spec = raw.get("spec") or {}
        status = raw.get("status") or {}
        manifests = status.get("manifests") or {}
        backup_log = manifests.get("backupLog") or {}

        raw_type = labels.get(BACKUP_TYPE_LABEL_KEY) or spec.get("backupType") or ""
        return cls(
            name=str(metadata.get("name") or ""),
            namespace=str(metadata.get("namespace") or ""),
            kind=_backup_kind(str(raw_type)),
            phase=status.get("phase"),
            start_time=_optional_timestamp(status.get("startTimestamp")),
            completion_time=_optional_timestamp(status.get("completionTimestamp")),
            log_start_time=_optional_timestamp(backup_log.get("startTime")),
            log_stop_time=_optional_timestamp(backup_log.get("stopTime")),
            log_volume_name=status.get("persistentVolumeClaimName") or None,
            backup_tool_name=status.get("backupToolName") or None,
        )

    @property
    def is_completed(self) -> bool:
        return self.phase == BACKUP_PHASE_COMPLETED

    @property
    def coverage_start(self) -> datetime | None:
        return self.log_start_time or self.start_time

    @property
    def coverage_stop(self) -> datetime | None:
        return self.log_stop_time or self.completion_time


@dataclass(frozen=True)
class BackupLineage:
    base: BackupRecord
    incrementals: tuple[BackupRecord, ...]
    window_start: datetime
    window_end: datetime
    target_time: datetime
    log_volume_names: tuple[str, ...]

    @property
    def backup_names(self) -> tuple[str, ...]:
        return (self.base.name, *(backup.name for backup in self.incrementals))


@dataclass
class SynthesizedComponent:
    """Resolved workload spec for one component, mutated in place by the restore plan builder."""

    namespace: str
    cluster_name: str
    name: str
    replicas: int
    pod_spec: client.V1PodSpec
    # Empty when the caller does not report the workload's claim templates.
    volume_claim_template_names: tuple[str, ...] = ()


def parse_timestamp(value: str | datetime) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    else:
        normalized = value.strip()
        if normalized.endswith(("Z", "z")):
            normalized = f"{normalized[:-1]}+00:00"
        parsed = datetime.fromisoformat(normalized)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def format_timestamp(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def _lenient_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


def _optional_timestamp(value: str | datetime | None) -> datetime | None:
    if value is None or value == "":
        return None
    return parse_timestamp(value)


def _backup_kind(raw_type: str) -> BackupKind | None:
    normalized = raw_type.strip().lower()
    if normalized in _BASE_BACKUP_TYPES:
        return BackupKind.BASE
    if normalized in _INCREMENTAL_BACKUP_TYPES:
        return BackupKind.INCREMENTAL
    return None


def _replicas(value: Any) -> int:
    if value is None or value == "":
        return 1
    return int(value)
