from __future__ import annotations

from datetime import datetime
import logging

from .errors import LineageNotFoundError
from .k8s import ResourceClient
from .models import (
    APP_INSTANCE_LABEL_KEY,
    COMPONENT_NAME_LABEL_KEY,
    BackupKind,
    BackupLineage,
    BackupRecord,
    format_timestamp,
    parse_timestamp,
)

logger = logging.getLogger(__name__)


def backup_label_selector(source_cluster: str, component: str) -> str:
    return f"{APP_INSTANCE_LABEL_KEY}={source_cluster},{COMPONENT_NAME_LABEL_KEY}={component}"


def has_backups(
    resources: ResourceClient,
    *,
    namespace: str,
    source_cluster: str,
    component: str,
) -> bool:
    """Whether any Backup of the source component exists, in any phase.

    Components that were never backed up (stateless proxies and the like) take no part in a restore.
    """
    return bool(resources.list_backups(namespace, backup_label_selector(source_cluster, component)))


def list_completed_backups(
    resources: ResourceClient,
    *,
    namespace: str,
    source_cluster: str,
    component: str,
) -> tuple[list[BackupRecord], list[BackupRecord]]:
    """Return (base, incremental) backups of the source component that finished successfully."""
    raw_backups = resources.list_backups(namespace, backup_label_selector(source_cluster, component))
    bases: list[BackupRecord] = []
    incrementals: list[BackupRecord] = []
    for raw in raw_backups:
        backup = BackupRecord.from_dict(raw)
        if not backup.is_completed:
            logger.debug("Ignoring backup %s/%s in phase %s", namespace, backup.name, backup.phase)
            continue
        if backup.kind is BackupKind.BASE:
            bases.append(backup)
        elif backup.kind is BackupKind.INCREMENTAL:
            incrementals.append(backup)
    return bases, incrementals


def select_lineage(
    resources: ResourceClient,
    *,
    namespace: str,
    source_cluster: str,
    component: str,
    target_time: datetime,
) -> BackupLineage:
    target_time = parse_timestamp(target_time)
    bases, incrementals = list_completed_backups(
        resources,
        namespace=namespace,
        source_cluster=source_cluster,
        component=component,
    )
    lineage = choose_lineage(
        bases,
        incrementals,
        target_time=target_time,
        source_cluster=source_cluster,
        component=component,
    )
    logger.info(
        "Selected lineage for %s/%s at %s: %s",
        namespace,
        source_cluster,
        format_timestamp(target_time),
        ", ".join(lineage.backup_names),
    )
    return lineage


def choose_lineage(
    bases: list[BackupRecord],
    incrementals: list[BackupRecord],
    *,
    target_time: datetime,
    source_cluster: str,
    component: str,
) -> BackupLineage:
    """Pick the latest usable base and the fewest incrementals that extend it past target_time.

    Coverage grows greedily: at each step the candidate whose log window starts at or before the
    current coverage end and reaches furthest is taken. Ties prefer the earliest window start.
    """
    rendered_target = format_timestamp(target_time)

    def _not_found(detail: str) -> LineageNotFoundError:
        return LineageNotFoundError(
            source_cluster=source_cluster,
            component=component,
            target_time=rendered_target,
            detail=detail,
        )

    eligible_bases = [
        (backup.completion_time, backup)
        for backup in bases
        if backup.completion_time is not None and backup.completion_time <= target_time
    ]
    if not eligible_bases:
        raise _not_found("no completed base backup finished at or before the target time")
    base_completion, base = max(eligible_bases, key=lambda item: (item[0], item[1].name))

    coverage_end = base_completion
    remaining = [
        backup
        for backup in incrementals
        if backup.coverage_start is not None and backup.coverage_stop is not None
    ]
    selected: list[BackupRecord] = []
    while coverage_end < target_time:
        candidates = [
            backup
            for backup in remaining
            if backup.coverage_start <= coverage_end and backup.coverage_stop > coverage_end
        ]
        if not candidates:
            raise _not_found(
                f"incremental backups stop covering at {format_timestamp(coverage_end)}"
            )
        chosen = min(
            candidates,
            key=lambda backup: (
                -backup.coverage_stop.timestamp(),
                backup.coverage_start,
                backup.start_time or backup.coverage_start,
                backup.name,
            ),
        )
        selected.append(chosen)
        remaining.remove(chosen)
        coverage_end = chosen.coverage_stop

    selected.sort(key=lambda backup: (backup.start_time or backup.coverage_start, backup.name))
    log_volume_names: list[str] = []
    for backup in selected:
        if backup.log_volume_name and backup.log_volume_name not in log_volume_names:
            log_volume_names.append(backup.log_volume_name)

    return BackupLineage(
        base=base,
        incrementals=tuple(selected),
        window_start=base_completion,
        window_end=coverage_end,
        target_time=target_time,
        log_volume_names=tuple(log_volume_names),
    )
