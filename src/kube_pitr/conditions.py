from __future__ import annotations

from datetime import UTC, datetime
import copy
import logging

from .errors import ConflictError
from .k8s import ResourceClient
from .models import StatusCondition, format_timestamp

PITR_CONDITION_TYPE = "PITRRestore"
REASON_RESTORE_COMPLETED = "RestoreCompleted"
DEFAULT_MAX_ATTEMPTS = 5

logger = logging.getLogger(__name__)


def set_cluster_condition(
    resources: ResourceClient,
    *,
    namespace: str,
    name: str,
    status: str,
    reason: str,
    message: str,
    condition_type: str = PITR_CONDITION_TYPE,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> bool:
    """Write a status condition on the Cluster, refetching and reapplying on version conflicts.

    Returns True when a write happened and False when the condition already matched or the
    Cluster no longer exists.
    """
    attempts = max(1, max_attempts)
    for attempt in range(1, attempts + 1):
        raw = resources.get_cluster(namespace, name)
        if raw is None:
            logger.debug("Cluster %s/%s is gone; skipping %s condition", namespace, name, condition_type)
            return False

        body = copy.deepcopy(raw)
        status_block = body.get("status") or {}
        body["status"] = status_block
        conditions = list(status_block.get("conditions") or [])

        existing_index = None
        for index, item in enumerate(conditions):
            if item.get("type") == condition_type:
                existing_index = index
                break

        transition_time = format_timestamp(datetime.now(tz=UTC).replace(microsecond=0))
        if existing_index is not None:
            existing = StatusCondition.from_dict(conditions[existing_index])
            if (existing.status, existing.reason, existing.message) == (status, reason, message):
                return False
            if existing.status == status and existing.last_transition_time:
                transition_time = existing.last_transition_time

        condition = StatusCondition(
            type=condition_type,
            status=status,
            reason=reason,
            message=message,
            last_transition_time=transition_time,
        ).to_dict()
        if existing_index is None:
            conditions.append(condition)
        else:
            conditions[existing_index] = condition
        status_block["conditions"] = conditions

        try:
            resources.replace_cluster_status(namespace, name, body)
        except ConflictError:
            if attempt >= attempts:
                raise
            logger.warning(
                "Conflict writing %s condition on %s/%s (attempt %s/%s); refetching",
                condition_type,
                namespace,
                name,
                attempt,
                attempts,
            )
            continue

        logger.info("Set %s=%s (%s) on cluster %s/%s", condition_type, status, reason, namespace, name)
        return True

    return False
