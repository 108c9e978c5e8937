from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Any

from salescrm.context import get_correlation_id

logger = logging.getLogger("salescrm.audit")

audit_entries: list[dict[str, Any]] = []


def record(
    actor_user_id: int,
    entity_type: str,
    entity_id: int | None,
    action: str,
    before: dict[str, Any] | None = None,
    after: dict[str, Any] | None = None,
    meta: dict[str, Any] | None = None,
    correlation_id: str | None = None,
    workspace_id: int | None = None,
) -> None:
    """Append an audit entry. Callers never wait on or react to the outcome."""

    entry = {
        "id": str(uuid.uuid4()),
        "actor_user_id": actor_user_id,
        "workspace_id": workspace_id,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "action": action,
        "before": before,
        "after": after,
        "meta": meta,
        "correlation_id": correlation_id or get_correlation_id(),
        "occurred_at": datetime.now(timezone.utc).isoformat(),
    }
    audit_entries.append(entry)
    logger.debug("audit.recorded", extra={"object_type": entity_type, "record_id": entity_id})


def list_entries(
    *,
    workspace_id: int | None = None,
    entity_type: str | None = None,
    limit: int = 100,
) -> list[dict[str, Any]]:
    """Newest first. A workspace id limits the result to entries recorded in that workspace."""
    rows = [
        entry
        for entry in audit_entries
        if (workspace_id is None or entry["workspace_id"] == workspace_id)
        and (entity_type is None or entry["entity_type"] == entity_type)
    ]
    return list(reversed(rows))[:limit]
