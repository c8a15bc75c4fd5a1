"""Audit service for the append-only activity trail."""

from typing import Any, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from medreports.db.base import dump_json
from medreports.models.activity_log import ActivityLog


class AuditService:
    """Service for audit logging operations."""

    async def log_action(
        self,
        db: AsyncSession,
        action: str,
        entity_type: str,
        entity_id: str,
        user_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> ActivityLog:
        """Append an entry to the activity trail.

        Args:
            db: Database session
            action: Action name (see ActivityAction)
            entity_type: Type of entity affected (e.g. "report", "template")
            entity_id: ID of the affected entity
            user_id: ID of the acting user, None for system actions
            details: Additional structured context

        Returns:
            Created activity log entry

        Raises:
            ValueError: If required fields are missing
        """
        if not action:
            raise ValueError("action is required")
        if not entity_type:
            raise ValueError("entity_type is required")

        entry = ActivityLog(
            user_id=user_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=dump_json(details or {}),
        )
        db.add(entry)
        await db.flush()
        return entry
