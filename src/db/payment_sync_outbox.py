#!/usr/bin/env python3
"""
Payment Sync Outbox Database Module

Records user_payments writes that failed after the provider-side state was
already known (webhook handlers, cancellation). The reconciliation job
re-applies pending rows at the start of each run and resolves them.
"""

import json
import logging
from datetime import datetime
from typing import Any

from src.config.supabase_config import execute_with_retry
from src.utils.security_validators import sanitize_for_logging
from src.utils.timestamps import to_iso, utc_now_iso

logger = logging.getLogger(__name__)

PAYMENT_SYNC_OUTBOX_TABLE = "payment_sync_outbox"


class PaymentSyncOutbox:
    """Pending local-sync entries, one row per failed write."""

    def __init__(self, client: Any | None = None):
        self._client = client

    def _execute(self, operation, operation_name: str):
        return execute_with_retry(operation, operation_name=operation_name, client=self._client)

    def record(
        self,
        user_id: str | None,
        source: str,
        payload: dict[str, Any],
        error: str,
        *,
        event_at: datetime | None = None,
    ) -> bool:
        """
        Record a failed local write.

        Never raises: the caller is already on a failure path and the remote
        state stays authoritative.

        Args:
            user_id: Affected user, when known
            source: Where the write came from (e.g. 'webhook:customer.subscription.updated')
            payload: Fields that should have been written
            error: Error message from the failed write
            event_at: When the provider emitted the change, if known

        Returns:
            True if the entry was stored
        """
        row = {
            "user_id": user_id,
            "source": source,
            # Round-trip through json so datetimes and enums become plain values
            "payload": json.loads(json.dumps(payload, default=str)),
            "error": error[:1000],
            "event_at": to_iso(event_at) if event_at is not None else None,
            "created_at": utc_now_iso(),
        }

        def _insert(client):
            return client.table(PAYMENT_SYNC_OUTBOX_TABLE).insert(row).execute()

        try:
            result = self._execute(_insert, "record_pending_sync")
        except Exception as e:
            logger.error(
                "Failed to record pending payment sync for user %s (%s): %s",
                sanitize_for_logging(user_id),
                source,
                e,
                exc_info=True,
            )
            return False

        if result.data:
            logger.warning(
                "Recorded pending payment sync for user %s from %s",
                sanitize_for_logging(user_id),
                source,
            )
            return True
        return False

    def list_pending(self, limit: int = 100) -> list[dict[str, Any]]:
        """Return unresolved entries, oldest first."""

        def _select(client):
            return (
                client.table(PAYMENT_SYNC_OUTBOX_TABLE)
                .select("*")
                .is_("resolved_at", "null")
                .order("created_at")
                .limit(limit)
                .execute()
            )

        result = self._execute(_select, "list_pending_sync")
        return result.data or []

    def resolve(self, entry_id: int) -> bool:
        """Mark a single entry as resolved."""

        def _resolve(client):
            return (
                client.table(PAYMENT_SYNC_OUTBOX_TABLE)
                .update({"resolved_at": utc_now_iso()})
                .eq("id", entry_id)
                .is_("resolved_at", "null")
                .execute()
            )

        result = self._execute(_resolve, "resolve_pending_sync_entry")
        return bool(result.data)

    def resolve_for_user(self, user_id: str) -> int:
        """Mark every unresolved entry for the user as resolved. Returns rows touched."""

        def _resolve(client):
            return (
                client.table(PAYMENT_SYNC_OUTBOX_TABLE)
                .update({"resolved_at": utc_now_iso()})
                .eq("user_id", user_id)
                .is_("resolved_at", "null")
                .execute()
            )

        result = self._execute(_resolve, "resolve_pending_sync")
        resolved = len(result.data or [])
        if resolved:
            logger.info(
                "Resolved %d pending payment sync entries for user %s",
                resolved,
                sanitize_for_logging(user_id),
            )
        return resolved
