#!/usr/bin/env python3
"""
User Payments Database Module
Reads and writes the user_payments table (one entitlement row per user)
"""

import logging
from datetime import datetime
from typing import Any

from src.config.supabase_config import execute_with_retry
from src.schemas.payments import PaymentRecord, PaymentStatus, PaymentType, UpsertOutcome
from src.utils.exceptions import PaymentRecordWriteError
from src.utils.security_validators import sanitize_for_logging
from src.utils.timestamps import parse_iso, to_iso, utc_now_iso

logger = logging.getLogger(__name__)

USER_PAYMENTS_TABLE = "user_payments"


class PaymentRecordStore:
    """
    Access to user_payments keyed by user_id.

    Every write goes through an upsert or update filtered on user_id, so each
    call is atomic for its single row. Nothing here spans more than one row.

    Writers that know when the provider emitted the change pass ``event_at``.
    A write is skipped when the stored ``last_event_at`` is strictly newer,
    so a late delivery of an older event cannot overwrite newer state.
    Equal timestamps are re-applied, which keeps replays harmless.
    """

    def __init__(self, client: Any | None = None):
        self._client = client

    def _execute(self, operation, operation_name: str):
        return execute_with_retry(operation, operation_name=operation_name, client=self._client)

    # ==================== Reads ====================

    def get(self, user_id: str) -> PaymentRecord | None:
        """Fetch the payment record for a user, or None when the user has no row."""

        def _select(client):
            return (
                client.table(USER_PAYMENTS_TABLE)
                .select("*")
                .eq("user_id", user_id)
                .limit(1)
                .execute()
            )

        result = self._execute(_select, "get_user_payment")
        if not result.data:
            return None
        return PaymentRecord.model_validate(result.data[0])

    def get_status(self, user_id: str) -> str | None:
        record = self.get(user_id)
        return record.status if record else None

    # ==================== Writes ====================

    @staticmethod
    def _validate_fields(fields: dict[str, Any]) -> None:
        if fields.get("payment_type") == PaymentType.SUBSCRIPTION.value and not fields.get(
            "stripe_subscription_id"
        ):
            raise ValueError("SUBSCRIPTION payment records require stripe_subscription_id")

    @staticmethod
    def _is_stale(existing: PaymentRecord | None, event_at: datetime | None) -> bool:
        if existing is None or event_at is None:
            return False
        stored = parse_iso(existing.last_event_at)
        return stored is not None and stored > event_at

    def upsert(
        self,
        user_id: str,
        fields: dict[str, Any],
        *,
        event_at: datetime | None = None,
    ) -> UpsertOutcome:
        """
        Insert or update the user's row with the given fields.

        Columns not present in ``fields`` keep their stored value.

        Args:
            user_id: Supabase user id (conflict target)
            fields: Columns to write, excluding user_id and timestamps
            event_at: When the provider emitted the change, if known

        Returns:
            UpsertOutcome describing what happened

        Raises:
            ValueError: If the fields would break the SUBSCRIPTION invariant
            PaymentRecordWriteError: If the read or the write fails
        """
        self._validate_fields(fields)

        try:
            existing = self.get(user_id)
        except Exception as e:
            raise PaymentRecordWriteError(f"Failed to read payment record: {e}") from e

        if self._is_stale(existing, event_at):
            logger.info(
                "Skipping stale payment write for user %s (stored event %s newer than %s)",
                sanitize_for_logging(user_id),
                existing.last_event_at,
                to_iso(event_at),
            )
            return UpsertOutcome.SKIPPED_STALE

        now = utc_now_iso()
        row = {**fields, "user_id": user_id, "updated_at": now}
        if event_at is not None:
            row["last_event_at"] = to_iso(event_at)
        if existing is None:
            row["created_at"] = now

        def _upsert(client):
            return (
                client.table(USER_PAYMENTS_TABLE)
                .upsert(row, on_conflict="user_id")
                .execute()
            )

        try:
            self._execute(_upsert, "upsert_user_payment")
        except Exception as e:
            raise PaymentRecordWriteError(f"Failed to upsert payment record: {e}") from e

        return UpsertOutcome.CREATED if existing is None else UpsertOutcome.UPDATED

    def update(
        self,
        user_id: str,
        fields: dict[str, Any],
        *,
        event_at: datetime | None = None,
    ) -> int:
        """
        Update an existing row. Never creates one.

        Returns:
            Number of rows updated (0 when the user has no row or the write was stale)

        Raises:
            PaymentRecordWriteError: If the write fails
        """
        self._validate_fields(fields)

        if event_at is not None:
            try:
                existing = self.get(user_id)
            except Exception as e:
                raise PaymentRecordWriteError(f"Failed to read payment record: {e}") from e
            if existing is None:
                return 0
            if self._is_stale(existing, event_at):
                logger.info(
                    "Skipping stale payment update for user %s", sanitize_for_logging(user_id)
                )
                return 0

        patch = {**fields, "updated_at": utc_now_iso()}
        if event_at is not None:
            patch["last_event_at"] = to_iso(event_at)

        def _update(client):
            return (
                client.table(USER_PAYMENTS_TABLE)
                .update(patch)
                .eq("user_id", user_id)
                .execute()
            )

        try:
            result = self._execute(_update, "update_user_payment")
        except Exception as e:
            raise PaymentRecordWriteError(f"Failed to update payment record: {e}") from e

        return len(result.data or [])

    def mark_cancelled(self, user_id: str, *, event_at: datetime | None = None) -> int:
        """Set status to CANCELLED. The row is kept and no other column changes."""
        return self.update(user_id, {"status": PaymentStatus.CANCELLED.value}, event_at=event_at)

    def mark_user_as_new(self, user_id: str) -> bool:
        """
        Create a NONE row for a freshly signed-up user.

        Existing rows are left untouched, so a paying user is never reset.

        Returns:
            True if a row was created
        """
        now = utc_now_iso()
        row = {
            "user_id": user_id,
            "status": PaymentStatus.NONE.value,
            "cancel_at_period_end": False,
            "created_at": now,
            "updated_at": now,
        }

        def _insert_if_absent(client):
            return (
                client.table(USER_PAYMENTS_TABLE)
                .upsert(row, on_conflict="user_id", ignore_duplicates=True)
                .execute()
            )

        try:
            result = self._execute(_insert_if_absent, "mark_user_as_new")
        except Exception as e:
            raise PaymentRecordWriteError(f"Failed to create payment record: {e}") from e

        created = bool(result.data)
        if created:
            logger.info("Created NONE payment record for user %s", sanitize_for_logging(user_id))
        return created
