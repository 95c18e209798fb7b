#!/usr/bin/env python3
"""
User Directory Module
Maps Stripe customer emails to Supabase auth users
"""

import logging
from typing import Any

from src.config.supabase_config import execute_with_retry, get_supabase_client
from src.utils.security_validators import mask_email, normalize_email, sanitize_for_logging

logger = logging.getLogger(__name__)

# Postgres function: get_user_id_by_email(user_email text) returns uuid
USER_ID_BY_EMAIL_RPC = "get_user_id_by_email"


class UserDirectory:
    """
    Lookup-or-create access to Supabase auth users by email.

    Emails are normalized (trimmed, lowercased) before every lookup and
    create. Existing identities are only ever read.
    """

    def __init__(self, client: Any | None = None):
        self._client = client

    def _get_client(self):
        return self._client if self._client is not None else get_supabase_client()

    @staticmethod
    def _extract_user_id(data: Any) -> str | None:
        # The RPC returns a scalar uuid, but table-returning variants give rows
        if isinstance(data, list):
            data = data[0] if data else None
        if isinstance(data, dict):
            data = data.get("id") or data.get("user_id") or data.get(USER_ID_BY_EMAIL_RPC)
        return str(data) if data else None

    def get_user_id_by_email(self, email: str | None) -> str | None:
        """
        Resolve a Supabase user id from an email address.

        Returns:
            The user id, or None when no user has that email
        """
        normalized = normalize_email(email)
        if not normalized:
            return None

        def _lookup(client):
            return client.rpc(USER_ID_BY_EMAIL_RPC, {"user_email": normalized}).execute()

        result = execute_with_retry(_lookup, operation_name="get_user_id_by_email", client=self._client)
        user_id = self._extract_user_id(result.data)

        if user_id is None:
            logger.info("No Supabase user for %s", mask_email(normalized))
        return user_id

    def create_user(
        self,
        email: str,
        *,
        full_name: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> str:
        """
        Create a pre-verified Supabase user for a paying Stripe customer.

        Returns:
            The new user's id

        Raises:
            ValueError: If the email is empty
            RuntimeError: If Supabase did not return a user
        """
        normalized = normalize_email(email)
        if not normalized:
            raise ValueError("Cannot create a user without an email")

        response = self._get_client().auth.admin.create_user(
            {
                "email": normalized,
                "email_confirm": True,
                "user_metadata": {
                    "full_name": full_name or "",
                    "created_via": "stripe_sync",
                    "stripe_customer_id": stripe_customer_id,
                },
            }
        )

        user = getattr(response, "user", None)
        user_id = getattr(user, "id", None)
        if not user_id:
            raise RuntimeError(f"Supabase did not return a user for {mask_email(normalized)}")

        logger.info(
            "Created Supabase user %s for %s (customer %s)",
            user_id,
            mask_email(normalized),
            sanitize_for_logging(stripe_customer_id),
        )
        return str(user_id)

    def lookup_or_create(
        self,
        email: str,
        *,
        full_name: str | None = None,
        stripe_customer_id: str | None = None,
    ) -> tuple[str, bool]:
        """
        Return ``(user_id, created)`` for the email, creating the user when absent.
        """
        user_id = self.get_user_id_by_email(email)
        if user_id:
            return user_id, False

        user_id = self.create_user(
            email, full_name=full_name, stripe_customer_id=stripe_customer_id
        )
        return user_id, True

    def get_user_from_token(self, token: str) -> dict[str, Any] | None:
        """
        Validate a Supabase session token.

        Returns:
            ``{"id", "email"}`` for a valid token, None otherwise
        """
        if not token:
            return None

        try:
            response = self._get_client().auth.get_user(token)
        except Exception as e:
            logger.warning(f"Session token validation failed: {type(e).__name__}")
            return None

        user = getattr(response, "user", None)
        if user is None or not getattr(user, "id", None):
            return None

        return {"id": str(user.id), "email": getattr(user, "email", None)}
