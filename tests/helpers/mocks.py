"""
Reusable fakes for payment sync tests.

- MockSupabaseClient: in-memory tables with the postgrest builder chain used
  by src.db (select/insert/upsert/update + eq/is_/order/limit), rpc() and the
  auth / auth.admin calls
- FakeStripeProvider: stands in for StripeProviderClient with plain dicts
- make_event: builds a Stripe event payload

Usage:
    from tests.helpers.mocks import MockSupabaseClient

    def test_my_function():
        sb = MockSupabaseClient()
        sb.add_user("ana@example.com", user_id="user-1")
        store = PaymentRecordStore(sb)
"""

import json
import uuid
from types import SimpleNamespace
from typing import Any, Dict, List, Optional

from src.utils.exceptions import WebhookVerificationError

VALID_SIGNATURE = "t=1700000000,v1=valid"


# ============================================================================
# Supabase Client Mocks
# ============================================================================


class MockQueryResult:
    """Mock Supabase query result"""

    def __init__(self, data: Any = None):
        self.data = data if data is not None else []

    def execute(self):
        return self


class MockTableQuery:
    """Mock Supabase table query builder. Writes are applied on execute()."""

    def __init__(self, client: "MockSupabaseClient", table_name: str):
        self.client = client
        self.table_name = table_name
        self._operation = "select"
        self._payload: Any = None
        self._on_conflict: Optional[str] = None
        self._ignore_duplicates = False
        self._filters: List[tuple] = []
        self._limit_value: Optional[int] = None
        self._order_field: Optional[str] = None
        self._order_desc = False

    def select(self, fields: str = "*"):
        self._operation = "select"
        return self

    def insert(self, data):
        self._operation = "insert"
        self._payload = data
        return self

    def upsert(self, data, on_conflict: str = "id", ignore_duplicates: bool = False):
        self._operation = "upsert"
        self._payload = data
        self._on_conflict = on_conflict
        self._ignore_duplicates = ignore_duplicates
        return self

    def update(self, data: Dict):
        self._operation = "update"
        self._payload = data
        return self

    def eq(self, field: str, value: Any):
        self._filters.append(("eq", field, value))
        return self

    def is_(self, field: str, value: Any):
        self._filters.append(("is", field, None if value == "null" else value))
        return self

    def limit(self, count: int):
        self._limit_value = count
        return self

    def order(self, field: str, desc: bool = False):
        self._order_field = field
        self._order_desc = desc
        return self

    def _match_row(self, row: Dict) -> bool:
        for op, field, value in self._filters:
            if op in ("eq", "is") and row.get(field) != value:
                return False
        return True

    def execute(self):
        self.client.calls.append((self.table_name, self._operation))

        failure = self.client.failures.get((self.table_name, self._operation))
        if failure is not None:
            raise failure

        rows = self.client.store.setdefault(self.table_name, [])

        if self._operation == "insert":
            data_list = self._payload if isinstance(self._payload, list) else [self._payload]
            inserted = []
            for data in data_list:
                row = dict(data)
                row.setdefault("id", len(rows) + 1)
                rows.append(row)
                inserted.append(dict(row))
            return MockQueryResult(inserted)

        if self._operation == "upsert":
            row = dict(self._payload)
            key = self._on_conflict
            existing = next((r for r in rows if r.get(key) == row.get(key)), None)
            if existing is None:
                rows.append(row)
                return MockQueryResult([dict(row)])
            if self._ignore_duplicates:
                return MockQueryResult([])
            existing.update(row)
            return MockQueryResult([dict(existing)])

        if self._operation == "update":
            updated = []
            for row in rows:
                if self._match_row(row):
                    row.update(self._payload)
                    updated.append(dict(row))
            return MockQueryResult(updated)

        matched = [dict(r) for r in rows if self._match_row(r)]
        if self._order_field:
            matched.sort(key=lambda r: r.get(self._order_field) or "", reverse=self._order_desc)
        if self._limit_value:
            matched = matched[: self._limit_value]
        return MockQueryResult(matched)


class _MockRpc:
    def __init__(self, client: "MockSupabaseClient", name: str, params: Dict):
        self.client = client
        self.name = name
        self.params = params

    def execute(self):
        self.client.rpc_calls.append((self.name, self.params))
        failure = self.client.failures.get(("rpc", self.name))
        if failure is not None:
            raise failure
        if self.name == "get_user_id_by_email":
            email = self.params.get("user_email")
            if email in self.client.failing_emails:
                raise Exception(f"lookup failed for {email}")
            match = next((u for u in self.client.users if u["email"] == email), None)
            return MockQueryResult(match["id"] if match else None)
        return MockQueryResult(None)


class _MockAdmin:
    def __init__(self, client: "MockSupabaseClient"):
        self.client = client

    def create_user(self, attributes: Dict):
        failure = self.client.failures.get(("auth", "create_user"))
        if failure is not None:
            raise failure
        user = {
            "id": str(uuid.uuid4()),
            "email": attributes["email"],
            "email_confirm": attributes.get("email_confirm", False),
            "user_metadata": attributes.get("user_metadata", {}),
        }
        self.client.users.append(user)
        return SimpleNamespace(user=SimpleNamespace(id=user["id"], email=user["email"]))


class _MockAuth:
    def __init__(self, client: "MockSupabaseClient"):
        self.client = client
        self.admin = _MockAdmin(client)

    def get_user(self, token: str):
        user_id = self.client.tokens.get(token)
        if user_id is None:
            raise Exception("invalid JWT: unable to parse or verify signature")
        user = next(u for u in self.client.users if u["id"] == user_id)
        return SimpleNamespace(user=SimpleNamespace(id=user["id"], email=user["email"]))


class MockSupabaseClient:
    """
    Mock Supabase client with in-memory data store.

    ``failures`` maps ``(table, operation)``, ``("rpc", name)`` or
    ``("auth", "create_user")`` to the exception that call should raise.

    Example:
        sb = MockSupabaseClient()
        sb.fail("user_payments", "upsert")
        result = sb.table("user_payments").select("*").eq("user_id", "u1").execute()
    """

    def __init__(self):
        self.store: Dict[str, List[Dict]] = {}
        self.users: List[Dict] = []
        self.tokens: Dict[str, str] = {}
        self.failures: Dict[tuple, Exception] = {}
        # RPC lookups for these emails raise, to simulate per-row backend errors
        self.failing_emails: set = set()
        self.calls: List[tuple] = []
        self.rpc_calls: List[tuple] = []
        self.auth = _MockAuth(self)

    def table(self, name: str) -> MockTableQuery:
        return MockTableQuery(self, name)

    def rpc(self, name: str, params: Dict) -> _MockRpc:
        return _MockRpc(self, name, params)

    def add_user(self, email: str, user_id: Optional[str] = None, token: Optional[str] = None) -> str:
        user_id = user_id or str(uuid.uuid4())
        self.users.append({"id": user_id, "email": email})
        if token:
            self.tokens[token] = user_id
        return user_id

    def add_payment(self, user_id: str, **fields) -> Dict:
        row = {"user_id": user_id, "status": "NONE", "cancel_at_period_end": False, **fields}
        self.store.setdefault("user_payments", []).append(row)
        return row

    def payment_row(self, user_id: str) -> Optional[Dict]:
        return next(
            (r for r in self.store.get("user_payments", []) if r["user_id"] == user_id), None
        )

    def fail(self, target: str, operation: str, error: Optional[Exception] = None) -> None:
        self.failures[(target, operation)] = error or Exception(f"{target}.{operation} failed")


# ============================================================================
# Stripe Mocks
# ============================================================================


def make_event(
    event_type: str,
    obj: Dict,
    *,
    created: int = 1700000000,
    event_id: str = "evt_test_1",
) -> bytes:
    """Serialized Stripe event, as the webhook endpoint receives it."""
    return json.dumps(
        {"id": event_id, "type": event_type, "created": created, "data": {"object": obj}}
    ).encode()


class FakeStripeProvider:
    """
    In-memory replacement for StripeProviderClient.

    Signatures are not computed: ``VALID_SIGNATURE`` verifies, anything else
    fails the way a tampered payload would.
    """

    def __init__(self):
        self.customers: Dict[str, Dict] = {}
        self.subscriptions: Dict[str, Dict] = {}
        self.charges: Dict[str, List[Dict]] = {}
        self.payment_intents: Dict[str, List[Dict]] = {}
        self.charge_errors: set = set()
        self.cancel_error: Optional[Exception] = None
        self.calls: List[tuple] = []

    # Setup helpers

    def add_customer(self, customer_id: str, email: Optional[str], **fields) -> Dict:
        customer = {
            "id": customer_id,
            "email": email,
            "name": fields.pop("name", None),
            "subscriptions": {"data": fields.pop("subscriptions", [])},
            **fields,
        }
        self.customers[customer_id] = customer
        return customer

    def add_subscription(
        self,
        subscription_id: str,
        customer_id: str,
        *,
        status: str = "active",
        current_period_end: Optional[int] = 1700000000,
        cancel_at_period_end: bool = False,
        unit_amount: Optional[int] = 499,
        currency: str = "usd",
    ) -> Dict:
        subscription = {
            "id": subscription_id,
            "customer": customer_id,
            "status": status,
            "current_period_end": current_period_end,
            "cancel_at_period_end": cancel_at_period_end,
            "currency": currency,
            "items": {"data": [{"price": {"unit_amount": unit_amount}}]},
        }
        self.subscriptions[subscription_id] = subscription
        return subscription

    # StripeProviderClient surface

    @staticmethod
    def construct_event(payload: bytes, signature: Optional[str], secret: Optional[str]):
        if not secret:
            raise WebhookVerificationError("Webhook secret not configured")
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")
        if signature != VALID_SIGNATURE:
            raise WebhookVerificationError(
                "Webhook Error: No signatures found matching the expected signature for payload"
            )
        return json.loads(payload)

    def retrieve_customer(self, customer_id: str):
        self.calls.append(("retrieve_customer", customer_id))
        return self.customers[customer_id]

    def find_customer_by_email(self, email: str):
        self.calls.append(("find_customer_by_email", email))
        return next((c for c in self.customers.values() if c.get("email") == email), None)

    def iter_customers(self, page_size: int = 100):
        self.calls.append(("iter_customers", page_size))
        for customer in self.customers.values():
            yield customer

    def retrieve_subscription(self, subscription_id: str):
        self.calls.append(("retrieve_subscription", subscription_id))
        return self.subscriptions[subscription_id]

    def list_subscriptions(self, customer_id: str, *, status: str = "all", limit: int = 10):
        self.calls.append(("list_subscriptions", customer_id))
        subs = [s for s in self.subscriptions.values() if s["customer"] == customer_id]
        return subs[:limit]

    def cancel_at_period_end(self, subscription_id: str):
        self.calls.append(("cancel_at_period_end", subscription_id))
        if self.cancel_error is not None:
            raise self.cancel_error
        subscription = self.subscriptions[subscription_id]
        subscription["cancel_at_period_end"] = True
        return subscription

    def list_charges(self, customer_id: str, *, limit: int = 10):
        self.calls.append(("list_charges", customer_id))
        if customer_id in self.charge_errors:
            raise Exception("Stripe API unavailable")
        return self.charges.get(customer_id, [])[:limit]

    def list_payment_intents(self, customer_id: str, *, limit: int = 10):
        self.calls.append(("list_payment_intents", customer_id))
        return self.payment_intents.get(customer_id, [])[:limit]
