"""
Shared fixtures for the order service test suite.

In-memory stand-ins for the persistence gateway, the Razorpay client and the
notification system. FakeDatabase snapshots its collections when a
transaction opens and restores them if the block raises, so partial writes
are observable in tests exactly when they would be in MongoDB.
"""

import copy
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from errors import ConflictError
from order_lifecycle import OrderStatus, OrderType, PaymentStatus, PaymentType, UserRole
from order_manager import OrderManager
from payment_manager import PaymentManager
from schemas import ActingUser

TEST_SECRET = "rzp_test_secret"


# ============================================================================
# Fakes
# ============================================================================


class FakeDatabase:
    """Dict-backed implementation of the `db.Database` operations the managers use."""

    def __init__(self):
        self.orders: Dict[str, Dict] = {}
        self.payments: Dict[str, Dict] = {}
        self.users: Dict[str, Dict] = {}
        self.products: Dict[str, Dict] = {}
        self.rentals: Dict[str, Dict] = {}
        self.franchise_areas: Dict[str, Dict] = {}
        self.notifications: Dict[str, Dict] = {}
        # method name -> exception raised on the next call
        self.fail_on: Dict[str, Exception] = {}
        self.transactions_committed = 0
        self.transactions_aborted = 0

    def _maybe_fail(self, name: str):
        exc = self.fail_on.pop(name, None)
        if exc is not None:
            raise exc

    def _snapshot(self):
        return copy.deepcopy((self.orders, self.payments, self.rentals))

    @asynccontextmanager
    async def transaction(self):
        snapshot = self._snapshot()
        try:
            yield object()
        except BaseException:
            self.orders, self.payments, self.rentals = snapshot
            self.transactions_aborted += 1
            raise
        self.transactions_committed += 1

    # orders

    async def create_order(self, order_data: Dict, session=None) -> str:
        self._maybe_fail("create_order")
        if order_data["order_id"] in self.orders:
            raise ConflictError(f"Order {order_data['order_id']} already exists")
        now = datetime.now(timezone.utc)
        order_data.setdefault("created_at", now)
        order_data["updated_at"] = now
        order_data.setdefault("timeline", [])
        self.orders[order_data["order_id"]] = copy.deepcopy(order_data)
        return order_data["order_id"]

    async def get_order(self, order_id: str) -> Optional[Dict]:
        return copy.deepcopy(self.orders.get(order_id))

    async def get_orders(
        self,
        customer_ids=None,
        customer_id=None,
        service_agent_id=None,
        statuses=None,
        order_type=None,
        limit: int = 500
    ) -> List[Dict]:
        results = []
        for order in self.orders.values():
            if customer_ids is not None and order["customer_id"] not in list(customer_ids):
                continue
            if customer_id is not None and order["customer_id"] != customer_id:
                continue
            if service_agent_id is not None and order.get("service_agent_id") != service_agent_id:
                continue
            if statuses is not None and order["status"] not in [str(s) for s in statuses]:
                continue
            if order_type is not None and order["type"] != order_type:
                continue
            results.append(copy.deepcopy(order))
        results.sort(key=lambda o: o["created_at"], reverse=True)
        return results[:limit]

    async def update_order(self, order_id, fields, expected_status=None, timeline_entry=None, session=None) -> bool:
        self._maybe_fail("update_order")
        order = self.orders.get(order_id)
        if order is None or (expected_status is not None and order["status"] != expected_status):
            return False
        order.update(copy.deepcopy(fields))
        order["updated_at"] = datetime.now(timezone.utc)
        if timeline_entry:
            order.setdefault("timeline", []).append(timeline_entry)
        return True

    # payments

    async def create_payment(self, payment_data: Dict, session=None) -> str:
        self._maybe_fail("create_payment")
        self.payments[payment_data["payment_id"]] = copy.deepcopy(payment_data)
        return payment_data["payment_id"]

    async def get_payments_for_order(self, order_id: str) -> List[Dict]:
        return [copy.deepcopy(p) for p in self.payments.values() if p["order_id"] == order_id]

    async def get_pending_payment(self, order_id: str) -> Optional[Dict]:
        for p in self.payments.values():
            if p["order_id"] == order_id and p["status"] == PaymentStatus.PENDING.value:
                return copy.deepcopy(p)
        return None

    async def get_payment_by_gateway_order(self, order_id: str, gateway_order_id: str) -> Optional[Dict]:
        for p in self.payments.values():
            if p["order_id"] == order_id and p.get("gateway_order_id") == gateway_order_id:
                return copy.deepcopy(p)
        return None

    async def update_payment(self, payment_id: str, fields: Dict[str, Any], session=None) -> bool:
        self._maybe_fail("update_payment")
        payment = self.payments.get(payment_id)
        if payment is None:
            return False
        payment.update(copy.deepcopy(fields))
        return True

    # users / areas / products

    async def get_user(self, user_id: str) -> Optional[Dict]:
        if not user_id:
            return None
        return copy.deepcopy(self.users.get(user_id))

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> bool:
        if user_id not in self.users:
            return False
        self.users[user_id].update(fields)
        return True

    async def get_users_by_franchise_area(self, franchise_area_id: str) -> List[Dict]:
        return [copy.deepcopy(u) for u in self.users.values() if u.get("franchise_area_id") == franchise_area_id]

    async def get_available_service_agents(self, franchise_area_id: Optional[str] = None) -> List[Dict]:
        allowed_areas = {franchise_area_id, None} if franchise_area_id else {None}
        return [
            copy.deepcopy(u) for u in self.users.values()
            if u.get("role") == UserRole.SERVICE_AGENT.value
            and u.get("is_active")
            and u.get("franchise_area_id") in allowed_areas
        ]

    async def get_franchise_area(self, franchise_area_id: str) -> Optional[Dict]:
        return copy.deepcopy(self.franchise_areas.get(franchise_area_id))

    async def get_product(self, product_id: str) -> Optional[Dict]:
        if not product_id:
            return None
        return copy.deepcopy(self.products.get(product_id))

    # rentals

    async def create_rental(self, rental_data: Dict, session=None) -> str:
        self._maybe_fail("create_rental")
        if any(r["order_id"] == rental_data["order_id"] for r in self.rentals.values()):
            raise ConflictError("Rental already exists", {"order_id": rental_data["order_id"]})
        self.rentals[rental_data["rental_id"]] = copy.deepcopy(rental_data)
        return rental_data["rental_id"]

    async def get_rental_by_order(self, order_id: str) -> Optional[Dict]:
        for r in self.rentals.values():
            if r["order_id"] == order_id:
                return copy.deepcopy(r)
        return None

    # notifications

    async def insert_notification(self, notification: Dict) -> str:
        self._maybe_fail("insert_notification")
        self.notifications[notification["notification_id"]] = copy.deepcopy(notification)
        return f"oid-{len(self.notifications)}"

    async def update_notification(self, notification_id: str, fields: Dict[str, Any]) -> None:
        self.notifications[notification_id].update(copy.deepcopy(fields))


class RecordingNotifier:
    """Notification system stand-in that records every send; `fail_for` user ids raise."""

    def __init__(self):
        self.sent: List[Dict[str, Any]] = []
        self.fail_for: set = set()

    async def send(self, user_id, title, body, notification_type, channels=None,
                   related_entity_id=None, related_entity_kind=None):
        if user_id in self.fail_for:
            raise RuntimeError(f"push service unavailable for {user_id}")
        record = {
            "user_id": user_id,
            "title": title,
            "message": body,
            "type": notification_type,
            "channels": channels,
            "related_entity_id": related_entity_id,
            "related_entity_kind": related_entity_kind,
        }
        self.sent.append(record)
        return record

    def to(self, user_id: str) -> List[Dict[str, Any]]:
        return [n for n in self.sent if n["user_id"] == user_id]


class FakeGateway:
    """Razorpay client stand-in returning sequential intent ids."""

    def __init__(self):
        self.calls: List[Dict[str, Any]] = []
        self.error: Optional[Exception] = None

    async def create_intent(self, amount_minor_units, currency, receipt, notes=None):
        if self.error is not None:
            raise self.error
        self.calls.append({
            "amount": amount_minor_units,
            "currency": currency,
            "receipt": receipt,
            "notes": notes,
        })
        return {"id": f"order_rzp{len(self.calls):04d}", "amount": amount_minor_units, "currency": currency}


# ============================================================================
# Seed data
# ============================================================================


def _user(user_id, role, area=None, active=True, name=None):
    return {
        "user_id": user_id,
        "name": name or user_id.replace("-", " ").title(),
        "email": f"{user_id}@example.com",
        "phone": "+919800000000",
        "role": role.value,
        "franchise_area_id": area,
        "is_active": active,
        "created_at": datetime(2024, 1, 1, tzinfo=timezone.utc),
    }


def seed(db: FakeDatabase) -> None:
    db.franchise_areas = {
        "area-north": {"franchise_area_id": "area-north", "name": "North Zone"},
        "area-south": {"franchise_area_id": "area-south", "name": "South Zone"},
    }
    for user in (
        _user("admin-1", UserRole.ADMIN),
        _user("owner-north", UserRole.FRANCHISE_OWNER, "area-north"),
        _user("owner-south", UserRole.FRANCHISE_OWNER, "area-south"),
        _user("cust-north", UserRole.CUSTOMER, "area-north"),
        _user("cust-south", UserRole.CUSTOMER, "area-south"),
        _user("cust-nowhere", UserRole.CUSTOMER),
        _user("agent-north", UserRole.SERVICE_AGENT, "area-north"),
        _user("agent-south", UserRole.SERVICE_AGENT, "area-south"),
        _user("agent-global", UserRole.SERVICE_AGENT),
        _user("agent-retired", UserRole.SERVICE_AGENT, "area-north", active=False),
    ):
        db.users[user["user_id"]] = user

    db.products = {
        "prod-ro": {
            "product_id": "prod-ro",
            "name": "AquaPure RO 7L",
            "buy_price": 15999.5,
            "rent_price": 499.0,
            "deposit": 2000.0,
            "is_purchasable": True,
            "is_rentable": True,
        },
        "prod-rent-only": {
            "product_id": "prod-rent-only",
            "name": "AquaPure UV Lite",
            "buy_price": 8999.0,
            "rent_price": 299.0,
            "deposit": 1000.0,
            "is_purchasable": False,
            "is_rentable": True,
        },
    }


def put_order(
    db: FakeDatabase,
    order_id: str,
    status: OrderStatus,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    order_type: OrderType = OrderType.PURCHASE,
    customer_id: str = "cust-north",
    service_agent_id: Optional[str] = None,
    gateway_order_id: Optional[str] = None,
    created_at: Optional[datetime] = None,
) -> Dict:
    """Insert an order plus its payment row directly, bypassing create_order."""
    product = db.products["prod-ro"]
    amount = product["buy_price"] if order_type == OrderType.PURCHASE else product["deposit"]
    created = created_at or datetime.now(timezone.utc) - timedelta(days=1)
    order = {
        "order_id": order_id,
        "customer_id": customer_id,
        "product_id": "prod-ro",
        "type": order_type.value,
        "status": status.value,
        "payment_status": payment_status.value,
        "service_agent_id": service_agent_id,
        "installation_date": None,
        "total_amount": amount,
        "timeline": [],
        "created_at": created,
        "updated_at": created,
    }
    db.orders[order_id] = order
    payment_id = f"pay-{order_id}"
    db.payments[payment_id] = {
        "payment_id": payment_id,
        "order_id": order_id,
        "amount": amount,
        "type": (PaymentType.PURCHASE if order_type == OrderType.PURCHASE else PaymentType.DEPOSIT).value,
        "status": PaymentStatus.COMPLETED.value if payment_status == PaymentStatus.COMPLETED else PaymentStatus.PENDING.value,
        "gateway_order_id": gateway_order_id,
        "gateway_payment_id": None,
        "created_at": created,
    }
    return order


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def db():
    database = FakeDatabase()
    seed(database)
    return database


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def order_manager(db, notifier):
    return OrderManager(db, notifier)


@pytest.fixture
def payment_manager(db, gateway, order_manager):
    return PaymentManager(db, gateway, order_manager, key_secret=TEST_SECRET, currency="INR")


@pytest.fixture
def admin():
    return ActingUser(user_id="admin-1", role=UserRole.ADMIN)


@pytest.fixture
def owner_north():
    return ActingUser(user_id="owner-north", role=UserRole.FRANCHISE_OWNER, franchise_area_id="area-north")


@pytest.fixture
def owner_south():
    return ActingUser(user_id="owner-south", role=UserRole.FRANCHISE_OWNER, franchise_area_id="area-south")


@pytest.fixture
def agent_north():
    return ActingUser(user_id="agent-north", role=UserRole.SERVICE_AGENT, franchise_area_id="area-north")


@pytest.fixture
def customer_north():
    return ActingUser(user_id="cust-north", role=UserRole.CUSTOMER, franchise_area_id="area-north")
