# db.py - Persistence Gateway for the Order Service
"""
MongoDB database layer with async Motor.

- `Database` owns the orders, payments, users, products, rentals,
  franchise_areas and notifications collections.
- `transaction()` groups writes into one multi-document transaction
  (requires a replica set or sharded cluster).
- `update_order(..., expected_status=...)` is a compare-and-swap on the
  order status so two concurrent transitions cannot both apply.
- Reads log and return None/[] on driver errors; writes log and re-raise.
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional

import certifi  # For production SSL
from dotenv import load_dotenv
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorClientSession, AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError, ServerSelectionTimeoutError

from errors import ConflictError
from order_lifecycle import PaymentStatus, UserRole
from utils import strip_mongo_id

load_dotenv()

logger = logging.getLogger(__name__)


class Database:
    """
    MongoDB interface for orders, payments, rentals and the user/product
    records they reference.
    """

    def __init__(self, mongo_uri: Optional[str] = None, db_name: Optional[str] = None):
        self.mongo_uri = mongo_uri or os.getenv("MONGO_URI", "mongodb://localhost:27017")
        self.db_name = db_name or os.getenv("DB_NAME", "aquapure_orders")

        self.client: Optional[AsyncIOMotorClient] = None
        self.db: Optional[AsyncIOMotorDatabase] = None
        self._initialized = False

        logger.info(f"Database configured: uri={self.mongo_uri[:20]}..., db={self.db_name}")

    async def initialize(self):
        """
        Initialize database connection and create indexes.
        Must be called during app startup.
        """
        if self._initialized:
            logger.warning("Database already initialized")
            return

        try:
            self.client = AsyncIOMotorClient(
                self.mongo_uri,
                serverSelectionTimeoutMS=5000,
                tlsCAFile=certifi.where() if "mongodb+srv" in self.mongo_uri else None
            )
            self.db = self.client[self.db_name]

            await self.client.admin.command("ping")
            logger.info(f"Connected to MongoDB: {self.db_name}")

            await self._create_indexes()

            self._initialized = True
            logger.info(f"Database initialized: {self.db_name}")

        except ServerSelectionTimeoutError as sste:
            logger.critical(f"MongoDB connection failed: Timeout. URI: {self.mongo_uri}. Error: {sste}", exc_info=True)
            raise
        except Exception as e:
            logger.error(f"Failed to initialize database: {e}", exc_info=True)
            raise

    async def _create_indexes(self):
        """Create all indexes in parallel."""
        if self.db is None:
            raise RuntimeError("Database not initialized before creating indexes")

        orders = self.db["orders"]
        payments = self.db["payments"]
        users = self.db["users"]
        rentals = self.db["rentals"]
        notifications = self.db["notifications"]

        index_tasks = [
            orders.create_index("order_id", unique=True),
            orders.create_index([("customer_id", 1), ("created_at", -1)], name="customer_created_desc"),
            orders.create_index([("service_agent_id", 1), ("status", 1)], name="agent_status"),
            orders.create_index([("status", 1), ("type", 1)], name="status_type"),

            payments.create_index("payment_id", unique=True),
            payments.create_index([("order_id", 1), ("status", 1)], name="order_status"),
            payments.create_index([("order_id", 1), ("gateway_order_id", 1)], name="order_gateway_order"),

            users.create_index("user_id", unique=True),
            users.create_index([("role", 1), ("franchise_area_id", 1), ("is_active", 1)], name="role_area_active"),

            rentals.create_index("rental_id", unique=True),
            # One rental per order
            rentals.create_index("order_id", unique=True, name="rental_order_unique"),

            self.db["products"].create_index("product_id", unique=True),
            self.db["franchise_areas"].create_index("franchise_area_id", unique=True),
            notifications.create_index([("user_id", 1), ("created_at", -1)], name="user_created_desc"),
        ]

        results = await asyncio.gather(*index_tasks, return_exceptions=True)
        errors = [(idx, r) for idx, r in enumerate(results) if isinstance(r, Exception)]
        for idx, err in errors:
            logger.error(f"Index creation error for task {idx}: {err}")
        if not errors:
            logger.info("All database indexes ensured successfully")

    async def close(self):
        if self.client:
            self.client.close()
            logger.info("Database connection closed")
            self._initialized = False
            self.db = None
            self.client = None

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncIOMotorClientSession]:
        """
        Open a session with a running transaction. Writes passed this session
        commit together when the block exits and abort if it raises.
        """
        if self.client is None:
            raise RuntimeError("Database not initialized")
        async with await self.client.start_session() as session:
            async with session.start_transaction():
                yield session

    # ========== ORDER METHODS ==========

    async def create_order(self, order_data: Dict, session=None) -> str:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            now = datetime.now(timezone.utc)
            order_data.setdefault("created_at", now)
            order_data["updated_at"] = now
            order_data.setdefault("timeline", [])
            await self.db.orders.insert_one(order_data, session=session)
            logger.info(f"Order {order_data.get('order_id')} created in database")
            return order_data["order_id"]
        except DuplicateKeyError:
            order_id = order_data.get("order_id")
            logger.error(f"Duplicate order ID: {order_id}")
            raise ConflictError(f"Order {order_id} already exists")
        except Exception as e:
            logger.error(f"Error creating order: {e}", exc_info=True)
            raise

    async def get_order(self, order_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            return strip_mongo_id(await self.db.orders.find_one({"order_id": order_id}))
        except Exception as e:
            logger.error(f"Error retrieving order {order_id}: {e}")
            return None

    async def get_orders(
        self,
        customer_ids: Optional[Iterable[str]] = None,
        customer_id: Optional[str] = None,
        service_agent_id: Optional[str] = None,
        statuses: Optional[Iterable[str]] = None,
        order_type: Optional[str] = None,
        limit: int = 500
    ) -> List[Dict]:
        """Orders matching every given filter, newest first."""
        if self.db is None: raise RuntimeError("Database not initialized")
        query: Dict[str, Any] = {}
        if customer_ids is not None:
            query["customer_id"] = {"$in": list(customer_ids)}
        if customer_id is not None:
            query["customer_id"] = customer_id
        if service_agent_id is not None:
            query["service_agent_id"] = service_agent_id
        if statuses is not None:
            query["status"] = {"$in": [str(s) for s in statuses]}
        if order_type is not None:
            query["type"] = str(order_type)
        try:
            cursor = self.db.orders.find(query).sort("created_at", -1).limit(limit)
            orders = await cursor.to_list(length=limit)
            return [strip_mongo_id(o) for o in orders]
        except Exception as e:
            logger.error(f"Error retrieving orders for {query}: {e}")
            return []

    async def update_order(
        self,
        order_id: str,
        fields: Dict[str, Any],
        expected_status: Optional[str] = None,
        timeline_entry: Optional[Dict[str, Any]] = None,
        session=None
    ) -> bool:
        """
        Set `fields` on the order. With `expected_status` the write only applies
        while the stored status still equals it. Returns False when nothing matched.
        """
        if self.db is None: raise RuntimeError("Database not initialized")
        query: Dict[str, Any] = {"order_id": order_id}
        if expected_status is not None:
            query["status"] = str(expected_status)

        update_spec: Dict[str, Any] = {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}}
        if timeline_entry:
            update_spec["$push"] = {"timeline": timeline_entry}

        try:
            result = await self.db.orders.update_one(query, update_spec, session=session)
            if result.matched_count == 0:
                logger.warning(f"Order {order_id} not updated (no match for {query})")
                return False
            logger.debug(f"Order {order_id} updated (Modified: {result.modified_count})")
            return True
        except Exception as e:
            logger.error(f"Error updating order {order_id}: {e}", exc_info=True)
            raise

    # ========== PAYMENT METHODS ==========

    async def create_payment(self, payment_data: Dict, session=None) -> str:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            now = datetime.now(timezone.utc)
            payment_data.setdefault("created_at", now)
            payment_data["updated_at"] = now
            await self.db.payments.insert_one(payment_data, session=session)
            logger.info(f"Payment {payment_data.get('payment_id')} created for order {payment_data.get('order_id')}")
            return payment_data["payment_id"]
        except DuplicateKeyError:
            raise ConflictError(f"Payment {payment_data.get('payment_id')} already exists")
        except Exception as e:
            logger.error(f"Error creating payment: {e}", exc_info=True)
            raise

    async def get_payments_for_order(self, order_id: str) -> List[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            cursor = self.db.payments.find({"order_id": order_id}).sort("created_at", 1)
            return [strip_mongo_id(p) for p in await cursor.to_list(length=100)]
        except Exception as e:
            logger.error(f"Error retrieving payments for order {order_id}: {e}")
            return []

    async def get_pending_payment(self, order_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            payment = await self.db.payments.find_one(
                {"order_id": order_id, "status": PaymentStatus.PENDING.value}
            )
            return strip_mongo_id(payment)
        except Exception as e:
            logger.error(f"Error retrieving pending payment for order {order_id}: {e}")
            return None

    async def get_payment_by_gateway_order(self, order_id: str, gateway_order_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            payment = await self.db.payments.find_one(
                {"order_id": order_id, "gateway_order_id": gateway_order_id}
            )
            return strip_mongo_id(payment)
        except Exception as e:
            logger.error(f"Error retrieving payment {gateway_order_id} for order {order_id}: {e}")
            return None

    async def update_payment(self, payment_id: str, fields: Dict[str, Any], session=None) -> bool:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            result = await self.db.payments.update_one(
                {"payment_id": payment_id},
                {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}},
                session=session
            )
            if result.matched_count == 0:
                logger.warning(f"Payment {payment_id} not found for update")
                return False
            return True
        except Exception as e:
            logger.error(f"Error updating payment {payment_id}: {e}", exc_info=True)
            raise

    # ========== USER / FRANCHISE METHODS ==========

    async def get_user(self, user_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        if not user_id:
            return None
        try:
            return strip_mongo_id(await self.db.users.find_one({"user_id": user_id}))
        except Exception as e:
            logger.error(f"Error retrieving user {user_id}: {e}")
            return None

    async def update_user(self, user_id: str, fields: Dict[str, Any]) -> bool:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            result = await self.db.users.update_one(
                {"user_id": user_id},
                {"$set": {**fields, "updated_at": datetime.now(timezone.utc)}}
            )
            return result.matched_count > 0
        except Exception as e:
            logger.error(f"Error updating user {user_id}: {e}", exc_info=True)
            raise

    async def get_users_by_franchise_area(self, franchise_area_id: str) -> List[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            cursor = self.db.users.find({"franchise_area_id": franchise_area_id})
            return [strip_mongo_id(u) for u in await cursor.to_list(length=None)]
        except Exception as e:
            logger.error(f"Error retrieving users for franchise area {franchise_area_id}: {e}")
            return []

    async def get_available_service_agents(self, franchise_area_id: Optional[str] = None) -> List[Dict]:
        """
        Active service agents of the area plus global agents (no area).
        With no area only global agents qualify.
        """
        if self.db is None: raise RuntimeError("Database not initialized")
        query: Dict[str, Any] = {"role": UserRole.SERVICE_AGENT.value, "is_active": True}
        if franchise_area_id:
            query["$or"] = [{"franchise_area_id": franchise_area_id}, {"franchise_area_id": None}]
        else:
            query["franchise_area_id"] = None
        try:
            cursor = self.db.users.find(query)
            return [strip_mongo_id(u) for u in await cursor.to_list(length=None)]
        except Exception as e:
            logger.error(f"Error retrieving service agents for area {franchise_area_id}: {e}")
            return []

    async def get_franchise_area(self, franchise_area_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        if not franchise_area_id:
            return None
        try:
            area = await self.db.franchise_areas.find_one({"franchise_area_id": franchise_area_id})
            return strip_mongo_id(area)
        except Exception as e:
            logger.error(f"Error retrieving franchise area {franchise_area_id}: {e}")
            return None

    # ========== PRODUCT METHODS ==========

    async def get_product(self, product_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        if not product_id:
            return None
        try:
            return strip_mongo_id(await self.db.products.find_one({"product_id": product_id}))
        except Exception as e:
            logger.error(f"Error retrieving product {product_id}: {e}")
            return None

    # ========== RENTAL METHODS ==========

    async def create_rental(self, rental_data: Dict, session=None) -> str:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            now = datetime.now(timezone.utc)
            rental_data.setdefault("created_at", now)
            rental_data["updated_at"] = now
            await self.db.rentals.insert_one(rental_data, session=session)
            logger.info(f"Rental {rental_data.get('rental_id')} created for order {rental_data.get('order_id')}")
            return rental_data["rental_id"]
        except DuplicateKeyError:
            order_id = rental_data.get("order_id")
            logger.warning(f"Rental for order {order_id} already exists")
            raise ConflictError(f"Rental for order {order_id} already exists", {"order_id": order_id})
        except Exception as e:
            logger.error(f"Error creating rental: {e}", exc_info=True)
            raise

    async def get_rental_by_order(self, order_id: str) -> Optional[Dict]:
        if self.db is None: raise RuntimeError("Database not initialized")
        try:
            return strip_mongo_id(await self.db.rentals.find_one({"order_id": order_id}))
        except Exception as e:
            logger.error(f"Error retrieving rental for order {order_id}: {e}")
            return None

    # ========== NOTIFICATION METHODS ==========

    async def insert_notification(self, notification: Dict) -> str:
        if self.db is None: raise RuntimeError("Database not initialized")
        result = await self.db.notifications.insert_one(notification)
        return str(result.inserted_id)

    async def update_notification(self, notification_id: str, fields: Dict[str, Any]) -> None:
        if self.db is None: raise RuntimeError("Database not initialized")
        await self.db.notifications.update_one({"notification_id": notification_id}, {"$set": fields})


# ============================================================
# GLOBAL INSTANCE & LIFECYCLE FUNCTIONS
# ============================================================

_db_instance: Optional[Database] = None
_db_lock = asyncio.Lock()


async def get_db() -> Database:
    """Get or create global database instance (async safe)."""
    global _db_instance
    if _db_instance is None:
        async with _db_lock:
            if _db_instance is None:
                _db_instance = Database()
    return _db_instance


async def init_db() -> Database:
    """Initialize database connection and indexes. Call at service startup."""
    db = await get_db()
    if not db._initialized:
        await db.initialize()
    return db


async def close_db():
    """Close database connection. Call at service shutdown."""
    global _db_instance
    if _db_instance and _db_instance._initialized:
        await _db_instance.close()
        _db_instance = None
