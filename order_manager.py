# order_manager.py - Water Purifier Order Lifecycle
"""
Handles the order lifecycle for purchases and rentals.

Features:
- Role-scoped order visibility (admin, franchise owner, service agent, customer).
- Order creation with its pending payment row in one transaction.
- Status transitions validated against the static transition table, written
  as a compare-and-swap on the current status.
- Privileged transitions for agent assignment and installation scheduling.
- Rental record creation when a rental order is installed (once per order).
- Best-effort customer / agent notifications, dispatched after the write.
"""

import asyncio
import logging
import os
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from db import get_db
from errors import (
    ConflictError,
    ForbiddenError,
    InvalidInputError,
    InvalidStateError,
    InvalidTargetError,
    InvalidTransitionError,
    NotFoundError,
)
from notification_system import DEFAULT_CHANNELS, NotificationType, get_notification_system, render_template
from order_lifecycle import (
    MEANINGFUL_CUSTOMER_STATUSES,
    OrderStatus,
    OrderType,
    PaymentStatus,
    PaymentType,
    PrivilegedTransition,
    RentalStatus,
    UserRole,
    can_apply_privileged,
    coerce_status,
    is_valid_status_transition,
    privileged_target,
)
from schemas import ActingUser, UserDetails
from utils import add_months, generate_id, parse_iso_datetime, utc_now

logger = logging.getLogger("order_manager")

RENTAL_MINIMUM_TENURE_MONTHS = int(os.getenv("RENTAL_MINIMUM_TENURE_MONTHS", "3"))
DEFAULT_PRODUCT_NAME = "Water Purifier"


def timeline_entry(status: OrderStatus, note: str, actor: str) -> Dict[str, Any]:
    """One entry of an order's status history."""
    return {
        "status": status.value,
        "timestamp": utc_now(),
        "note": note,
        "actor": actor,
    }


class OrderManager:
    """
    Manages the role-aware order lifecycle.
    Coordinates the persistence gateway and the notification dispatcher.
    """

    def __init__(self, db, notifier):
        self.db = db
        self.notifier = notifier
        logger.info("OrderManager initialized")

    # --------------------------------------------------
    # READ OPERATIONS
    # --------------------------------------------------

    async def get_all_orders(
        self,
        user: ActingUser,
        status: Optional[Union[str, OrderStatus]] = None,
        order_type: Optional[Union[str, OrderType]] = None
    ) -> List[Dict]:
        """Orders visible to `user`, optionally filtered by status and type."""
        statuses = [self._parse_status(status).value] if status else None
        type_filter = self._parse_order_type(order_type).value if order_type else None

        if user.role == UserRole.FRANCHISE_OWNER:
            if not user.franchise_area_id:
                return []
            customers_in_area = await self.db.get_users_by_franchise_area(user.franchise_area_id)
            customer_ids = [c["user_id"] for c in customers_in_area]
            if not customer_ids:
                return []
            orders = await self.db.get_orders(customer_ids=customer_ids, statuses=statuses, order_type=type_filter)
        elif user.role == UserRole.SERVICE_AGENT:
            orders = await self.db.get_orders(service_agent_id=user.user_id, statuses=statuses, order_type=type_filter)
        elif user.role == UserRole.CUSTOMER:
            orders = await self.db.get_orders(customer_id=user.user_id, statuses=statuses, order_type=type_filter)
        else:
            orders = await self.db.get_orders(statuses=statuses, order_type=type_filter)

        return list(await asyncio.gather(*(self._hydrate(o) for o in orders)))

    async def get_user_orders(
        self,
        user_id: str,
        status: Optional[Union[str, OrderStatus]] = None,
        order_type: Optional[Union[str, OrderType]] = None
    ) -> List[Dict]:
        """
        A customer's order history, newest first. Without a status filter only
        orders that reached payment completion or beyond are returned.
        """
        if not user_id:
            raise InvalidInputError("user_id required")
        if status:
            statuses = [self._parse_status(status).value]
        else:
            statuses = [s.value for s in MEANINGFUL_CUSTOMER_STATUSES]
        type_filter = self._parse_order_type(order_type).value if order_type else None

        orders = await self.db.get_orders(customer_id=user_id, statuses=statuses, order_type=type_filter)
        return list(await asyncio.gather(*(self._hydrate(o, include_customer=False) for o in orders)))

    async def get_order_by_id(self, order_id: str, user: Optional[ActingUser] = None) -> Optional[Dict]:
        """Hydrated order, or None. With `user`, access is checked as for transitions."""
        order = await self.db.get_order(order_id)
        if not order:
            return None
        if user is not None:
            await self._authorize_order_access(order, user)
        return await self._hydrate(order)

    async def get_available_service_agents_for_order(self, order_id: str) -> List[Dict]:
        """Agents that may serve the order's customer: area agents plus global agents."""
        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        customer = await self.db.get_user(order["customer_id"])
        if not customer:
            raise NotFoundError("Customer")

        franchise_area_id = customer.get("franchise_area_id")
        agents = await self.db.get_available_service_agents(franchise_area_id)

        area_names: Dict[str, str] = {}
        for area_id in {a.get("franchise_area_id") for a in agents if a.get("franchise_area_id")}:
            area = await self.db.get_franchise_area(area_id)
            area_names[area_id] = (area or {}).get("name", area_id)

        logger.info(f"Found {len(agents)} available agents for order {order_id} (area: {franchise_area_id or 'none'})")
        return [
            {
                "id": agent["user_id"],
                "name": agent.get("name"),
                "phone": agent.get("phone"),
                "email": agent.get("email"),
                "franchise_area_id": agent.get("franchise_area_id"),
                "franchise_area_name": area_names.get(agent.get("franchise_area_id"), "Global Agent"),
                "is_global_agent": not agent.get("franchise_area_id"),
                "created_at": agent.get("created_at"),
            }
            for agent in agents
        ]

    # --------------------------------------------------
    # ORDER CREATION
    # --------------------------------------------------

    async def create_order(
        self,
        product_id: str,
        customer_id: str,
        order_type: Union[str, OrderType],
        installation_date: Optional[Union[str, datetime]] = None,
        user_details: Optional[UserDetails] = None
    ) -> Dict:
        """
        Create an order and its pending payment.
        The payment amount is the buy price for purchases and the deposit for rentals.
        """
        order_type = self._parse_order_type(order_type)

        product = await self.db.get_product(product_id)
        if not product:
            raise NotFoundError("Product")

        if order_type == OrderType.PURCHASE and not product.get("is_purchasable", False):
            raise InvalidInputError("This product is not available for purchase")
        if order_type == OrderType.RENTAL and not product.get("is_rentable", False):
            raise InvalidInputError("This product is not available for rental")

        customer = await self.db.get_user(customer_id)
        if not customer:
            raise NotFoundError("Customer")

        if user_details is not None:
            await self.db.update_user(customer_id, user_details.to_profile_update())
            customer = await self.db.get_user(customer_id) or customer

        if not customer.get("franchise_area_id"):
            raise InvalidInputError("No franchise area available for this location. Please contact support.")

        install_at = None
        if installation_date is not None:
            install_at = parse_iso_datetime(installation_date)
            if install_at is None:
                raise InvalidInputError(f"Invalid installation date: {installation_date}")

        if order_type == OrderType.PURCHASE:
            total_amount = float(product["buy_price"])
            payment_type = PaymentType.PURCHASE
        else:
            total_amount = float(product["deposit"])
            payment_type = PaymentType.DEPOSIT

        order_id = generate_id("ord")
        now_utc = utc_now()
        order = {
            "order_id": order_id,
            "customer_id": customer_id,
            "product_id": product_id,
            "type": order_type.value,
            "status": OrderStatus.CREATED.value,
            "payment_status": PaymentStatus.PENDING.value,
            "service_agent_id": None,
            "installation_date": install_at,
            "total_amount": total_amount,
            "created_at": now_utc,
            "timeline": [timeline_entry(OrderStatus.CREATED, "Order created and awaiting payment", customer_id)],
        }
        payment = {
            "payment_id": generate_id("pay"),
            "order_id": order_id,
            "amount": total_amount,
            "type": payment_type.value,
            "status": PaymentStatus.PENDING.value,
            "gateway_order_id": None,
            "gateway_payment_id": None,
            "created_at": now_utc,
        }

        async with self.db.transaction() as session:
            await self.db.create_order(order, session=session)
            await self.db.create_payment(payment, session=session)

        logger.info(f"Created {order_type.value} order {order_id} for {customer_id}: Rs.{total_amount:.2f}")

        await self.notify_user(
            customer_id, "order_created", {"product_name": product.get("name", DEFAULT_PRODUCT_NAME)},
            NotificationType.ORDER_CONFIRMATION, order_id
        )
        return await self.get_order_by_id(order_id)

    # --------------------------------------------------
    # STATE MACHINE
    # --------------------------------------------------

    async def request_transition(
        self,
        order_id: str,
        target_status: Union[str, OrderStatus],
        user: ActingUser
    ) -> Dict:
        """
        Move an order to `target_status` if the transition table allows it
        and `user` may act on the order.
        """
        target = self._parse_status(target_status)

        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        await self._authorize_order_access(order, user)

        current = order["status"]
        if not is_valid_status_transition(current, target):
            raise InvalidTransitionError(
                f"Cannot change order status from {current} to {target.value}",
                {"order_id": order_id, "from": current, "to": target.value}
            )

        await self._write_status(
            order_id, current, {"status": target.value},
            timeline_entry(target, f"Status changed from {current}", user.user_id)
        )
        logger.info(f"Order {order_id} moved {current} -> {target.value} by {user.role.value}:{user.user_id}")

        await self.notify_user(
            order["customer_id"], "status_updated", {"status": target.value},
            NotificationType.STATUS_UPDATE, order_id
        )

        if target == OrderStatus.INSTALLED and order.get("type") == OrderType.RENTAL.value:
            # The status change is already committed; a missing rental is repaired
            # by calling create_rental_from_order again.
            try:
                await self.create_rental_from_order(order_id)
            except Exception as e:
                logger.error(f"Rental creation failed for installed order {order_id}: {e}", exc_info=True)

        return await self.get_order_by_id(order_id)

    async def assign_service_agent(self, order_id: str, agent_id: str, user: ActingUser) -> Dict:
        """
        Assign a service agent to a paid order and move it to ASSIGNED.

        Area-bound agents only serve customers of their own area; global
        agents serve any area. Franchise owners act only within their area.
        """
        if user.role not in (UserRole.ADMIN, UserRole.FRANCHISE_OWNER):
            raise ForbiddenError("Only admins and franchise owners can assign service agents")

        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        if order.get("payment_status") != PaymentStatus.COMPLETED.value:
            raise InvalidStateError("Cannot assign service agent until payment is completed")

        current = order["status"]
        if not can_apply_privileged(PrivilegedTransition.ASSIGN_AGENT, current):
            raise InvalidStateError(f"Cannot assign a service agent to an order in status {current}")

        agent = await self.db.get_user(agent_id)
        if not agent or not agent.get("is_active") or agent.get("role") != UserRole.SERVICE_AGENT.value:
            raise InvalidTargetError("Invalid service agent", {"agent_id": agent_id})

        customer = await self.db.get_user(order["customer_id"])
        if not customer:
            raise NotFoundError("Customer")

        agent_area = agent.get("franchise_area_id")
        customer_area = customer.get("franchise_area_id")

        if user.role == UserRole.FRANCHISE_OWNER:
            if agent_area and agent_area != user.franchise_area_id:
                raise ForbiddenError("Service agent is not in your franchise area")
            if not user.franchise_area_id or customer_area != user.franchise_area_id:
                raise ForbiddenError("This order is not in your franchise area")

        if agent_area and agent_area != customer_area:
            raise InvalidTargetError("Service agent cannot serve this customer's franchise area")

        target = privileged_target(PrivilegedTransition.ASSIGN_AGENT)
        await self._write_status(
            order_id, current, {"service_agent_id": agent_id, "status": target.value},
            timeline_entry(target, f"Service agent {agent_id} assigned", user.user_id)
        )
        logger.info(f"Order {order_id} assigned to agent {agent_id} by {user.role.value}:{user.user_id}")

        product = await self.db.get_product(order.get("product_id"))
        product_name = (product or {}).get("name", DEFAULT_PRODUCT_NAME)

        await self.notify_user(
            order["customer_id"], "agent_assigned_customer", {},
            NotificationType.ASSIGNMENT_NOTIFICATION, order_id
        )
        await self.notify_user(
            agent_id, "agent_assigned_agent", {"order_type": order.get("type"), "product_name": product_name},
            NotificationType.ASSIGNMENT_NOTIFICATION, order_id
        )
        return await self.get_order_by_id(order_id)

    async def update_installation_date(
        self,
        order_id: str,
        installation_date: Union[str, datetime],
        user: ActingUser
    ) -> Dict:
        """Schedule installation for a future date and move the order to INSTALLATION_PENDING."""
        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        await self._authorize_order_access(order, user)

        install_at = parse_iso_datetime(installation_date)
        if install_at is None:
            raise InvalidInputError(f"Invalid installation date: {installation_date}")
        if install_at <= utc_now():
            raise InvalidInputError("Installation date must be in the future")

        current = order["status"]
        if not can_apply_privileged(PrivilegedTransition.SCHEDULE_INSTALLATION, current):
            raise InvalidStateError(f"Cannot schedule installation for an order in status {current}")

        target = privileged_target(PrivilegedTransition.SCHEDULE_INSTALLATION)
        await self._write_status(
            order_id, current, {"installation_date": install_at, "status": target.value},
            timeline_entry(target, f"Installation scheduled for {install_at.isoformat()}", user.user_id)
        )
        logger.info(f"Order {order_id} installation scheduled for {install_at.isoformat()}")

        await self.notify_user(
            order["customer_id"], "installation_scheduled",
            {"installation_date": install_at.strftime("%d %b %Y")},
            NotificationType.STATUS_UPDATE, order_id
        )
        return await self.get_order_by_id(order_id)

    # --------------------------------------------------
    # RENTALS
    # --------------------------------------------------

    async def create_rental_from_order(self, order_id: str) -> Optional[str]:
        """
        Create the rental record for an installed rental order.
        Returns the rental id; an existing rental for the order is reused.
        """
        order = await self.db.get_order(order_id)
        if not order or order.get("type") != OrderType.RENTAL.value:
            return None

        existing = await self.db.get_rental_by_order(order_id)
        if existing:
            logger.info(f"Rental {existing['rental_id']} already exists for order {order_id}")
            return existing["rental_id"]

        product = await self.db.get_product(order["product_id"])
        if not product:
            logger.error(f"Cannot create rental for order {order_id}: product {order['product_id']} missing")
            return None

        now_utc = utc_now()
        period_end = add_months(now_utc, RENTAL_MINIMUM_TENURE_MONTHS)
        rental = {
            "rental_id": generate_id("rent"),
            "order_id": order_id,
            "customer_id": order["customer_id"],
            "product_id": order["product_id"],
            "status": RentalStatus.ACTIVE.value,
            "start_date": now_utc,
            "current_period_start_date": now_utc,
            "current_period_end_date": period_end,
            "monthly_amount": float(product.get("rent_price", 0.0)),
            "deposit_amount": float(product.get("deposit", 0.0)),
            "created_at": now_utc,
        }
        try:
            rental_id = await self.db.create_rental(rental)
        except ConflictError:
            # Lost a race with another transition to INSTALLED
            existing = await self.db.get_rental_by_order(order_id)
            return existing["rental_id"] if existing else None

        await self.notify_user(
            order["customer_id"], "rental_started",
            {
                "product_name": product.get("name", DEFAULT_PRODUCT_NAME),
                "tenure_months": RENTAL_MINIMUM_TENURE_MONTHS,
                "period_end": period_end.strftime("%d %b %Y"),
            },
            NotificationType.STATUS_UPDATE, rental_id, related_entity_kind="rental"
        )
        return rental_id

    # --------------------------------------------------
    # NOTIFICATIONS
    # --------------------------------------------------

    async def notify_user(
        self,
        user_id: str,
        template_key: str,
        template_vars: Dict[str, Any],
        notification_type: NotificationType,
        related_entity_id: str,
        related_entity_kind: str = "order"
    ) -> bool:
        """Send a templated notification. Failures are logged and reported as False, never raised."""
        try:
            rendered = render_template(template_key, template_vars)
            doc = await self.notifier.send(
                user_id,
                rendered["title"],
                rendered["message"],
                notification_type,
                list(DEFAULT_CHANNELS),
                related_entity_id,
                related_entity_kind,
            )
            if doc is None:
                logger.error(f"{template_key} notification to {user_id} was not stored")
                return False
            return True
        except Exception as e:
            logger.error(f"Failed to send {template_key} notification to {user_id}: {e}")
            return False

    async def notify_available_service_agents(self, order_id: str, franchise_area_id: Optional[str]) -> Dict[str, int]:
        """
        Tell every eligible agent (area + global) that a paid order awaits assignment.
        One agent failing does not stop the others.
        """
        summary = {"total": 0, "sent": 0, "failed": 0}
        try:
            order = await self.db.get_order(order_id)
            if not order:
                raise NotFoundError("Order")

            product = await self.db.get_product(order.get("product_id"))
            template_vars = {
                "order_type": order.get("type"),
                "product_name": (product or {}).get("name", DEFAULT_PRODUCT_NAME),
            }

            agents = await self.db.get_available_service_agents(franchise_area_id)
            summary["total"] = len(agents)
            for agent in agents:
                sent = await self.notify_user(
                    agent["user_id"], "order_available", template_vars, NotificationType.SERVICE_REQUEST, order_id
                )
                summary["sent" if sent else "failed"] += 1

            logger.info(
                f"Notified service agents about order {order_id}: "
                f"{summary['sent']}/{summary['total']} sent, {summary['failed']} failed"
            )
        except Exception as e:
            logger.error(f"Failed to notify service agents about order {order_id}: {e}")
        return summary

    # --------------------------------------------------
    # UTILITIES
    # --------------------------------------------------

    async def _authorize_order_access(self, order: Dict, user: ActingUser) -> None:
        if user.role == UserRole.ADMIN:
            return
        if user.role == UserRole.SERVICE_AGENT:
            if order.get("service_agent_id") != user.user_id:
                raise ForbiddenError("You are not assigned to this order")
            return
        if user.role == UserRole.FRANCHISE_OWNER:
            customer = await self.db.get_user(order.get("customer_id"))
            if (
                not customer
                or not user.franchise_area_id
                or customer.get("franchise_area_id") != user.franchise_area_id
            ):
                raise ForbiddenError("This order is not in your franchise area")
            return
        if order.get("customer_id") != user.user_id:
            raise ForbiddenError("This order does not belong to you")

    async def _write_status(
        self,
        order_id: str,
        expected_status: str,
        fields: Dict[str, Any],
        entry: Dict[str, Any]
    ) -> None:
        """Apply `fields` only if the order is still in `expected_status`."""
        updated = await self.db.update_order(
            order_id, fields, expected_status=expected_status, timeline_entry=entry
        )
        if not updated:
            latest = await self.db.get_order(order_id)
            raise ConflictError(
                f"Order {order_id} changed while it was being updated "
                f"(expected {expected_status}, now {(latest or {}).get('status')})",
                {"order_id": order_id}
            )

    async def _hydrate(self, order: Dict, include_customer: bool = True) -> Dict:
        """Attach product, service agent, payments and (optionally) customer records."""
        product, agent, payments = await asyncio.gather(
            self.db.get_product(order.get("product_id")),
            self.db.get_user(order.get("service_agent_id")),
            self.db.get_payments_for_order(order["order_id"]),
        )
        hydrated = dict(order)
        hydrated["product"] = product
        hydrated["service_agent"] = agent
        hydrated["payments"] = payments or []
        if include_customer:
            hydrated["customer"] = await self.db.get_user(order.get("customer_id"))
        return hydrated

    @staticmethod
    def _parse_status(value: Union[str, OrderStatus]) -> OrderStatus:
        status = coerce_status(value)
        if status is None:
            raise InvalidInputError(f"Unknown order status: {value}")
        return status

    @staticmethod
    def _parse_order_type(value: Union[str, OrderType]) -> OrderType:
        try:
            return value if isinstance(value, OrderType) else OrderType(str(value).lower())
        except ValueError:
            raise InvalidInputError(f"Unknown order type: {value}")


# =====================================
# SINGLETON INSTANCE
# =====================================

_order_manager: Optional[OrderManager] = None


async def get_order_manager() -> OrderManager:
    """Order manager wired to the global database and notification system."""
    global _order_manager
    if _order_manager is None:
        _order_manager = OrderManager(await get_db(), await get_notification_system())
    return _order_manager
