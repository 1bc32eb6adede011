# payment_manager.py - Payment Reconciliation for Orders
"""
Initiates Razorpay payments for pending orders and reconciles the signed
checkout callback.

A verified payment marks the payment row and the order COMPLETED in one
transaction. A signature mismatch marks only the payment row FAILED. A
missing signing secret is a deployment error and raises instead of
failing the customer's payment.
"""

import logging
import os
from typing import Any, Dict, Optional

from errors import ConflictError, InvalidStateError, NotFoundError, OrderServiceError, ServerError
from notification_system import NotificationType
from order_lifecycle import PAYABLE_STATUSES, OrderStatus, PaymentStatus
from order_manager import DEFAULT_PRODUCT_NAME, OrderManager, get_order_manager, timeline_entry
from razorpay_integration import get_razorpay, verify_signature
from utils import to_minor_units

logger = logging.getLogger("payment_manager")

PAYMENT_CURRENCY = os.getenv("PAYMENT_CURRENCY", "INR")


class PaymentManager:
    """
    Payment initiation and verification for orders.
    """

    def __init__(
        self,
        db,
        gateway,
        order_manager: OrderManager,
        key_secret: Optional[str] = None,
        currency: Optional[str] = None
    ):
        self.db = db
        self.gateway = gateway
        self.order_manager = order_manager
        self.key_secret = key_secret if key_secret is not None else os.getenv("RAZORPAY_KEY_SECRET")
        self.currency = currency or PAYMENT_CURRENCY
        logger.info(f"PaymentManager initialized (currency={self.currency})")

    async def initiate_payment(self, order_id: str) -> Dict[str, Any]:
        """
        Create a gateway payment intent for the order's pending payment.

        Returns the intent id with the payment id, amount in minor units,
        currency and the customer/product fields the checkout form shows.
        """
        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        if order.get("payment_status") == PaymentStatus.COMPLETED.value:
            raise ConflictError("Payment already completed for this order", {"order_id": order_id})

        if order.get("status") not in {s.value for s in PAYABLE_STATUSES}:
            raise InvalidStateError(
                f"Cannot initiate payment for an order in status {order.get('status')}",
                {"order_id": order_id}
            )

        payment = await self.db.get_pending_payment(order_id)
        if not payment:
            raise NotFoundError("No pending payment found for this order")

        customer = await self.db.get_user(order.get("customer_id")) or {}
        product = await self.db.get_product(order.get("product_id")) or {}
        product_name = product.get("name", DEFAULT_PRODUCT_NAME)

        amount_minor = to_minor_units(payment["amount"])
        intent = await self.gateway.create_intent(
            amount_minor,
            self.currency,
            receipt=order_id,
            notes={
                "order_type": order.get("type"),
                "product_name": product_name,
                "customer_id": order.get("customer_id"),
                "payment_id": payment["payment_id"],
            },
        )
        gateway_order_id = intent["id"]

        async with self.db.transaction() as session:
            await self.db.update_payment(
                payment["payment_id"], {"gateway_order_id": gateway_order_id}, session=session
            )
            await self.db.update_order(
                order_id, {"status": OrderStatus.PAYMENT_PENDING.value}, session=session
            )

        logger.info(f"Payment {payment['payment_id']} for order {order_id} initiated as {gateway_order_id}")
        return {
            "order_id": order_id,
            "payment_id": payment["payment_id"],
            "gateway_order_id": gateway_order_id,
            "amount": amount_minor,
            "currency": self.currency,
            "product_name": product_name,
            "customer_name": customer.get("name"),
            "customer_email": customer.get("email"),
            "customer_phone": customer.get("phone"),
        }

    async def verify_payment(
        self,
        order_id: str,
        gateway_payment_id: str,
        gateway_order_id: str,
        signature: str
    ) -> bool:
        """
        Verify the checkout signature for `(gateway_order_id, gateway_payment_id)`.

        True: payment and order are both COMPLETED, the customer is notified and
        eligible service agents are told the order is available.
        False: the signature did not match (or verification broke); the payment
        row is FAILED and the order is unchanged.

        Raises:
            NotFoundError: Unknown order, or no payment for `gateway_order_id`
            ConflictError: The order is already paid, or the payment row is no longer PENDING
            InvalidStateError: The order is not awaiting payment (e.g. CANCELLED)
            ServerError: The signing secret is not configured
        """
        order = await self.db.get_order(order_id)
        if not order:
            raise NotFoundError("Order")

        payment = await self.db.get_payment_by_gateway_order(order_id, gateway_order_id)
        if not payment:
            raise NotFoundError("Payment")

        if order.get("payment_status") == PaymentStatus.COMPLETED.value:
            raise ConflictError("Payment already completed for this order", {"order_id": order_id})

        if payment.get("status") != PaymentStatus.PENDING.value:
            raise ConflictError(
                f"Payment {payment['payment_id']} is already {payment.get('status')}",
                {"order_id": order_id, "payment_id": payment["payment_id"]}
            )

        # Terminal or later statuses cannot be reopened by a late callback
        if order.get("status") not in {s.value for s in PAYABLE_STATUSES}:
            raise InvalidStateError(
                f"Cannot complete payment for an order in status {order.get('status')}",
                {"order_id": order_id}
            )

        if not self.key_secret:
            logger.critical("RAZORPAY_KEY_SECRET is not configured; cannot verify payments")
            raise ServerError("Payment verification is not configured")

        try:
            if not verify_signature(self.key_secret, gateway_order_id, gateway_payment_id, signature):
                logger.warning(f"Signature mismatch for order {order_id} (gateway order {gateway_order_id})")
                await self._mark_payment_failed(payment["payment_id"], gateway_payment_id)
                await self.order_manager.notify_user(
                    order["customer_id"], "payment_failed", {"order_id": order_id},
                    NotificationType.PAYMENT_FAILURE, order_id
                )
                return False

            async with self.db.transaction() as session:
                await self.db.update_payment(
                    payment["payment_id"],
                    {"status": PaymentStatus.COMPLETED.value, "gateway_payment_id": gateway_payment_id},
                    session=session
                )
                updated = await self.db.update_order(
                    order_id,
                    {"payment_status": PaymentStatus.COMPLETED.value, "status": OrderStatus.PAYMENT_COMPLETED.value},
                    expected_status=order["status"],
                    timeline_entry=timeline_entry(
                        OrderStatus.PAYMENT_COMPLETED, f"Payment {gateway_payment_id} verified", order["customer_id"]
                    ),
                    session=session
                )
                if not updated:
                    raise ConflictError(
                        f"Order {order_id} changed while its payment was being verified",
                        {"order_id": order_id}
                    )
        except OrderServiceError:
            raise
        except Exception as e:
            logger.error(f"Payment verification error for order {order_id}: {e}", exc_info=True)
            await self._mark_payment_failed(payment["payment_id"], gateway_payment_id)
            return False

        logger.info(f"Payment {payment['payment_id']} verified for order {order_id}")

        await self.order_manager.notify_user(
            order["customer_id"], "payment_success", {"order_id": order_id},
            NotificationType.PAYMENT_SUCCESS, order_id
        )
        customer = await self.db.get_user(order["customer_id"]) or {}
        await self.order_manager.notify_available_service_agents(order_id, customer.get("franchise_area_id"))
        return True

    async def _mark_payment_failed(self, payment_id: str, gateway_payment_id: Optional[str]) -> None:
        try:
            await self.db.update_payment(
                payment_id,
                {"status": PaymentStatus.FAILED.value, "gateway_payment_id": gateway_payment_id}
            )
        except Exception as e:
            logger.error(f"Could not mark payment {payment_id} as failed: {e}")


# =====================================
# SINGLETON INSTANCE
# =====================================

_payment_manager: Optional[PaymentManager] = None


async def get_payment_manager() -> PaymentManager:
    """Payment manager wired to the global database, Razorpay client and order manager."""
    global _payment_manager
    if _payment_manager is None:
        order_manager = await get_order_manager()
        _payment_manager = PaymentManager(order_manager.db, get_razorpay(), order_manager)
    return _payment_manager
