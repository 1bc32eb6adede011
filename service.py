# service.py - Process startup and shutdown for the order service
"""
Wires the global database, Razorpay client and managers for a host process
(web app lifespan, worker or script). `lifespan()` yields the payment
manager, whose `order_manager` attribute carries the order operations.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import razorpay_integration
from db import close_db, init_db
from errors import ServerError
from payment_manager import PaymentManager, get_payment_manager
from utils import setup_logging, validate_environment

logger = logging.getLogger(__name__)


async def startup() -> PaymentManager:
    """Configure logging, refuse to start without credentials, then connect."""
    setup_logging()
    logger.info("Starting order service")

    missing = validate_environment()
    if missing:
        raise ServerError(
            "Order service is missing required configuration",
            {"missing": missing}
        )

    await init_db()
    logger.info("Database initialized")

    payment_manager = await get_payment_manager()
    logger.info("Order and payment managers initialized")
    return payment_manager


async def shutdown() -> None:
    logger.info("Shutting down order service")
    client = razorpay_integration.razorpay
    if client is not None:
        try:
            await client.close()
        except Exception as e:
            logger.error(f"Error closing Razorpay client: {e}")
    await close_db()


@asynccontextmanager
async def lifespan() -> AsyncIterator[PaymentManager]:
    payment_manager = await startup()
    try:
        yield payment_manager
    finally:
        await shutdown()
