"""
Application initialization module
Handles startup checks and wiring of external collaborators
"""

import logging

from app.core.config import Settings
from app.core.database import check_database_connection
from app.core.exceptions import ConfigurationError
from app.utils.razorpay_client import PaymentGateway, build_payment_gateway

logger = logging.getLogger(__name__)


def init_payment_gateway(config: Settings) -> PaymentGateway:
    """
    Build the payment gateway adapter.

    Missing credentials stop the application from starting instead of
    failing later on the first payment.
    """
    try:
        gateway = build_payment_gateway(config)
    except ConfigurationError as e:
        logger.error(f"❌ {e}")
        raise
    logger.info(f"✅ Payment gateway ready (key id {gateway.key_id[:8]}…)")
    return gateway


def initialize_application(config: Settings) -> PaymentGateway:
    """
    Run all application initialization tasks.

    Args:
        config: Loaded settings

    Returns:
        The payment gateway to store on the application state
    """
    logger.info("🚀 Starting application initialization...")

    if not check_database_connection():
        raise ConfigurationError("Database is not reachable")

    gateway = init_payment_gateway(config)

    if config.subscription_sweep_enabled:
        logger.info("Subscription sweep is enabled")

    logger.info("✅ Application initialization completed!")
    return gateway
