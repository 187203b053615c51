"""Thin wrapper around the Stripe SDK.

Purpose:
- Encapsulate Stripe calls so workflow code never imports stripe.* directly.
- Only subscription cancellation is needed by the inbound processor.
- Never log full Stripe payloads (only IDs).
"""

from __future__ import annotations

from typing import Optional

import stripe

from carebird.config import Settings
from carebird.runtime import get_logger

logger = get_logger("payments")


class PaymentsNotConfigured(RuntimeError):
    """Raised when a payments call is made without a Stripe key."""


class StripeGateway:
    """Payments Gateway backed by Stripe subscriptions.

    Usage:
        gateway = StripeGateway(api_key="sk_test_...")
        gateway.cancel_subscription("sub_123")
    """

    def __init__(self, api_key: Optional[str], *, timeout: float = 5.0) -> None:
        """Initialize the Stripe client.

        Args:
            api_key: Stripe secret key.
            timeout: Per-request network timeout in seconds.

        Raises:
            PaymentsNotConfigured: If no API key is provided.
        """
        if not api_key:
            raise PaymentsNotConfigured(
                "Stripe API key not provided. Set STRIPE_SECRET_KEY."
            )
        self._client = stripe.StripeClient(
            api_key,
            http_client=stripe.RequestsClient(timeout=timeout),
        )

    def cancel_subscription(self, subscription_id: str) -> None:
        """Cancel a subscription immediately.

        Raises:
            stripe.StripeError: on any Stripe-side failure.
        """
        subscription = self._client.v1.subscriptions.cancel(subscription_id)
        logger.info("💳 Stripe subscription %s cancelled (status=%s)", subscription.id, subscription.status)


class UnconfiguredPaymentsGateway:
    """Stand-in used when STRIPE_SECRET_KEY is absent; every call fails loudly."""

    def cancel_subscription(self, subscription_id: str) -> None:
        raise PaymentsNotConfigured(
            f"Cannot cancel {subscription_id}: STRIPE_SECRET_KEY is not set"
        )


def build_payments_gateway(cfg: Settings):
    if not cfg.STRIPE_SECRET_KEY:
        logger.warning("⚠️ STRIPE_SECRET_KEY missing; subscription cancels will fail")
        return UnconfiguredPaymentsGateway()
    return StripeGateway(cfg.STRIPE_SECRET_KEY, timeout=cfg.HTTP_TIMEOUT_SEC)
