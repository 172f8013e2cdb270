import logging
import math
from typing import Any, Dict, List, Sequence

import stripe

from errors import UpstreamServiceError, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_ALLOWED_COUNTRIES = ("SI", "HR", "AT", "DE", "IT")


def build_line_items(cart, currency: str = "eur") -> List[Dict[str, Any]]:
    """Convert the posted cart into Stripe Checkout ``line_items``."""
    if not isinstance(cart, list) or not cart:
        raise ValidationError("The cart must be a non-empty list of items.")

    line_items: List[Dict[str, Any]] = []
    for position, item in enumerate(cart, start=1):
        if not isinstance(item, dict):
            raise ValidationError(f"Cart item {position} is not an object.")

        name = str(item.get("name") or "").strip()
        if not name:
            raise ValidationError(f"Cart item {position} is missing a name.")

        try:
            price = float(item.get("price"))
        except (TypeError, ValueError):
            raise ValidationError(f"Cart item {position} has an invalid price.")
        if not math.isfinite(price) or price <= 0:
            raise ValidationError(f"Cart item {position} has an invalid price.")

        try:
            quantity = int(item.get("quantity", 1))
        except (TypeError, ValueError):
            raise ValidationError(f"Cart item {position} has an invalid quantity.")
        if quantity < 1:
            raise ValidationError(f"Cart item {position} has an invalid quantity.")

        line_items.append(
            {
                "price_data": {
                    "currency": currency,
                    "product_data": {"name": name},
                    "unit_amount": int(round(price * 100)),
                },
                "quantity": quantity,
            }
        )

    return line_items


def create_checkout_session(
    cart,
    *,
    success_url: str,
    cancel_url: str,
    currency: str = "eur",
    allowed_countries: Sequence[str] = DEFAULT_ALLOWED_COUNTRIES,
) -> str:
    """Create a Stripe Checkout session for ``cart`` and return its URL."""
    if not stripe.api_key:
        raise UpstreamServiceError("Payment provider is not configured.", 503)

    line_items = build_line_items(cart, currency)
    try:
        session = stripe.checkout.Session.create(
            mode="payment",
            line_items=line_items,
            shipping_address_collection={"allowed_countries": list(allowed_countries)},
            success_url=success_url,
            cancel_url=cancel_url,
        )
    except stripe.StripeError as exc:
        logger.error("Stripe checkout session failed: %s", exc)
        raise UpstreamServiceError(f"Failed to create session: {exc}") from exc

    return session.url
