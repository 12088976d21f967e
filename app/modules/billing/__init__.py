"""
Billing provider integration (Stripe), scoped per clinic.
"""

from .gateway import BillingContext, BillingGateway, PriceSpec, StripeBillingGateway, map_interval

__all__ = [
    "BillingContext",
    "BillingGateway",
    "PriceSpec",
    "StripeBillingGateway",
    "map_interval",
]
