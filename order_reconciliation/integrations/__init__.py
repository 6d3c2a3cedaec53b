"""
Integrations package initialization.
Exports the payment gateway clients.
"""
from .base import PaymentGateway
from .abacatepay import AbacatePayClient
from .normalization import map_gateway_status, normalize_charge, extract_fee

__all__ = [
    "PaymentGateway",
    "AbacatePayClient",
    "map_gateway_status",
    "normalize_charge",
    "extract_fee",
]
