from .base import ResponseBase
from .gateway import AbacatePayChargeBody, GatewayCharge, FeeRecognized, FeeUnrecognized, FeeLookup
from .reconciliation import PurgeRequest, OutcomeRead, RunRead, LeaseRead, MetricsRead

__all__ = [
    # Base
    "ResponseBase",

    # Gateway
    "AbacatePayChargeBody",
    "GatewayCharge",
    "FeeRecognized",
    "FeeUnrecognized",
    "FeeLookup",

    # Reconciliation
    "PurgeRequest",
    "OutcomeRead",
    "RunRead",
    "LeaseRead",
    "MetricsRead",
]
