"""
Pydantic schemas for payment gateway (AbacatePay) charge lookups.
Contains the raw charge body as the gateway sends it and the normalized view used by the reconciler.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from pydantic import BaseModel, ConfigDict, Field

from order_reconciliation.models.db.enums import OrderStatus

class AbacatePayChargeBody(BaseModel):
    """Raw charge body (after unwrapping the optional `data` envelope)."""
    id: Optional[str] = None
    status: str = Field(min_length=1, description="Gateway status, e.g. PENDING, PAID, EXPIRED")
    amount: Optional[int] = Field(None, ge=0, description="Charge amount in centavos")
    currency: Optional[str] = None
    paid_at: Optional[str] = Field(None, alias="paidAt")
    expires_at: Optional[str] = Field(None, alias="expiresAt")

    model_config = ConfigDict(extra="allow", populate_by_name=True, json_schema_extra={
        "example": {
            "id": "bill_12345667",
            "status": "PAID",
            "amount": 9000,
            "currency": "BRL",
        }
    })

class GatewayCharge(BaseModel):
    """Normalized gateway answer: mapped local status plus the evidence it came from."""
    reference: str
    gateway_status: str = Field(description="Lower-cased raw gateway status")
    status: OrderStatus = Field(description="Gateway status mapped onto the local status enum")
    amount: Optional[int] = Field(None, ge=0)
    fee: Optional[int] = Field(None, ge=0, description="Gateway fee in centavos when recognized")
    raw: Dict[str, Any] = Field(default_factory=dict)

@dataclass(frozen=True)
class FeeRecognized:
    fee: int
    path: tuple[str, ...]

@dataclass(frozen=True)
class FeeUnrecognized:
    pass

FeeLookup = Union[FeeRecognized, FeeUnrecognized]
