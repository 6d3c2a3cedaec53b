"""
Pydantic schemas for reconciliation read models exposed by the ops API.
"""
from datetime import datetime
from typing import Optional, Dict, Any
from pydantic import BaseModel, Field, ConfigDict

from order_reconciliation.models.db.enums import OrderStatus, OutcomeKind, ErrorKind, RunStatus

class PurgeRequest(BaseModel):
    """Body for POST /purge; defaults to the configured retention window."""
    days: Optional[int] = Field(None, gt=0, description="Delete audit rows older than this many days")

class OutcomeRead(BaseModel):
    id: int
    execution_id: Optional[str]
    order_id: str
    payment_reference: Optional[str]
    kind: OutcomeKind
    previous_status: OrderStatus
    new_status: OrderStatus
    gateway_status: Optional[str]
    attempt_count: int
    error_kind: Optional[ErrorKind]
    error_message: Optional[str]
    amount_mismatch: bool
    expected_amount: Optional[int]
    gateway_amount: Optional[int]
    gateway_fee: Optional[int]
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)

class RunRead(BaseModel):
    execution_id: str
    holder_id: str
    status: RunStatus
    started_at: datetime
    finished_at: Optional[datetime]
    duration_ms: Optional[int]
    orders_selected: int
    orders_processed: int
    orders_updated: int
    api_calls: int
    api_errors: int
    outcome_counts: Optional[Dict[str, Any]]
    error_message: Optional[str]

    model_config = ConfigDict(from_attributes=True)

class LeaseRead(BaseModel):
    holder_id: str
    acquired_at: datetime
    expires_at: datetime

class MetricsRead(BaseModel):
    last_cycle: Dict[str, int]
    cumulative: Dict[str, int]
    cycles: int
