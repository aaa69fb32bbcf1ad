from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from app.schemas.amounts import CreditAmount


class BalanceResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    tenant_id: UUID
    entity_id: UUID
    available_credits: CreditAmount
    reserved_credits: CreditAmount
    is_active: bool
    last_updated_at: Optional[datetime] = None


class TransactionResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    tenant_id: UUID
    entity_id: UUID
    transaction_type: str
    amount: CreditAmount
    previous_balance: CreditAmount
    new_balance: CreditAmount
    operation_code: str
    idempotency_key: Optional[str] = None
    sequence: int
    description: Optional[str] = None
    initiated_by: Optional[str] = None
    created_at: datetime


class HistoryResponse(BaseModel):
    transactions: List[TransactionResponse]
    verification: Dict[str, Any]


class TransactionPage(BaseModel):
    items: List[TransactionResponse]
    total: int
    page: int
    limit: int
    total_pages: int


class ConsumeRequest(BaseModel):
    entity_id: UUID
    amount: CreditAmount
    operation_code: str = Field(..., min_length=1, max_length=255)
    idempotency_key: Optional[str] = Field(default=None, max_length=255)
    initiated_by: Optional[str] = None


class AllocationItem(BaseModel):
    entity_id: UUID
    amount: CreditAmount
    idempotency_key: Optional[str] = Field(default=None, max_length=255)


class BulkAllocateRequest(BaseModel):
    allocations: List[AllocationItem] = Field(..., min_length=1)
    reason: Optional[str] = Field(default=None, max_length=500)
    initiated_by: Optional[str] = None


class TransferRequest(BaseModel):
    from_entity_id: UUID
    to_entity_id: UUID
    amount: CreditAmount
    idempotency_key: Optional[str] = Field(default=None, max_length=250)
    description: Optional[str] = Field(default=None, max_length=500)
    initiated_by: Optional[str] = None
