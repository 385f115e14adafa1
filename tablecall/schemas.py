"""
Pydantic Schemas for Request/Response Validation

Invalid input (malformed thresholds, table numbers) is rejected here, at
the API boundary, and never reaches the engine.
"""

from pydantic import BaseModel, Field, field_validator, model_validator
from typing import Optional, List, Dict
from datetime import datetime

from tablecall.domain import (
    Call,
    CallStatus,
    CallType,
    EstablishmentSettings,
    SemaphoreStatus,
    normalize_table_number,
    sanitize_phone,
)
from tablecall.engine.statistics import StatisticsPeriod


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class EstablishmentCreate(BaseModel):
    """Register a new establishment."""
    name: str = Field(..., min_length=2, max_length=120, examples=["Pizzaria do Zé"])
    phone: str = Field(..., min_length=8, max_length=20, examples=["555-0101"])
    owner_id: Optional[str] = Field(None, max_length=64)

    @field_validator("phone")
    @classmethod
    def validate_phone(cls, v: str) -> str:
        cleaned = sanitize_phone(v)
        if len(cleaned) < 7:
            raise ValueError("Phone number must have at least 7 digits")
        return cleaned


class SettingsUpdate(BaseModel):
    """
    New semaphore thresholds. Field names follow the stored settings
    document (``timeGreen``, ``timeYellow``...).
    """
    timeGreen: int = Field(..., ge=0, examples=[60])
    timeYellow: int = Field(..., ge=0, examples=[180])
    qtyGreen: int = Field(..., ge=0, examples=[2])
    qtyYellow: int = Field(..., ge=0, examples=[4])
    totalTables: int = Field(..., ge=1, le=999, examples=[20])

    @model_validator(mode="after")
    def check_time_order(self) -> "SettingsUpdate":
        if self.timeGreen >= self.timeYellow:
            raise ValueError("timeGreen must be lower than timeYellow")
        return self

    def to_settings(self) -> EstablishmentSettings:
        return EstablishmentSettings.from_dict(self.model_dump())


class CallCreate(BaseModel):
    """A customer request from a table."""
    table_number: str = Field(..., min_length=1, max_length=10, examples=["7"])
    type: CallType = Field(..., examples=["WAITER"])

    @field_validator("table_number")
    @classmethod
    def validate_table_number(cls, v: str) -> str:
        return normalize_table_number(v)


class HeartbeatRequest(BaseModel):
    is_open: bool = True


class FavoriteCreate(BaseModel):
    establishment_id: str = Field(..., min_length=1, max_length=32)


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class CallResponse(BaseModel):
    id: str
    type: CallType
    status: CallStatus
    created_at: float
    table_number: str

    @classmethod
    def from_call(cls, call: Call) -> "CallResponse":
        return cls(**call.to_dict())


class LifecycleResponse(BaseModel):
    """Result of a lifecycle operation; ``changed`` is 0 for a no-op."""
    success: bool = True
    changed: int
    call: Optional[CallResponse] = None


class EstablishmentCreateResponse(BaseModel):
    success: bool = True
    establishment_id: str


class EstablishmentSearchResponse(BaseModel):
    establishment_id: str
    name: str


class HeartbeatResponse(BaseModel):
    success: bool = True
    is_open: bool


class SnapshotResponse(BaseModel):
    """Raw snapshot as terminals sync it."""
    id: str
    name: str
    phone: str
    settings: Dict[str, int]
    is_open: bool
    heartbeat_at: Optional[float]
    calls: List[CallResponse]


class TableBoardResponse(BaseModel):
    number: str
    status: SemaphoreStatus
    type_statuses: Dict[CallType, SemaphoreStatus]
    active_counts: Dict[CallType, int]
    oldest_call_at: Optional[float]
    calls: List[CallResponse]


class BoardResponse(BaseModel):
    """Snapshot classified for rendering."""
    establishment_id: str
    name: str
    is_open: bool
    settings: Dict[str, int]
    generated_at: float
    tables: List[TableBoardResponse]


class PendingResponse(BaseModel):
    has_pending_calls: bool


class StatisticsResponse(BaseModel):
    period: StatisticsPeriod
    since: float
    occupied_tables: int
    total_tables: int
    occupation_percentage: int
    active_calls_by_type: Dict[CallType, int]
    customers_served: int
    attended_by_type: Dict[CallType, int]
    cancellations: int
    average_customers_per_day: Optional[float] = None
    average_calls_per_day: Optional[float] = None


class FavoritesResponse(BaseModel):
    customer_id: str
    favorite_establishment_ids: List[str]


class ExportResponse(BaseModel):
    success: bool
    task_id: Optional[str] = None
    rows: int


class ErrorResponse(BaseModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    store: str
    redis: str
    timestamp: datetime
