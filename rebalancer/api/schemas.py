from pydantic import BaseModel, Field
from typing import Optional, Literal

RiskLevel = Literal['low', 'low_medium', 'medium', 'medium_high', 'high']

class ComplianceCheckRequest(BaseModel):
    ticker: str
    account_id: str
    account_type: str
    position_value: float = Field(ge=0)

class PositionCreate(BaseModel):
    symbol: str
    quantity: float = Field(ge=0)
    current_price: float = Field(ge=0)
    entry_price: Optional[float] = None

class TargetItem(BaseModel):
    ticker: str
    target_percentage: float = Field(ge=0, le=100)
    name: Optional[str] = None

class TargetsReplace(BaseModel):
    targets: list[TargetItem]
    source_portfolio_type: Optional[str] = None

class HoldingUpsert(BaseModel):
    ticker: str
    risk_level: RiskLevel
    name: Optional[str] = None
    category: Optional[str] = None

class SignalResponse(BaseModel):
    accepted: bool
    tasksCreated: int
    tasks: list[str]
    reportsSent: int
    accounts: list[str]

class RefreshQueued(BaseModel):
    queued: bool
