from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import RuleType


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    type: str = Field(default="checking", max_length=40)
    bank: str = Field(default="", max_length=120)
    number: Optional[str] = Field(default=None, max_length=40)


class AllocationRuleIn(BaseModel):
    account_id: int
    category: str = Field(..., min_length=1, max_length=40)
    rule_type: RuleType
    value: float = Field(..., ge=0, allow_inf_nan=False)
    priority: int = Field(default=0, ge=0, le=10_000)
    active: bool = True

    @model_validator(mode="after")
    def _percent_in_range(self) -> "AllocationRuleIn":
        if self.rule_type == RuleType.percent and self.value > 100:
            raise ValueError("Percent rules must be between 0 and 100")
        return self


class RuleReorderIn(BaseModel):
    rule_ids: list[int] = Field(..., min_length=1)


class IncomePlanIn(BaseModel):
    expected_date: date
    expected_amount: float = Field(..., ge=0, allow_inf_nan=False)
    label: str = Field(..., min_length=1, max_length=120)
    recurrence: str = Field(default="once", min_length=1, max_length=40)
    notes: Optional[str] = Field(default=None, max_length=500)


class IncomePlanMatchIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    actual_amount: float = Field(..., ge=0, allow_inf_nan=False)
    transaction_id: Optional[int] = None
    date_received: Optional[date] = None
    rerun: bool = False


class AllocationAmountIn(BaseModel):
    amount: float = Field(..., allow_inf_nan=False)


class AllocationRecordIn(BaseModel):
    account_id: int
    amount: float = Field(..., allow_inf_nan=False)
    category: str = Field(..., min_length=1, max_length=40)

