from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from money import MAX_AMOUNT_CENTS

AmountField = Union[int, float, str, Decimal]


class LoginIn(BaseModel):
    code: str = Field(..., max_length=200)
    # plain string so an unknown user fails the same way as a wrong code
    user_id: str = Field(..., max_length=50)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)


class DefaultBudgetIn(BaseModel):
    category_id: int
    amount_cents: Optional[int] = Field(default=None, ge=0, le=MAX_AMOUNT_CENTS)


class BudgetOverrideIn(BaseModel):
    category_id: int
    year: int = Field(..., ge=1, le=9999)
    month: int = Field(..., ge=1, le=12)
    amount_cents: int = Field(..., ge=0, le=MAX_AMOUNT_CENTS)


class BudgetUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: Literal["default", "override"]
    category_id: int
    amount: Optional[AmountField] = None
    month: Optional[str] = None


class TransactionIn(BaseModel):
    amount_cents: int = Field(..., gt=0, le=MAX_AMOUNT_CENTS)
    category_id: Optional[int] = None
    category_name: Optional[str] = Field(default=None, max_length=100)
    occurred_at: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=500)


class TransactionCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: AmountField
    category_id: Optional[int] = None
    category_name: Optional[str] = Field(default=None, max_length=100)
    occurred_at: Optional[datetime] = None
    note: Optional[str] = Field(default=None, max_length=500)
