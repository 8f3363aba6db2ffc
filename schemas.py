from datetime import datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from models import ExpenseCategory, TransactionType


class UserIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$")
    password: str = Field(..., min_length=1, max_length=128)


class LoginIn(BaseModel):
    email: str = Field(..., min_length=1, max_length=254)
    password: str = Field(..., min_length=1, max_length=128)


class UserUpdateIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    password: str = Field(..., min_length=1, max_length=128)
    name: Optional[str] = Field(default=None, max_length=120)
    email: Optional[str] = Field(
        default=None, max_length=254, pattern=r"^[^@\s]+@[^@\s]+$"
    )
    new_password: Optional[str] = Field(
        default=None, alias="newPassword", max_length=128
    )


class BalanceAdjustmentIn(BaseModel):
    amount: Decimal
    type: TransactionType


class TransactionIn(BaseModel):
    amount: Decimal
    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[datetime] = None


class TransactionUpdateIn(BaseModel):
    amount: Optional[Decimal] = None
    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    date: Optional[datetime] = None


class BudgetCategoryIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: ExpenseCategory
    budget_amount: Decimal = Field(..., ge=0, alias="budgetAmount")
    spent_amount: Decimal = Field(default=Decimal("0"), ge=0, alias="spentAmount")


class BudgetIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    total_budget: Decimal = Field(..., ge=0, alias="totalBudget")
    categories: list[BudgetCategoryIn] = Field(default_factory=list)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
