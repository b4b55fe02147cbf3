from datetime import date
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from models import LearningScope, RebalanceDecision, TransactionType
from periods import parse_month


class TransactionIn(BaseModel):
    date: date
    type: TransactionType
    account: Optional[str] = Field(default=None, max_length=100)
    category: Optional[str] = Field(default=None, max_length=100)
    amount_cents: int = Field(..., ge=0)
    memo: Optional[str] = None


class BudgetIn(BaseModel):
    account: str = Field(..., min_length=1, max_length=100)
    year: int = Field(..., ge=1970, le=3000)
    month: int = Field(..., ge=1, le=12)
    target_amount_cents: int = Field(..., ge=0)


class RebalanceDecisionIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    transaction_id: Optional[int] = Field(default=None, alias="transactionId")
    decision: RebalanceDecision
    chosen_account: Optional[str] = Field(
        default=None, alias="chosenAccount", max_length=100
    )
    learning_scope: Optional[LearningScope] = Field(
        default=None, alias="learningScope"
    )

    @field_validator("transaction_id", mode="before")
    @classmethod
    def _coerce_transaction_id(cls, value: object) -> Optional[int]:
        # Unusable ids are skipped by the commit processor, not rejected.
        if isinstance(value, bool):
            return None
        if isinstance(value, int):
            txn_id = value
        elif isinstance(value, (float, str)):
            try:
                number = float(value)
            except ValueError:
                return None
            # 1.9 names no row; never round it onto transaction 1
            if not number.is_integer():
                return None
            txn_id = int(number)
        else:
            return None
        return txn_id if txn_id > 0 else None

    @field_validator("learning_scope", mode="before")
    @classmethod
    def _unknown_scope_is_default(cls, value: object) -> object:
        # Unknown scopes fall back to the decision's default scope.
        known = [scope.value for scope in LearningScope]
        return value if value in known else None

    @field_validator("chosen_account", mode="before")
    @classmethod
    def _blank_account_is_none(cls, value: object) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None


class RebalanceCommitIn(BaseModel):
    month: str
    decisions: list[RebalanceDecisionIn] = Field(..., min_length=1)

    @field_validator("month")
    @classmethod
    def _valid_month(cls, value: str) -> str:
        year, month = parse_month(value)
        return f"{year:04d}-{month:02d}"


class SettlementApplyIn(BaseModel):
    month: str
    item_keys: list[str] = Field(..., min_length=1)

    @field_validator("month")
    @classmethod
    def _valid_month(cls, value: str) -> str:
        year, month = parse_month(value)
        return f"{year:04d}-{month:02d}"
