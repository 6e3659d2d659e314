from datetime import date
from decimal import Decimal
from typing import Any, Optional

from pydantic import Field, field_serializer, model_validator

from models import CategoryKind, WireModel


class FindUserIn(WireModel):
    username: str = Field(..., min_length=1)
    dbname: str = Field(..., min_length=1)


class UserScope(WireModel):
    user_id: str
    dbname: str


class GetAccountsIn(UserScope):
    owned: Optional[bool] = None


class GetPartitionsIn(UserScope):
    account_id: str


class FindTransactionsIn(WireModel):
    partition_ids: list[str] = Field(default_factory=list)
    category_ids: list[str] = Field(default_factory=list)
    owner_id: str
    dbname: str
    tss_date: Optional[date] = None
    tse_date: Optional[date] = None
    current_page: int = Field(1, ge=1)
    n_per_page: int = Field(25, ge=1)


class CreateTransactionIn(WireModel):
    source_partition_id: str = Field(..., min_length=1)
    destination_partition_id: Optional[str] = None
    category_id: str = Field(..., min_length=1)
    value: Decimal
    description: Optional[str] = Field(default=None, max_length=200)
    user_id: str
    dbname: str

    @model_validator(mode="after")
    def _check_partitions(self) -> "CreateTransactionIn":
        if self.destination_partition_id == "":
            self.destination_partition_id = None
        if self.destination_partition_id == self.source_partition_id:
            raise ValueError("Source and destination partitions must differ")
        if not self.value.is_finite():
            raise ValueError("Value must be a number")
        return self

    @field_serializer("value")
    def _serialize_value(self, value: Decimal) -> float:
        return float(value)


class DeleteTransactionIn(UserScope):
    transaction_id: str


class CreatePartitionIn(UserScope):
    name: str = Field(..., min_length=1, max_length=100)
    is_private: bool = False
    for_new_account: bool = False
    account_id: Optional[str] = None
    is_shared_account: bool = False
    new_account_name: Optional[str] = Field(default=None, max_length=100)

    @model_validator(mode="after")
    def _check_account(self) -> "CreatePartitionIn":
        if self.for_new_account:
            if not (self.new_account_name or "").strip():
                raise ValueError("Account name is required")
        elif not self.account_id:
            raise ValueError("Account is required")
        return self


class UpdatePartitionIn(UserScope):
    partition_id: str
    name: str = Field(..., min_length=1, max_length=100)


class DeletePartitionIn(UserScope):
    partition_id: str


class CreateCategoryIn(UserScope):
    name: str = Field(..., min_length=1, max_length=100)
    kind: CategoryKind
    is_private: bool = False


class UpdateCategoryIn(UserScope):
    category_id: str
    name: str = Field(..., min_length=1, max_length=100)


class DeleteCategoryIn(UserScope):
    category_id: str


class DeleteAccountIn(UserScope):
    account_id: str


class BalanceIn(UserScope):
    tss_date: Optional[date] = None
    tse_date: Optional[date] = None


class AccountBalanceIn(BalanceIn):
    account_id: str


class PartitionBalanceIn(BalanceIn):
    partition_id: str


class CategoryBalanceIn(BalanceIn):
    category_id: str


class CategoryKindBalanceIn(BalanceIn):
    kind: CategoryKind


class AccountCanBeDeletedIn(UserScope):
    account_id: str


class PartitionCanBeDeletedIn(UserScope):
    partition_id: str


class CategoryCanBeDeletedIn(UserScope):
    category_id: str


class ActionIn(WireModel):
    type: str
    payload: Any = None
