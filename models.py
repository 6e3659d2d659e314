from datetime import date
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CategoryKind(str, Enum):
    income = "Income"
    expense = "Expense"
    transfer = "Transfer"


class AccountGroup(str, Enum):
    owned = "owned"
    common = "common"
    others = "others"


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class User(WireModel):
    id: str
    username: str
    dbname: str


class AccountRef(WireModel):
    id: str
    name: str
    label: str = ""
    owners: list[User] = Field(default_factory=list)
    is_owned: bool = False

    @property
    def owner_ids(self) -> list[str]:
        return [owner.id for owner in self.owners]


class Partition(WireModel):
    id: str
    name: str
    label: str = ""
    account_id: str
    is_private: bool = False


class Account(AccountRef):
    partitions: list[Partition] = Field(default_factory=list)

    @property
    def partition_ids(self) -> list[str]:
        return [p.id for p in self.partitions]


class PartitionOption(WireModel):
    """A partition flattened together with its account, as listed in selects."""

    id: str
    name: str
    label: str = ""
    is_private: bool = False
    account: AccountRef


class Category(WireModel):
    id: str
    name: str
    kind: CategoryKind
    is_private: bool = False


class UserCategories(WireModel):
    income: list[Category] = Field(default_factory=list, alias="Income")
    expense: list[Category] = Field(default_factory=list, alias="Expense")
    transfer: list[Category] = Field(default_factory=list, alias="Transfer")

    def for_kind(self, kind: CategoryKind) -> list[Category]:
        if kind == CategoryKind.income:
            return self.income
        if kind == CategoryKind.expense:
            return self.expense
        return self.transfer


class Counterpart(WireModel):
    id: str
    source_partition: PartitionOption
    category: Category


class Transaction(WireModel):
    id: str
    date: date
    value: str
    description: str = ""
    category: Category
    source_partition: PartitionOption
    counterpart: Optional[Counterpart] = None

    @property
    def category_id(self) -> str:
        return self.category.id

    @property
    def source_partition_id(self) -> str:
        return self.source_partition.id

    @property
    def account_id(self) -> str:
        return self.source_partition.account.id

    @property
    def kind(self) -> CategoryKind:
        return self.category.kind

    @property
    def amount(self) -> Optional[Decimal]:
        try:
            return Decimal(self.value)
        except InvalidOperation:
            return None


class TransactionPage(WireModel):
    items: list[Transaction] = Field(default_factory=list)
    has_next_page: bool = False


class CreatedTransaction(WireModel):
    transaction: Optional[Transaction] = None
    counterpart: Optional[Transaction] = None
