from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Callable, Hashable, Iterable, Iterator, Optional, TypeVar

from invalidation import (
    account_balance_key,
    account_can_be_deleted_key,
    accounts_key,
    categories_key,
    category_balance_key,
    category_can_be_deleted_key,
    category_kind_balance_key,
    partition_balance_key,
    partition_can_be_deleted_key,
    partition_options_key,
    partitions_key,
    plan_create_category,
    plan_create_partition,
    plan_create_transaction,
    plan_delete_account,
    plan_delete_category,
    plan_delete_partition,
    plan_delete_transaction,
    plan_update_category,
    plan_update_partition,
    transactions_key,
)
from models import (
    Account,
    AccountGroup,
    AccountRef,
    CategoryKind,
    CreatedTransaction,
    Partition,
    PartitionOption,
    Transaction,
    TransactionPage,
    User,
    UserCategories,
)
from query_cache import QueryCache, QueryKey
from rpc import RpcClient
from schemas import (
    AccountBalanceIn,
    AccountCanBeDeletedIn,
    CategoryBalanceIn,
    CategoryCanBeDeletedIn,
    CategoryKindBalanceIn,
    CreateCategoryIn,
    CreatePartitionIn,
    CreateTransactionIn,
    DeleteAccountIn,
    DeleteCategoryIn,
    DeletePartitionIn,
    DeleteTransactionIn,
    FindUserIn,
    GetAccountsIn,
    GetPartitionsIn,
    PartitionBalanceIn,
    PartitionCanBeDeletedIn,
    UpdateCategoryIn,
    UpdatePartitionIn,
    UserScope,
)
from store import FilterState

logger = logging.getLogger(__name__)

T = TypeVar("T")
K = TypeVar("K", bound=Hashable)

GROUP_ORDER = (AccountGroup.owned, AccountGroup.common, AccountGroup.others)


class DeleteInProgressError(RuntimeError):
    pass


def group_by(items: Iterable[T], key: Callable[[T], K]) -> dict[K, list[T]]:
    result: dict[K, list[T]] = {}
    for item in items:
        result.setdefault(key(item), []).append(item)
    return result


def account_group(account: AccountRef, user_id: str) -> AccountGroup:
    owner_ids = account.owner_ids
    if len(owner_ids) == 1 and owner_ids[0] == user_id:
        return AccountGroup.owned
    if len(owner_ids) > 1 and user_id in owner_ids:
        return AccountGroup.common
    return AccountGroup.others


def group_partitions(
    options: Iterable[PartitionOption], user_id: str, only_owned: bool = False
) -> dict[str, list[PartitionOption]]:
    """Group partition options by account, owned accounts first."""
    visible = [p for p in options if p.account.is_owned or not only_owned]
    by_group = group_by(visible, lambda p: account_group(p.account, user_id))
    ordered = [p for group in GROUP_ORDER for p in by_group.get(group, [])]
    return group_by(ordered, lambda p: p.account.id)


def _parse_decimal(value: str) -> Optional[Decimal]:
    try:
        parsed = Decimal(str(value))
    except InvalidOperation:
        return None
    return parsed if parsed.is_finite() else None


def balance_as_expected(value: str, kind: Optional[CategoryKind] = None) -> bool:
    """Check a balance against the sign expected for what it aggregates.

    Income is never negative, expenses are never positive and transfers
    cancel out. Account and partition balances (no kind) are never negative.
    """
    parsed = _parse_decimal(value)
    if parsed is None:
        return False
    if kind == CategoryKind.expense:
        return parsed <= 0
    if kind == CategoryKind.transfer:
        return parsed == 0
    return parsed >= 0


def format_value(value: Decimal) -> str:
    return f"{value:,.2f}"


def format_balance(value: str, kind: Optional[CategoryKind] = None) -> str:
    parsed = _parse_decimal(value)
    if parsed is None:
        return value
    if balance_as_expected(value, kind):
        parsed = abs(parsed)
    return format_value(parsed)


def can_delete_transaction(transaction: Transaction, user_id: str) -> bool:
    accounts = [transaction.source_partition.account]
    if transaction.counterpart is not None:
        accounts.append(transaction.counterpart.source_partition.account)
    return any(user_id in account.owner_ids for account in accounts)


@dataclass(frozen=True)
class BalanceView:
    value: str
    as_expected: bool
    formatted: str

    @classmethod
    def build(cls, value: str, kind: Optional[CategoryKind] = None) -> "BalanceView":
        return cls(
            value=value,
            as_expected=balance_as_expected(value, kind),
            formatted=format_balance(value, kind),
        )


class LedgerService:
    def __init__(self, client: RpcClient, cache: QueryCache) -> None:
        self.client = client
        self.cache = cache
        self._deleting: set[str] = set()
        self._deleting_lock = threading.Lock()

    @contextmanager
    def _busy(self, token: str) -> Iterator[None]:
        with self._deleting_lock:
            if token in self._deleting:
                raise DeleteInProgressError(f"Delete already in progress: {token}")
            self._deleting.add(token)
        try:
            yield
        finally:
            with self._deleting_lock:
                self._deleting.discard(token)

    def _apply(self, mutation: str, entity_id: str, keys: list[QueryKey]) -> int:
        matched = self.cache.invalidate_many(keys)
        logger.info(
            f"mutation: kind={mutation} id={entity_id} keys={len(keys)} "
            f"invalidated={matched}"
        )
        return matched

    def _forget(self, keys: list[QueryKey]) -> None:
        # entries scoped to a deleted entity can never be read again
        for key in keys:
            self.cache.remove(key)

    # reads

    def find_user(self, username: str, dbname: str) -> Optional[User]:
        payload = FindUserIn(username=username, dbname=dbname)
        return self.cache.fetch(
            ("user", {"username": username, "dbname": dbname}),
            lambda: self.client.find_user(payload),
        )

    def accounts(self, scope: UserScope, owned: Optional[bool] = None) -> list[Account]:
        payload = GetAccountsIn(user_id=scope.user_id, dbname=scope.dbname, owned=owned)
        return self.cache.fetch(
            accounts_key(scope.user_id, owned),
            lambda: self.client.get_accounts(payload),
        )

    def partitions(self, scope: UserScope, account_id: str) -> list[Partition]:
        payload = GetPartitionsIn(
            user_id=scope.user_id, dbname=scope.dbname, account_id=account_id
        )
        return self.cache.fetch(
            partitions_key(scope.user_id, account_id),
            lambda: self.client.get_partitions(payload),
        )

    def partition_options(self, scope: UserScope) -> list[PartitionOption]:
        return self.cache.fetch(
            partition_options_key(scope.user_id),
            lambda: self.client.get_partition_options(scope),
        )

    def categories(self, scope: UserScope) -> UserCategories:
        return self.cache.fetch(
            categories_key(scope.user_id),
            lambda: self.client.get_user_categories(scope),
        )

    def transactions(self, scope: UserScope, state: FilterState) -> TransactionPage:
        query = state.to_query(owner_id=scope.user_id, dbname=scope.dbname)
        return self.cache.fetch(
            transactions_key(query.model_dump(mode="json")),
            lambda: self.client.find_transactions(query),
        )

    def account_balance(
        self, scope: UserScope, account_id: str, state: FilterState
    ) -> BalanceView:
        payload = AccountBalanceIn(
            user_id=scope.user_id,
            dbname=scope.dbname,
            account_id=account_id,
            tss_date=state.tss_date,
            tse_date=state.tse_date,
        )
        value = self.cache.fetch(
            account_balance_key(account_id, state.tss_date, state.tse_date),
            lambda: self.client.get_account_balance(payload),
        )
        return BalanceView.build(value)

    def partition_balance(
        self, scope: UserScope, partition_id: str, state: FilterState
    ) -> BalanceView:
        payload = PartitionBalanceIn(
            user_id=scope.user_id,
            dbname=scope.dbname,
            partition_id=partition_id,
            tss_date=state.tss_date,
            tse_date=state.tse_date,
        )
        value = self.cache.fetch(
            partition_balance_key(partition_id, state.tss_date, state.tse_date),
            lambda: self.client.get_partition_balance(payload),
        )
        return BalanceView.build(value)

    def category_balance(
        self,
        scope: UserScope,
        category_id: str,
        kind: CategoryKind,
        state: FilterState,
    ) -> BalanceView:
        payload = CategoryBalanceIn(
            user_id=scope.user_id,
            dbname=scope.dbname,
            category_id=category_id,
            tss_date=state.tss_date,
            tse_date=state.tse_date,
        )
        value = self.cache.fetch(
            category_balance_key(category_id, state.tss_date, state.tse_date),
            lambda: self.client.get_category_balance(payload),
        )
        return BalanceView.build(value, kind)

    def category_kind_balance(
        self, scope: UserScope, kind: CategoryKind, state: FilterState
    ) -> BalanceView:
        payload = CategoryKindBalanceIn(
            user_id=scope.user_id,
            dbname=scope.dbname,
            kind=kind,
            tss_date=state.tss_date,
            tse_date=state.tse_date,
        )
        value = self.cache.fetch(
            category_kind_balance_key(
                kind, scope.user_id, state.tss_date, state.tse_date
            ),
            lambda: self.client.get_category_kind_balance(payload),
        )
        return BalanceView.build(value, kind)

    def account_can_be_deleted(self, scope: UserScope, account_id: str) -> bool:
        payload = AccountCanBeDeletedIn(
            user_id=scope.user_id, dbname=scope.dbname, account_id=account_id
        )
        return self.cache.fetch(
            account_can_be_deleted_key(account_id),
            lambda: self.client.account_can_be_deleted(payload),
        )

    def partition_can_be_deleted(self, scope: UserScope, partition_id: str) -> bool:
        payload = PartitionCanBeDeletedIn(
            user_id=scope.user_id, dbname=scope.dbname, partition_id=partition_id
        )
        return self.cache.fetch(
            partition_can_be_deleted_key(partition_id),
            lambda: self.client.partition_can_be_deleted(payload),
        )

    def category_can_be_deleted(self, scope: UserScope, category_id: str) -> bool:
        payload = CategoryCanBeDeletedIn(
            user_id=scope.user_id, dbname=scope.dbname, category_id=category_id
        )
        return self.cache.fetch(
            category_can_be_deleted_key(category_id),
            lambda: self.client.category_can_be_deleted(payload),
        )

    def cached_transaction(self, transaction_id: str) -> Transaction:
        for entry in self.cache.entries(transactions_key()):
            page = entry.data
            if not isinstance(page, TransactionPage):
                continue
            for transaction in page.items:
                if transaction.id == transaction_id:
                    return transaction
        raise ValueError("Transaction not found")

    # mutations

    def create_transaction(self, data: CreateTransactionIn) -> CreatedTransaction:
        result = self.client.create_transaction(data)
        entity_id = result.transaction.id if result.transaction else "-"
        self._apply("create_transaction", entity_id, plan_create_transaction(result))
        return result

    def delete_transaction(self, scope: UserScope, transaction: Transaction) -> None:
        if not can_delete_transaction(transaction, scope.user_id):
            raise ValueError("Transaction belongs to accounts you do not own")
        with self._busy(f"transaction:{transaction.id}"):
            self.client.delete_transaction(
                DeleteTransactionIn(
                    user_id=scope.user_id,
                    dbname=scope.dbname,
                    transaction_id=transaction.id,
                )
            )
        self._apply(
            "delete_transaction", transaction.id, plan_delete_transaction(transaction)
        )

    def create_partition(self, data: CreatePartitionIn) -> None:
        self.client.create_partition(data)
        account_id = None if data.for_new_account else data.account_id
        self._apply(
            "create_partition",
            data.name,
            plan_create_partition(data.user_id, account_id),
        )

    def update_partition(self, data: UpdatePartitionIn, account_id: Optional[str]) -> None:
        self.client.update_partition(data)
        self._apply(
            "update_partition",
            data.partition_id,
            plan_update_partition(data.user_id, account_id, data.partition_id),
        )

    def delete_partition(self, data: DeletePartitionIn, account_id: str) -> None:
        with self._busy(f"partition:{data.partition_id}"):
            self.client.delete_partition(data)
        self._apply(
            "delete_partition",
            data.partition_id,
            plan_delete_partition(data.user_id, account_id, data.partition_id),
        )
        self._forget(
            [
                partition_balance_key(data.partition_id),
                partition_can_be_deleted_key(data.partition_id),
            ]
        )

    def create_category(self, data: CreateCategoryIn) -> None:
        self.client.create_category(data)
        self._apply("create_category", data.name, plan_create_category(data.user_id))

    def update_category(self, data: UpdateCategoryIn) -> None:
        self.client.update_category(data)
        self._apply(
            "update_category",
            data.category_id,
            plan_update_category(data.user_id, data.category_id),
        )

    def delete_category(self, data: DeleteCategoryIn) -> None:
        with self._busy(f"category:{data.category_id}"):
            self.client.delete_category(data)
        self._apply(
            "delete_category",
            data.category_id,
            plan_delete_category(data.user_id, data.category_id),
        )
        self._forget(
            [
                category_balance_key(data.category_id),
                category_can_be_deleted_key(data.category_id),
            ]
        )

    def delete_account(self, data: DeleteAccountIn) -> None:
        with self._busy(f"account:{data.account_id}"):
            self.client.delete_account(data)
        self._apply(
            "delete_account",
            data.account_id,
            plan_delete_account(data.user_id, data.account_id),
        )
        self._forget(
            [
                account_balance_key(data.account_id),
                account_can_be_deleted_key(data.account_id),
                partitions_key(data.user_id, data.account_id),
            ]
        )
