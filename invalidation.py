"""Query keys and the cache entries each mutation makes stale.

Every key is scoped by the id of the entity it aggregates. Keys built without
a date range are filters: they match the cached entries for every range.
"""

from datetime import date
from typing import Iterable, Optional

from models import CategoryKind, CreatedTransaction, Transaction
from query_cache import QueryKey, hash_key


def _with_range(
    params: dict, tss_date: Optional[date], tse_date: Optional[date]
) -> dict:
    if tss_date is not None or tse_date is not None:
        params["tss_date"] = tss_date.isoformat() if tss_date else None
        params["tse_date"] = tse_date.isoformat() if tse_date else None
    return params


def transactions_key(params: Optional[dict] = None) -> QueryKey:
    if params is None:
        return ("transactions",)
    return ("transactions", params)


def accounts_key(user_id: str, owned: Optional[bool] = None) -> QueryKey:
    if owned is None:
        return ("accounts", user_id)
    return ("accounts", user_id, {"owned": owned})


def partitions_key(user_id: str, account_id: Optional[str] = None) -> QueryKey:
    if account_id is None:
        return ("partitions", user_id)
    return ("partitions", user_id, account_id)


def partition_options_key(user_id: str) -> QueryKey:
    return ("partitionOptions", user_id)


def categories_key(user_id: str) -> QueryKey:
    return ("categories", user_id)


def account_balance_key(
    account_id: str, tss_date: Optional[date] = None, tse_date: Optional[date] = None
) -> QueryKey:
    return (
        "accountBalance",
        _with_range({"account_id": account_id}, tss_date, tse_date),
    )


def partition_balance_key(
    partition_id: str,
    tss_date: Optional[date] = None,
    tse_date: Optional[date] = None,
) -> QueryKey:
    return (
        "partitionBalance",
        _with_range({"partition_id": partition_id}, tss_date, tse_date),
    )


def category_balance_key(
    category_id: str,
    tss_date: Optional[date] = None,
    tse_date: Optional[date] = None,
) -> QueryKey:
    return (
        "categoryBalance",
        _with_range({"category_id": category_id}, tss_date, tse_date),
    )


def category_kind_balance_key(
    kind: CategoryKind,
    user_id: Optional[str] = None,
    tss_date: Optional[date] = None,
    tse_date: Optional[date] = None,
) -> QueryKey:
    key: QueryKey = ("categoryKindBalance", CategoryKind(kind).value)
    if user_id is None:
        return key
    return key + (_with_range({"user_id": user_id}, tss_date, tse_date),)


def account_can_be_deleted_key(account_id: str) -> QueryKey:
    return ("accountCanBeDeleted", {"account_id": account_id})


def partition_can_be_deleted_key(partition_id: str) -> QueryKey:
    return ("partitionCanBeDeleted", {"partition_id": partition_id})


def category_can_be_deleted_key(category_id: str) -> QueryKey:
    return ("categoryCanBeDeleted", {"category_id": category_id})


def unique_keys(keys: Iterable[QueryKey]) -> list[QueryKey]:
    seen: set[str] = set()
    result: list[QueryKey] = []
    for key in keys:
        digest = hash_key(key)
        if digest not in seen:
            seen.add(digest)
            result.append(key)
    return result


def plan_create_transaction(result: CreatedTransaction) -> list[QueryKey]:
    transaction = result.transaction
    counterpart = result.counterpart
    if transaction is None and counterpart is None:
        return []
    keys = [transactions_key()]
    if transaction is not None:
        keys.extend(
            [
                category_balance_key(transaction.category_id),
                partition_balance_key(transaction.source_partition_id),
                account_balance_key(transaction.account_id),
                category_kind_balance_key(transaction.kind),
            ]
        )
    if counterpart is not None:
        keys.extend(
            [
                partition_balance_key(counterpart.source_partition_id),
                account_balance_key(counterpart.account_id),
                category_kind_balance_key(counterpart.kind),
            ]
        )
    return unique_keys(keys)


def plan_delete_transaction(transaction: Transaction) -> list[QueryKey]:
    partition_id = transaction.source_partition_id
    account_id = transaction.account_id
    keys = [
        transactions_key(),
        partition_balance_key(partition_id),
        partition_can_be_deleted_key(partition_id),
        account_balance_key(account_id),
        account_can_be_deleted_key(account_id),
        category_balance_key(transaction.category_id),
        category_can_be_deleted_key(transaction.category_id),
        category_kind_balance_key(transaction.kind),
    ]
    counterpart = transaction.counterpart
    if counterpart is not None:
        other_partition_id = counterpart.source_partition.id
        other_account_id = counterpart.source_partition.account.id
        keys.extend(
            [
                partition_balance_key(other_partition_id),
                partition_can_be_deleted_key(other_partition_id),
                account_balance_key(other_account_id),
                account_can_be_deleted_key(other_account_id),
            ]
        )
    return unique_keys(keys)


def plan_create_partition(user_id: str, account_id: Optional[str]) -> list[QueryKey]:
    # A partition created for a new account has no account id until the
    # server answers, so the whole user's partition listing goes stale.
    keys = [
        accounts_key(user_id),
        partitions_key(user_id, account_id),
        partition_options_key(user_id),
    ]
    if account_id is not None:
        keys.append(account_can_be_deleted_key(account_id))
    return unique_keys(keys)


def plan_update_partition(
    user_id: str, account_id: Optional[str], partition_id: str
) -> list[QueryKey]:
    return unique_keys(
        [
            partitions_key(user_id, account_id),
            partition_options_key(user_id),
            partition_can_be_deleted_key(partition_id),
        ]
    )


def plan_delete_partition(
    user_id: str, account_id: str, partition_id: str
) -> list[QueryKey]:
    return unique_keys(
        [
            partitions_key(user_id, account_id),
            partition_options_key(user_id),
            partition_can_be_deleted_key(partition_id),
            account_can_be_deleted_key(account_id),
        ]
    )


def plan_create_category(user_id: str) -> list[QueryKey]:
    return [categories_key(user_id)]


def plan_update_category(user_id: str, category_id: str) -> list[QueryKey]:
    return [categories_key(user_id), category_can_be_deleted_key(category_id)]


def plan_delete_category(user_id: str, category_id: str) -> list[QueryKey]:
    return [categories_key(user_id), category_can_be_deleted_key(category_id)]


def plan_delete_account(user_id: str, account_id: str) -> list[QueryKey]:
    return unique_keys(
        [
            accounts_key(user_id),
            partitions_key(user_id, account_id),
            partition_options_key(user_id),
            account_can_be_deleted_key(account_id),
        ]
    )
