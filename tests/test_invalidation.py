from datetime import date
from typing import Optional

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
    plan_delete_partition,
    plan_delete_transaction,
    transactions_key,
)
from models import CreatedTransaction, Transaction
from query_cache import hash_key, key_matches


def partition(partition_id: str, account_id: str, owner_id: str = "u1") -> dict:
    return {
        "id": partition_id,
        "name": partition_id,
        "account": {
            "id": account_id,
            "name": account_id,
            "owners": [{"id": owner_id, "username": owner_id, "dbname": "main"}],
        },
    }


def category(category_id: str, kind: str) -> dict:
    return {"id": category_id, "name": category_id, "kind": kind}


def make_transaction(
    txn_id: str,
    partition_id: str,
    account_id: str,
    category_id: str,
    kind: str,
    counterpart: Optional[dict] = None,
) -> Transaction:
    return Transaction.model_validate(
        {
            "id": txn_id,
            "date": "2024-01-15",
            "value": "-12.50",
            "category": category(category_id, kind),
            "sourcePartition": partition(partition_id, account_id),
            "counterpart": counterpart,
        }
    )


def key_set(keys) -> set[str]:
    return {hash_key(key) for key in keys}


def test_create_regular_transaction_invalidates_exact_keys() -> None:
    txn = make_transaction("t1", "P", "A", "C", "Expense")

    keys = plan_create_transaction(CreatedTransaction(transaction=txn))

    assert key_set(keys) == key_set(
        [
            transactions_key(),
            category_balance_key("C"),
            partition_balance_key("P"),
            account_balance_key("A"),
            category_kind_balance_key("Expense"),
        ]
    )
    assert len(keys) == 5


def test_create_without_either_side_invalidates_nothing() -> None:
    assert plan_create_transaction(CreatedTransaction()) == []


def test_create_with_only_counterpart_invalidates_destination_side() -> None:
    other = make_transaction("t2", "P2", "A2", "T", "Transfer")

    keys = plan_create_transaction(CreatedTransaction(counterpart=other))

    assert key_set(keys) == key_set(
        [
            transactions_key(),
            partition_balance_key("P2"),
            account_balance_key("A2"),
            category_kind_balance_key("Transfer"),
        ]
    )



def test_create_transfer_covers_both_sides() -> None:
    txn = make_transaction("t1", "P1", "A1", "T", "Transfer")
    other = make_transaction("t2", "P2", "A2", "T", "Transfer")

    keys = plan_create_transaction(
        CreatedTransaction(transaction=txn, counterpart=other)
    )

    assert key_set(keys) == key_set(
        [
            transactions_key(),
            category_balance_key("T"),
            partition_balance_key("P1"),
            account_balance_key("A1"),
            category_kind_balance_key("Transfer"),
            partition_balance_key("P2"),
            account_balance_key("A2"),
        ]
    )
    assert len(keys) == len(key_set(keys))


def test_delete_transfer_mirrors_partition_and_account_keys_only() -> None:
    txn = make_transaction(
        "t1",
        "P1",
        "A1",
        "T",
        "Transfer",
        counterpart={
            "id": "t2",
            "sourcePartition": partition("P2", "A2", owner_id="u2"),
            "category": category("T", "Transfer"),
        },
    )

    keys = plan_delete_transaction(txn)
    hashed = [hash_key(key) for key in keys]

    for expected in [
        partition_balance_key("P1"),
        partition_balance_key("P2"),
        partition_can_be_deleted_key("P2"),
        account_balance_key("A1"),
        account_balance_key("A2"),
        account_can_be_deleted_key("A2"),
    ]:
        assert hash_key(expected) in hashed
    assert hashed.count(hash_key(category_balance_key("T"))) == 1
    assert hashed.count(hash_key(category_can_be_deleted_key("T"))) == 1
    assert len(hashed) == 12


def test_delete_transfer_with_different_counterpart_category_keeps_own_category() -> None:
    txn = make_transaction(
        "t1",
        "P1",
        "A1",
        "T1",
        "Transfer",
        counterpart={
            "id": "t2",
            "sourcePartition": partition("P2", "A2"),
            "category": category("T2", "Transfer"),
        },
    )

    hashed = key_set(plan_delete_transaction(txn))

    assert hash_key(category_balance_key("T1")) in hashed
    assert hash_key(category_balance_key("T2")) not in hashed


def test_balance_filters_match_every_date_range() -> None:
    cached = partition_balance_key("P", date(2024, 1, 1), date(2024, 1, 31))

    assert key_matches(cached, partition_balance_key("P"))
    assert not key_matches(cached, partition_balance_key("Q"))
    assert not key_matches(cached, account_balance_key("P"))


def test_partition_and_category_plans_are_scoped() -> None:
    created = key_set(plan_create_partition("u1", "A1"))
    assert created == key_set(
        [
            accounts_key("u1"),
            partitions_key("u1", "A1"),
            partition_options_key("u1"),
            account_can_be_deleted_key("A1"),
        ]
    )

    deleted = key_set(plan_delete_partition("u1", "A1", "P1"))
    assert hash_key(partition_can_be_deleted_key("P1")) in deleted
    assert hash_key(partitions_key("u1", "A1")) in deleted

    assert plan_create_category("u1") == [categories_key("u1")]


def test_partition_for_new_account_invalidates_all_user_partitions() -> None:
    keys = plan_create_partition("u1", None)

    assert partitions_key("u1") in keys
    assert key_matches(partitions_key("u1", "A9"), partitions_key("u1"))
    assert not key_matches(partitions_key("u2", "A9"), partitions_key("u1"))
