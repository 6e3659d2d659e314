from datetime import date
from decimal import Decimal

import pytest

from models import (
    AccountGroup,
    AccountRef,
    CategoryKind,
    CreatedTransaction,
    PartitionOption,
    Transaction,
    TransactionPage,
)
from query_cache import QueryCache
from schemas import CreateTransactionIn, DeletePartitionIn, UserScope
from services import (
    BalanceView,
    DeleteInProgressError,
    LedgerService,
    account_group,
    balance_as_expected,
    can_delete_transaction,
    format_balance,
    format_value,
    group_partitions,
)
from store import initial_state

SCOPE = UserScope(user_id="u1", dbname="main")


def owners(*ids: str) -> list[dict]:
    return [{"id": id_, "username": id_, "dbname": "main"} for id_ in ids]


def account(account_id: str, *owner_ids: str, is_owned: bool = False) -> AccountRef:
    return AccountRef(
        id=account_id, name=account_id, owners=owners(*owner_ids), is_owned=is_owned
    )


def option(partition_id: str, acc: AccountRef) -> PartitionOption:
    return PartitionOption(id=partition_id, name=partition_id, account=acc)


def make_transaction(
    txn_id: str = "t1",
    partition_id: str = "p1",
    account_id: str = "a1",
    owner_id: str = "u1",
    kind: str = "Expense",
    counterpart_owner: str = "",
) -> Transaction:
    data = {
        "id": txn_id,
        "date": "2024-01-15",
        "value": "-5.00",
        "category": {"id": "c1", "name": "Food", "kind": kind},
        "sourcePartition": {
            "id": partition_id,
            "name": partition_id,
            "account": {"id": account_id, "name": account_id, "owners": owners(owner_id)},
        },
    }
    if counterpart_owner:
        data["counterpart"] = {
            "id": f"{txn_id}-cp",
            "category": {"id": "c1", "name": "Food", "kind": kind},
            "sourcePartition": {
                "id": "p9",
                "name": "p9",
                "account": {"id": "a9", "name": "a9", "owners": owners(counterpart_owner)},
            },
        }
    return Transaction.model_validate(data)


class FakeClient:
    def __init__(self) -> None:
        self.calls: list[str] = []
        self.balances = {"p1": "10.00", "p2": "20.00"}
        self.page = TransactionPage(items=[make_transaction()], has_next_page=False)
        self.on_delete = None

    def get_partition_balance(self, payload) -> str:
        self.calls.append(f"partition:{payload.partition_id}")
        return self.balances[payload.partition_id]

    def get_category_kind_balance(self, payload) -> str:
        self.calls.append(f"kind:{payload.kind.value}")
        return "-3.00"

    def find_transactions(self, payload) -> TransactionPage:
        self.calls.append("transactions")
        return self.page

    def partition_can_be_deleted(self, payload) -> bool:
        self.calls.append(f"can_delete:{payload.partition_id}")
        return False

    def create_transaction(self, payload) -> CreatedTransaction:
        self.calls.append("create")
        return CreatedTransaction(
            transaction=make_transaction(partition_id=payload.source_partition_id)
        )

    def delete_transaction(self, payload) -> None:
        self.calls.append(f"delete:{payload.transaction_id}")
        if self.on_delete:
            self.on_delete()

    def delete_partition(self, payload) -> None:
        self.calls.append(f"delete_partition:{payload.partition_id}")
        if self.on_delete:
            self.on_delete()


def make_service() -> tuple[LedgerService, FakeClient]:
    client = FakeClient()
    return LedgerService(client, QueryCache()), client


def test_account_group_classification() -> None:
    assert account_group(account("a", "u1"), "u1") == AccountGroup.owned
    assert account_group(account("a", "u1", "u2"), "u1") == AccountGroup.common
    assert account_group(account("a", "u2"), "u1") == AccountGroup.others
    assert account_group(account("a", "u2", "u3"), "u1") == AccountGroup.others
    assert account_group(account("a"), "u1") == AccountGroup.others


def test_group_partitions_orders_owned_then_common_then_others() -> None:
    others = account("a3", "u3")
    common = account("a2", "u1", "u2", is_owned=True)
    owned = account("a1", "u1", is_owned=True)
    options = [option("p3", others), option("p2", common), option("p1", owned)]

    grouped = group_partitions(options, "u1")
    assert list(grouped) == ["a1", "a2", "a3"]

    only_owned = group_partitions(options, "u1", only_owned=True)
    assert list(only_owned) == ["a1", "a2"]


def test_balance_expectations_per_kind() -> None:
    assert balance_as_expected("5", CategoryKind.income)
    assert not balance_as_expected("-0.01", CategoryKind.income)
    assert balance_as_expected("-5", CategoryKind.expense)
    assert not balance_as_expected("1", CategoryKind.expense)
    assert balance_as_expected("0.00", CategoryKind.transfer)
    assert not balance_as_expected("3", CategoryKind.transfer)
    assert balance_as_expected("0")
    assert not balance_as_expected("-1")
    assert not balance_as_expected("n/a")


def test_format_balance_uses_absolute_value_when_expected() -> None:
    assert format_value(Decimal("1234.5")) == "1,234.50"
    assert format_balance("-1234.5", CategoryKind.expense) == "1,234.50"
    assert format_balance("12", CategoryKind.expense) == "12.00"
    assert format_balance("-7", CategoryKind.transfer) == "-7.00"
    assert format_balance("n/a") == "n/a"


def test_can_delete_requires_owning_one_side() -> None:
    assert can_delete_transaction(make_transaction(owner_id="u1"), "u1")
    assert not can_delete_transaction(make_transaction(owner_id="u2"), "u1")
    assert can_delete_transaction(
        make_transaction(owner_id="u2", kind="Transfer", counterpart_owner="u1"), "u1"
    )


def test_balances_are_cached_per_date_range() -> None:
    service, client = make_service()
    state = initial_state(today=date(2024, 1, 15))

    first = service.partition_balance(SCOPE, "p1", state)
    again = service.partition_balance(SCOPE, "p1", state)
    service.partition_balance(SCOPE, "p1", initial_state(today=date(2024, 2, 15)))

    assert first == again == BalanceView("10.00", True, "10.00")
    assert client.calls == ["partition:p1", "partition:p1"]


def test_category_kind_balance_flags_sign() -> None:
    service, _ = make_service()
    state = initial_state(today=date(2024, 1, 15))

    view = service.category_kind_balance(SCOPE, CategoryKind.income, state)

    assert view.as_expected is False
    assert view.formatted == "-3.00"


def test_create_transaction_refetches_only_affected_balances() -> None:
    service, client = make_service()
    state = initial_state(today=date(2024, 1, 15))
    service.partition_balance(SCOPE, "p1", state)
    service.partition_balance(SCOPE, "p2", state)
    service.transactions(SCOPE, state)
    client.calls.clear()

    service.create_transaction(
        CreateTransactionIn(
            source_partition_id="p1",
            category_id="c1",
            value="-5",
            user_id="u1",
            dbname="main",
        )
    )
    service.partition_balance(SCOPE, "p1", state)
    service.partition_balance(SCOPE, "p2", state)
    service.transactions(SCOPE, state)

    assert client.calls == ["create", "partition:p1", "transactions"]


def test_cached_transaction_lookup() -> None:
    service, _ = make_service()
    service.transactions(SCOPE, initial_state(today=date(2024, 1, 15)))

    assert service.cached_transaction("t1").id == "t1"
    with pytest.raises(ValueError):
        service.cached_transaction("missing")


def test_delete_transaction_invalidates_listing() -> None:
    service, client = make_service()
    state = initial_state(today=date(2024, 1, 15))
    service.transactions(SCOPE, state)

    service.delete_transaction(SCOPE, service.cached_transaction("t1"))
    service.transactions(SCOPE, state)

    assert client.calls == ["transactions", "delete:t1", "transactions"]


def test_delete_foreign_transaction_is_refused() -> None:
    service, client = make_service()

    with pytest.raises(ValueError):
        service.delete_transaction(SCOPE, make_transaction(owner_id="u2"))

    assert client.calls == []


def test_concurrent_delete_of_same_row_is_rejected() -> None:
    service, client = make_service()
    txn = make_transaction()
    errors = []

    def delete_again():
        try:
            service.delete_transaction(SCOPE, txn)
        except DeleteInProgressError as exc:
            errors.append(exc)

    client.on_delete = delete_again
    service.delete_transaction(SCOPE, txn)

    assert len(errors) == 1
    assert client.calls == ["delete:t1"]

    client.on_delete = None
    service.delete_transaction(SCOPE, txn)
    assert client.calls == ["delete:t1", "delete:t1"]


def test_busy_flag_is_released_after_failure() -> None:
    service, client = make_service()

    def fail():
        raise RuntimeError("server down")

    client.on_delete = fail
    data = DeletePartitionIn(user_id="u1", dbname="main", partition_id="p1")
    with pytest.raises(RuntimeError):
        service.delete_partition(data, "a1")

    client.on_delete = None
    service.delete_partition(data, "a1")
    assert client.calls == ["delete_partition:p1", "delete_partition:p1"]


def test_deletability_is_refetched_after_deleting_a_transaction() -> None:
    service, client = make_service()
    state = initial_state(today=date(2024, 1, 15))
    service.transactions(SCOPE, state)

    assert service.partition_can_be_deleted(SCOPE, "p1") is False
    assert service.partition_can_be_deleted(SCOPE, "p1") is False
    service.delete_transaction(SCOPE, service.cached_transaction("t1"))
    service.partition_can_be_deleted(SCOPE, "p1")

    assert client.calls == [
        "transactions",
        "can_delete:p1",
        "delete:t1",
        "can_delete:p1",
    ]


def test_deleting_a_partition_drops_its_cached_balances() -> None:
    service, client = make_service()
    january = initial_state(today=date(2024, 1, 15))
    service.partition_balance(SCOPE, "p1", january)
    service.partition_balance(SCOPE, "p1", initial_state(today=date(2024, 2, 15)))
    service.partition_balance(SCOPE, "p2", january)
    service.partition_can_be_deleted(SCOPE, "p1")

    data = DeletePartitionIn(user_id="u1", dbname="main", partition_id="p1")
    service.delete_partition(data, "a1")

    assert service.cache.entries(("partitionBalance", {"partition_id": "p1"})) == []
    assert service.cache.entries(("partitionCanBeDeleted",)) == []
    assert len(service.cache.entries(("partitionBalance",))) == 1
