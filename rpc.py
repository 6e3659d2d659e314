from __future__ import annotations

import json
import logging
from typing import Any, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

from pydantic import BaseModel, ValidationError

from config import get_settings
from models import (
    Account,
    CreatedTransaction,
    Partition,
    PartitionOption,
    TransactionPage,
    User,
    UserCategories,
)
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
    FindTransactionsIn,
    FindUserIn,
    GetAccountsIn,
    GetPartitionsIn,
    PartitionBalanceIn,
    PartitionCanBeDeletedIn,
    UpdateCategoryIn,
    UpdatePartitionIn,
    UserScope,
)

logger = logging.getLogger(__name__)


class RpcError(RuntimeError):
    def __init__(
        self, procedure: str, message: str, status: Optional[int] = None
    ) -> None:
        super().__init__(message)
        self.procedure = procedure
        self.status = status


class RpcClient:
    """Typed client for the ledger's remote procedures.

    Every procedure is a JSON ``POST`` to ``{base_url}/{procedure}``; a JSON
    ``null`` body maps to ``None``.
    """

    def __init__(
        self, base_url: Optional[str] = None, timeout: Optional[float] = None
    ) -> None:
        settings = get_settings()
        self.base_url = (base_url or settings.rpc_url).rstrip("/")
        self.timeout = timeout if timeout is not None else settings.rpc_timeout_secs

    def call(self, procedure: str, payload: BaseModel) -> Any:
        body = payload.model_dump(mode="json", by_alias=True)
        req = Request(
            f"{self.base_url}/{procedure}",
            data=json.dumps(body).encode("utf-8"),
            headers={"Accept": "application/json", "Content-Type": "application/json"},
            method="POST",
        )
        try:
            with urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except HTTPError as exc:
            logger.warning(f"rpc_call: procedure={procedure} status={exc.code}")
            raise RpcError(
                procedure, f"{procedure} failed with HTTP {exc.code}", exc.code
            ) from exc
        except (URLError, TimeoutError) as exc:
            logger.warning(f"rpc_call: procedure={procedure} status=unreachable")
            raise RpcError(procedure, f"{procedure} could not be reached") from exc

        logger.info(f"rpc_call: procedure={procedure} status=ok")
        if not raw.strip():
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise RpcError(procedure, f"{procedure} returned invalid JSON") from exc

    def _parse(self, procedure: str, model: type[BaseModel], data: Any) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as exc:
            raise RpcError(procedure, f"Unexpected {procedure} response") from exc

    def _parse_list(self, procedure: str, model: type[BaseModel], data: Any) -> list:
        if not isinstance(data, list):
            raise RpcError(procedure, f"Unexpected {procedure} response")
        return [self._parse(procedure, model, item) for item in data]

    def find_user(self, payload: FindUserIn) -> Optional[User]:
        data = self.call("findUser", payload)
        if data is None:
            return None
        return self._parse("findUser", User, data)

    def get_accounts(self, payload: GetAccountsIn) -> list[Account]:
        return self._parse_list(
            "getAccounts", Account, self.call("getAccounts", payload)
        )

    def get_partitions(self, payload: GetPartitionsIn) -> list[Partition]:
        return self._parse_list(
            "getPartitions", Partition, self.call("getPartitions", payload)
        )

    def get_partition_options(self, payload: UserScope) -> list[PartitionOption]:
        return self._parse_list(
            "getPartitionOptions",
            PartitionOption,
            self.call("getPartitionOptions", payload),
        )

    def get_user_categories(self, payload: UserScope) -> UserCategories:
        data = self.call("getUserCategories", payload)
        return self._parse("getUserCategories", UserCategories, data or {})

    def find_transactions(self, payload: FindTransactionsIn) -> TransactionPage:
        data = self.call("findTransactions", payload)
        if data is None:
            return TransactionPage()
        if isinstance(data, list) and len(data) == 2:
            data = {"items": data[0], "hasNextPage": data[1]}
        return self._parse("findTransactions", TransactionPage, data)

    def create_transaction(self, payload: CreateTransactionIn) -> CreatedTransaction:
        data = self.call("createTransaction", payload)
        return self._parse("createTransaction", CreatedTransaction, data or {})

    def delete_transaction(self, payload: DeleteTransactionIn) -> None:
        self.call("deleteTransaction", payload)

    def create_partition(self, payload: CreatePartitionIn) -> None:
        self.call("createPartition", payload)

    def update_partition(self, payload: UpdatePartitionIn) -> None:
        self.call("updatePartition", payload)

    def delete_partition(self, payload: DeletePartitionIn) -> None:
        self.call("deletePartition", payload)

    def create_category(self, payload: CreateCategoryIn) -> None:
        self.call("createCategory", payload)

    def update_category(self, payload: UpdateCategoryIn) -> None:
        self.call("updateCategory", payload)

    def delete_category(self, payload: DeleteCategoryIn) -> None:
        self.call("deleteCategory", payload)

    def delete_account(self, payload: DeleteAccountIn) -> None:
        self.call("deleteAccount", payload)

    def _balance(self, procedure: str, payload: BaseModel) -> str:
        data = self.call(procedure, payload)
        if data is None:
            raise RpcError(procedure, f"{procedure} returned no value")
        return str(data)

    def get_account_balance(self, payload: AccountBalanceIn) -> str:
        return self._balance("getAccountBalance", payload)

    def get_partition_balance(self, payload: PartitionBalanceIn) -> str:
        return self._balance("getPartitionBalance", payload)

    def get_category_balance(self, payload: CategoryBalanceIn) -> str:
        return self._balance("getCategoryBalance", payload)

    def get_category_kind_balance(self, payload: CategoryKindBalanceIn) -> str:
        return self._balance("getCategoryKindBalance", payload)

    def account_can_be_deleted(self, payload: AccountCanBeDeletedIn) -> bool:
        return bool(self.call("accountCanBeDeleted", payload))

    def partition_can_be_deleted(self, payload: PartitionCanBeDeletedIn) -> bool:
        return bool(self.call("partitionCanBeDeleted", payload))

    def category_can_be_deleted(self, payload: CategoryCanBeDeletedIn) -> bool:
        return bool(self.call("categoryCanBeDeleted", payload))

