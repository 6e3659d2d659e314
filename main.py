import logging
from functools import lru_cache
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response

from config import get_settings
from models import CategoryKind, Transaction
from query_cache import QueryCache
from rpc import RpcClient, RpcError
from schemas import (
    ActionIn,
    CreateCategoryIn,
    CreatePartitionIn,
    CreateTransactionIn,
    DeleteAccountIn,
    DeleteCategoryIn,
    DeletePartitionIn,
    UpdateCategoryIn,
    UpdatePartitionIn,
    UserScope,
)
from services import (
    BalanceView,
    DeleteInProgressError,
    LedgerService,
    account_group,
    can_delete_transaction,
    format_value,
    group_partitions,
)
from session import FILTER_COOKIE, dump_filter_state, load_filter_state
from store import Action, ActionType, FilterState, all_selected, initial_state, reduce

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI(title="Ledger View")


@lru_cache(maxsize=1)
def _default_service() -> LedgerService:
    settings = get_settings()
    return LedgerService(
        RpcClient(settings.rpc_url, settings.rpc_timeout_secs),
        QueryCache(
            stale_time_secs=settings.stale_time_secs,
            max_entries=settings.cache_max_entries,
        ),
    )


def get_service() -> LedgerService:
    return _default_service()


def get_filter_state(request: Request) -> FilterState:
    return load_filter_state(request.cookies.get(FILTER_COOKIE))


@app.exception_handler(RpcError)
async def rpc_error_handler(request: Request, exc: RpcError) -> JSONResponse:
    logger.warning(f"rpc_failure: procedure={exc.procedure} path={request.url.path}")
    return JSONResponse(
        status_code=502, content={"detail": str(exc), "procedure": exc.procedure}
    )


def with_filter_cookie(content: dict, state: FilterState) -> JSONResponse:
    response = JSONResponse(content=content)
    response.set_cookie(
        FILTER_COOKIE, dump_filter_state(state), httponly=True, samesite="lax"
    )
    return response


def balance_payload(view: BalanceView) -> dict:
    return {
        "value": view.value,
        "as_expected": view.as_expected,
        "formatted": view.formatted,
    }


def transaction_payload(transaction: Transaction, user_id: str) -> dict:
    data = transaction.model_dump(mode="json")
    amount = transaction.amount
    data["formatted_value"] = (
        format_value(amount) if amount is not None else transaction.value
    )
    data["can_delete"] = can_delete_transaction(transaction, user_id)
    data["source_group"] = account_group(
        transaction.source_partition.account, user_id
    ).value
    return data


async def read_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid JSON body") from exc
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Expected a JSON object")
    return body


# filter state


@app.get("/api/filters")
def read_filters(state: FilterState = Depends(get_filter_state)):
    return with_filter_cookie(state.to_dict(), state)


@app.post("/api/filters")
def dispatch_filter_action(
    action: ActionIn, state: FilterState = Depends(get_filter_state)
):
    try:
        new_state = reduce(state, Action(ActionType(action.type), action.payload))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    logger.info(
        f"filter_action: type={action.type} current_page={new_state.current_page}"
    )
    return with_filter_cookie(new_state.to_dict(), new_state)


@app.post("/api/filters/reset")
def reset_filters():
    state = initial_state(n_per_page=get_settings().n_per_page)
    return with_filter_cookie(state.to_dict(), state)


# reads


@app.get("/api/{dbname}/users")
def find_user(dbname: str, username: str, service: LedgerService = Depends(get_service)):
    user = service.find_user(username, dbname)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return user.model_dump(mode="json")


@app.get("/api/{dbname}/{user_id}/transactions")
def list_transactions(
    dbname: str,
    user_id: str,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    page = service.transactions(scope, state)
    return {
        "items": [transaction_payload(txn, user_id) for txn in page.items],
        "has_next_page": page.has_next_page,
        "current_page": state.current_page,
        "n_per_page": state.n_per_page,
    }


@app.get("/api/{dbname}/{user_id}/accounts")
def list_accounts(
    dbname: str,
    user_id: str,
    owned: Optional[bool] = None,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    accounts = service.accounts(scope, owned)
    return [
        {
            **account.model_dump(mode="json"),
            "group": account_group(account, user_id).value,
            "selected": bool(account.partitions)
            and all_selected(state.partition_ids, account.partition_ids),
        }
        for account in accounts
    ]


@app.get("/api/{dbname}/{user_id}/accounts/{account_id}/partitions")
def list_partitions(
    dbname: str,
    user_id: str,
    account_id: str,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return [p.model_dump(mode="json") for p in service.partitions(scope, account_id)]


@app.get("/api/{dbname}/{user_id}/partition-options")
def list_partition_options(
    dbname: str,
    user_id: str,
    only_owned: bool = False,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    grouped = group_partitions(service.partition_options(scope), user_id, only_owned)
    return {
        account_id: [p.model_dump(mode="json") for p in options]
        for account_id, options in grouped.items()
    }


@app.get("/api/{dbname}/{user_id}/categories")
def list_categories(
    dbname: str,
    user_id: str,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    categories = service.categories(scope)
    result = {}
    for kind in CategoryKind:
        items = categories.for_kind(kind)
        result[kind.value] = {
            "items": [c.model_dump(mode="json") for c in items],
            "selected": bool(items)
            and all_selected(state.category_ids, [c.id for c in items]),
        }
    return result


@app.get("/api/{dbname}/{user_id}/balances/accounts/{account_id}")
def account_balance(
    dbname: str,
    user_id: str,
    account_id: str,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return balance_payload(service.account_balance(scope, account_id, state))


@app.get("/api/{dbname}/{user_id}/balances/partitions/{partition_id}")
def partition_balance(
    dbname: str,
    user_id: str,
    partition_id: str,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return balance_payload(service.partition_balance(scope, partition_id, state))


@app.get("/api/{dbname}/{user_id}/balances/categories/{category_id}")
def category_balance(
    dbname: str,
    user_id: str,
    category_id: str,
    kind: CategoryKind,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return balance_payload(service.category_balance(scope, category_id, kind, state))


@app.get("/api/{dbname}/{user_id}/balances/category-kinds/{kind}")
def category_kind_balance(
    dbname: str,
    user_id: str,
    kind: CategoryKind,
    state: FilterState = Depends(get_filter_state),
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return balance_payload(service.category_kind_balance(scope, kind, state))


@app.get("/api/{dbname}/{user_id}/accounts/{account_id}/can-be-deleted")
def account_can_be_deleted(
    dbname: str,
    user_id: str,
    account_id: str,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return {"can_be_deleted": service.account_can_be_deleted(scope, account_id)}


@app.get("/api/{dbname}/{user_id}/partitions/{partition_id}/can-be-deleted")
def partition_can_be_deleted(
    dbname: str,
    user_id: str,
    partition_id: str,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return {"can_be_deleted": service.partition_can_be_deleted(scope, partition_id)}


@app.get("/api/{dbname}/{user_id}/categories/{category_id}/can-be-deleted")
def category_can_be_deleted(
    dbname: str,
    user_id: str,
    category_id: str,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    return {"can_be_deleted": service.category_can_be_deleted(scope, category_id)}


# mutations


@app.post("/api/{dbname}/{user_id}/transactions")
async def create_transaction(
    dbname: str,
    user_id: str,
    request: Request,
    service: LedgerService = Depends(get_service),
):
    body = await read_body(request)
    try:
        data = CreateTransactionIn(**{**body, "user_id": user_id, "dbname": dbname})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    result = service.create_transaction(data)
    return result.model_dump(mode="json")


@app.post("/api/{dbname}/{user_id}/transactions/{transaction_id}/delete")
def delete_transaction(
    dbname: str,
    user_id: str,
    transaction_id: str,
    service: LedgerService = Depends(get_service),
):
    scope = UserScope(user_id=user_id, dbname=dbname)
    try:
        transaction = service.cached_transaction(transaction_id)
    except ValueError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    try:
        service.delete_transaction(scope, transaction)
    except DeleteInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/partitions")
async def create_partition(
    dbname: str,
    user_id: str,
    request: Request,
    service: LedgerService = Depends(get_service),
):
    body = await read_body(request)
    try:
        data = CreatePartitionIn(**{**body, "user_id": user_id, "dbname": dbname})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service.create_partition(data)
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/partitions/{partition_id}/update")
async def update_partition(
    dbname: str,
    user_id: str,
    partition_id: str,
    request: Request,
    service: LedgerService = Depends(get_service),
):
    body = await read_body(request)
    account_id = body.pop("account_id", None) or body.pop("accountId", None)
    try:
        data = UpdatePartitionIn(
            **{**body, "user_id": user_id, "dbname": dbname, "partition_id": partition_id}
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service.update_partition(data, account_id)
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/accounts/{account_id}/partitions/{partition_id}/delete")
def delete_partition(
    dbname: str,
    user_id: str,
    account_id: str,
    partition_id: str,
    service: LedgerService = Depends(get_service),
):
    data = DeletePartitionIn(user_id=user_id, dbname=dbname, partition_id=partition_id)
    try:
        service.delete_partition(data, account_id)
    except DeleteInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/categories")
async def create_category(
    dbname: str,
    user_id: str,
    request: Request,
    service: LedgerService = Depends(get_service),
):
    body = await read_body(request)
    try:
        data = CreateCategoryIn(**{**body, "user_id": user_id, "dbname": dbname})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service.create_category(data)
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/categories/{category_id}/update")
async def update_category(
    dbname: str,
    user_id: str,
    category_id: str,
    request: Request,
    service: LedgerService = Depends(get_service),
):
    body = await read_body(request)
    try:
        data = UpdateCategoryIn(
            **{**body, "user_id": user_id, "dbname": dbname, "category_id": category_id}
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    service.update_category(data)
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/categories/{category_id}/delete")
def delete_category(
    dbname: str,
    user_id: str,
    category_id: str,
    service: LedgerService = Depends(get_service),
):
    data = DeleteCategoryIn(user_id=user_id, dbname=dbname, category_id=category_id)
    try:
        service.delete_category(data)
    except DeleteInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


@app.post("/api/{dbname}/{user_id}/accounts/{account_id}/delete")
def delete_account(
    dbname: str,
    user_id: str,
    account_id: str,
    service: LedgerService = Depends(get_service),
):
    data = DeleteAccountIn(user_id=user_id, dbname=dbname, account_id=account_id)
    try:
        service.delete_account(data)
    except DeleteInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return Response(status_code=204)


def main():
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    main()
