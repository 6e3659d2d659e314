"""Filter selection state for the transactions view.

The state is an immutable value; every change goes through ``reduce`` so the
order in which actions are dispatched fully determines the result.
"""

from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Any, Iterable, Optional

from periods import month_period, plus_months, utc_today
from schemas import FindTransactionsIn


class ActionType(str, Enum):
    toggle_partitions = "TOGGLE_PARTITIONS"
    toggle_account = "TOGGLE_ACCOUNT"
    toggle_categories = "TOGGLE_CATEGORIES"
    toggle_category_kind = "TOGGLE_CATEGORY_KIND"
    set_n_per_page = "SET_N_PER_PAGE"
    set_tss_date = "SET_TSS_DATE"
    set_tse_date = "SET_TSE_DATE"
    set_this_month = "SET_THIS_MONTH"
    set_prev_month = "SET_PREV_MONTH"
    set_next_month = "SET_NEXT_MONTH"
    set_selected_category_id = "SET_SELECTED_CATEGORY_ID"
    set_selected_source_id = "SET_SELECTED_SOURCE_ID"
    set_selected_destination_id = "SET_SELECTED_DESTINATION_ID"
    toggle_loan_ids = "TOGGLE_LOAN_IDS"
    remove_loan_ids = "REMOVE_LOAN_IDS"
    set_current_page = "SET_CURRENT_PAGE"


@dataclass(frozen=True)
class Action:
    type: ActionType
    payload: Any = None


@dataclass(frozen=True)
class FilterState:
    partition_ids: frozenset[str] = field(default_factory=frozenset)
    category_ids: frozenset[str] = field(default_factory=frozenset)
    loan_ids: frozenset[str] = field(default_factory=frozenset)
    tss_date: Optional[date] = None
    tse_date: Optional[date] = None
    n_per_page: int = 25
    current_page: int = 1
    selected_category_id: str = ""
    selected_source_id: str = ""
    selected_destination_id: str = ""

    def to_query(self, owner_id: str, dbname: str) -> FindTransactionsIn:
        return FindTransactionsIn(
            partition_ids=sorted(self.partition_ids),
            category_ids=sorted(self.category_ids),
            owner_id=owner_id,
            dbname=dbname,
            tss_date=self.tss_date,
            tse_date=self.tse_date,
            current_page=self.current_page,
            n_per_page=self.n_per_page,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "partition_ids": sorted(self.partition_ids),
            "category_ids": sorted(self.category_ids),
            "loan_ids": sorted(self.loan_ids),
            "tss_date": self.tss_date.isoformat() if self.tss_date else None,
            "tse_date": self.tse_date.isoformat() if self.tse_date else None,
            "n_per_page": self.n_per_page,
            "current_page": self.current_page,
            "selected_category_id": self.selected_category_id,
            "selected_source_id": self.selected_source_id,
            "selected_destination_id": self.selected_destination_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FilterState":
        return cls(
            partition_ids=frozenset(data.get("partition_ids") or ()),
            category_ids=frozenset(data.get("category_ids") or ()),
            loan_ids=frozenset(data.get("loan_ids") or ()),
            tss_date=_parse_date(data.get("tss_date")),
            tse_date=_parse_date(data.get("tse_date")),
            n_per_page=int(data.get("n_per_page", 25)),
            current_page=int(data.get("current_page", 1)),
            selected_category_id=data.get("selected_category_id") or "",
            selected_source_id=data.get("selected_source_id") or "",
            selected_destination_id=data.get("selected_destination_id") or "",
        )


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def initial_state(
    today: Optional[date] = None, n_per_page: Optional[int] = None
) -> FilterState:
    period = month_period(today)
    return FilterState(
        tss_date=period.start,
        tse_date=period.end,
        n_per_page=n_per_page or 25,
        current_page=1,
    )


def toggle_each(selected: frozenset[str], ids: Iterable[str]) -> frozenset[str]:
    result = set(selected)
    for id_ in ids:
        if id_ in result:
            result.remove(id_)
        else:
            result.add(id_)
    return frozenset(result)


def all_selected(selected: Iterable[str], ids: Iterable[str]) -> bool:
    selected = set(selected)
    return all(id_ in selected for id_ in ids)


def toggle_group(selected: frozenset[str], ids: Iterable[str]) -> frozenset[str]:
    ids = list(ids)
    if all_selected(selected, ids):
        return selected - frozenset(ids)
    return selected | frozenset(ids)


def _month_range(day: date) -> dict[str, date]:
    period = month_period(day)
    return {"tss_date": period.start, "tse_date": period.end}


def _ids(payload: Any) -> list[str]:
    if payload is None:
        return []
    if isinstance(payload, str):
        return [payload]
    if not isinstance(payload, (list, tuple, set, frozenset)):
        raise ValueError("Expected a list of ids")
    if not all(isinstance(id_, (str, int)) for id_ in payload):
        raise ValueError("Ids must be strings")
    return [str(id_) for id_ in payload]


def _positive_int(payload: Any, message: str) -> int:
    if isinstance(payload, bool):
        raise ValueError(message)
    try:
        value = int(payload)
    except (TypeError, ValueError) as exc:
        raise ValueError(message) from exc
    if value < 1:
        raise ValueError(message)
    return value


def _selected_id(payload: Any) -> str:
    if payload is None:
        return ""
    if not isinstance(payload, str):
        raise ValueError("Selected id must be a string")
    return payload


def reduce(
    state: FilterState, action: Action, *, today: Optional[date] = None
) -> FilterState:
    kind = ActionType(action.type)
    payload = action.payload

    if kind == ActionType.toggle_partitions:
        return replace(
            state,
            partition_ids=toggle_each(state.partition_ids, _ids(payload)),
            selected_source_id="",
            current_page=1,
        )
    if kind == ActionType.toggle_account:
        return replace(
            state,
            partition_ids=toggle_group(state.partition_ids, _ids(payload)),
            current_page=1,
        )
    if kind == ActionType.toggle_categories:
        return replace(
            state,
            category_ids=toggle_each(state.category_ids, _ids(payload)),
            selected_category_id="",
            current_page=1,
        )
    if kind == ActionType.toggle_category_kind:
        return replace(
            state,
            category_ids=toggle_group(state.category_ids, _ids(payload)),
            current_page=1,
        )
    if kind == ActionType.set_n_per_page:
        n_per_page = _positive_int(payload, "Items per page must be positive")
        return replace(state, n_per_page=n_per_page)
    if kind == ActionType.set_tss_date:
        return replace(state, tss_date=_parse_date(payload), current_page=1)
    if kind == ActionType.set_tse_date:
        return replace(state, tse_date=_parse_date(payload), current_page=1)
    if kind == ActionType.set_this_month:
        return replace(state, **_month_range(today or utc_today()), current_page=1)
    if kind in (ActionType.set_prev_month, ActionType.set_next_month):
        step = -1 if kind == ActionType.set_prev_month else 1
        anchor = state.tss_date or today or utc_today()
        return replace(
            state, **_month_range(plus_months(anchor, step)), current_page=1
        )
    if kind == ActionType.set_selected_category_id:
        return replace(state, selected_category_id=_selected_id(payload))
    if kind == ActionType.set_selected_source_id:
        return replace(state, selected_source_id=_selected_id(payload))
    if kind == ActionType.set_selected_destination_id:
        return replace(state, selected_destination_id=_selected_id(payload))
    if kind == ActionType.toggle_loan_ids:
        return replace(
            state,
            loan_ids=toggle_each(state.loan_ids, _ids(payload)),
            current_page=1,
        )
    if kind == ActionType.remove_loan_ids:
        return replace(
            state,
            loan_ids=state.loan_ids - frozenset(_ids(payload)),
            current_page=1,
        )
    if kind == ActionType.set_current_page:
        current_page = _positive_int(payload, "Page must be positive")
        return replace(state, current_page=current_page)
    raise ValueError(f"Unsupported action: {action.type}")
