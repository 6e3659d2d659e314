import logging
from datetime import date
from typing import Optional

from itsdangerous import BadSignature, URLSafeTimedSerializer

from config import get_settings
from store import FilterState, initial_state

logger = logging.getLogger(__name__)

FILTER_COOKIE = "ledgerview_filters"


def _serializer() -> URLSafeTimedSerializer:
    settings = get_settings()
    return URLSafeTimedSerializer(settings.session_secret, salt="filter-state")


def dump_filter_state(state: FilterState) -> str:
    return _serializer().dumps(state.to_dict())


def load_filter_state(
    token: Optional[str], today: Optional[date] = None
) -> FilterState:
    """Restore the filter state from a signed token, or start a fresh one."""
    settings = get_settings()
    fresh = initial_state(today=today, n_per_page=settings.n_per_page)
    if not token:
        return fresh
    try:
        data = _serializer().loads(
            token, max_age=settings.session_max_age_hours * 3600
        )
    except BadSignature:
        logger.info("filter_state: token=rejected")
        return fresh
    try:
        return FilterState.from_dict(data)
    except (TypeError, ValueError):
        logger.info("filter_state: token=malformed")
        return fresh
