import os
from functools import lru_cache


class Settings:
    def __init__(
        self,
        rpc_url: str,
        rpc_timeout_secs: float,
        session_secret: str,
        session_max_age_hours: int,
        n_per_page: int,
        stale_time_secs: float,
        cache_max_entries: int,
    ) -> None:
        self.rpc_url = rpc_url
        self.rpc_timeout_secs = rpc_timeout_secs
        self.session_secret = session_secret
        self.session_max_age_hours = session_max_age_hours
        self.n_per_page = n_per_page
        self.stale_time_secs = stale_time_secs
        self.cache_max_entries = cache_max_entries


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    rpc_url = os.getenv("LEDGERVIEW_RPC_URL", "http://localhost:3000/api/rpc")
    rpc_timeout_secs = float(os.getenv("LEDGERVIEW_RPC_TIMEOUT_SECS", "10"))
    session_secret = os.getenv(
        "LEDGERVIEW_SESSION_SECRET",
        "5d1f0c7e9a2b48b3a6e4f09c1d7b2e8a3c6f5e4d2b1a09f8e7d6c5b4a3928170",
    )
    session_max_age_hours = int(os.getenv("LEDGERVIEW_SESSION_MAX_AGE_HOURS", "12"))
    n_per_page = int(os.getenv("LEDGERVIEW_N_PER_PAGE", "25"))
    stale_time_secs = float(os.getenv("LEDGERVIEW_STALE_TIME_SECS", "0"))
    cache_max_entries = int(os.getenv("LEDGERVIEW_CACHE_MAX_ENTRIES", "512"))
    return Settings(
        rpc_url=rpc_url.rstrip("/"),
        rpc_timeout_secs=rpc_timeout_secs,
        session_secret=session_secret,
        session_max_age_hours=session_max_age_hours,
        n_per_page=n_per_page,
        stale_time_secs=stale_time_secs,
        cache_max_entries=cache_max_entries,
    )
