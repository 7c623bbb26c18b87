import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        period_horizon_months: int,
        week_start_day: int,
        bi_monthly_split_day: int,
        batch_max_ops: int,
        store_retry_attempts: int,
        store_retry_base_secs: float,
        category_cache_ttl_secs: float,
        log_level: str,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.period_horizon_months = period_horizon_months
        # Python weekday numbering: Monday=0 ... Sunday=6
        self.week_start_day = week_start_day
        self.bi_monthly_split_day = bi_monthly_split_day
        self.batch_max_ops = batch_max_ops
        self.store_retry_attempts = store_retry_attempts
        self.store_retry_base_secs = store_retry_base_secs
        self.category_cache_ttl_secs = category_cache_ttl_secs
        self.log_level = log_level


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("SPENDSYNC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "spendsync.db"
    database_url = os.getenv("SPENDSYNC_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("SPENDSYNC_TIMEZONE", "UTC")
    period_horizon_months = int(os.getenv("SPENDSYNC_PERIOD_HORIZON_MONTHS", "12"))
    week_start_day = int(os.getenv("SPENDSYNC_WEEK_START_DAY", "6"))
    bi_monthly_split_day = int(os.getenv("SPENDSYNC_BI_MONTHLY_SPLIT_DAY", "16"))
    batch_max_ops = int(os.getenv("SPENDSYNC_BATCH_MAX_OPS", "500"))
    store_retry_attempts = int(os.getenv("SPENDSYNC_STORE_RETRY_ATTEMPTS", "3"))
    store_retry_base_secs = float(os.getenv("SPENDSYNC_STORE_RETRY_BASE_SECS", "0.2"))
    category_cache_ttl_secs = float(
        os.getenv("SPENDSYNC_CATEGORY_CACHE_TTL_SECS", "300")
    )
    log_level = os.getenv("SPENDSYNC_LOG_LEVEL", "INFO").upper()

    if not 0 <= week_start_day <= 6:
        raise ValueError("SPENDSYNC_WEEK_START_DAY must be between 0 and 6")
    if not 2 <= bi_monthly_split_day <= 28:
        raise ValueError("SPENDSYNC_BI_MONTHLY_SPLIT_DAY must be between 2 and 28")
    if not 1 <= batch_max_ops <= 500:
        raise ValueError("SPENDSYNC_BATCH_MAX_OPS must be between 1 and 500")

    return Settings(
        database_url=database_url,
        timezone=timezone,
        period_horizon_months=period_horizon_months,
        week_start_day=week_start_day,
        bi_monthly_split_day=bi_monthly_split_day,
        batch_max_ops=batch_max_ops,
        store_retry_attempts=max(store_retry_attempts, 1),
        store_retry_base_secs=store_retry_base_secs,
        category_cache_ttl_secs=category_cache_ttl_secs,
        log_level=log_level,
    )
