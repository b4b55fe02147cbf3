import json
import os
from functools import lru_cache
from pathlib import Path


# Width of the stored pattern key column; longer keys are cut to fit.
PATTERN_KEY_COLUMN_LENGTH = 100

DEFAULT_CATEGORY_ACCOUNTS: dict[str, str] = {
    "식비": "토스뱅크",
    "카페/음료": "토스뱅크",
    "생활/마트": "토스뱅크",
    "교통비": "토스뱅크",
    "구독/포인트": "토스뱅크",
    "월세/관리비": "국민은행",
    "통신비/인터넷비": "국민은행",
    "저축/상조/보험": "국민은행",
    "상납금": "국민은행",
}


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        default_category_accounts: dict[str, str],
        transfer_category: str,
        settlement_category: str,
        balanced_threshold_cents: int,
        pattern_key_max_length: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.default_category_accounts = default_category_accounts
        self.transfer_category = transfer_category
        self.settlement_category = settlement_category
        self.balanced_threshold_cents = balanced_threshold_cents
        self.pattern_key_max_length = min(pattern_key_max_length, PATTERN_KEY_COLUMN_LENGTH)

    @property
    def excluded_categories(self) -> frozenset[str]:
        return frozenset({self.transfer_category, self.settlement_category})


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _load_category_accounts() -> dict[str, str]:
    raw = os.getenv("BUDGET_DEFAULT_CATEGORY_ACCOUNTS")
    if not raw:
        return dict(DEFAULT_CATEGORY_ACCOUNTS)
    data = json.loads(raw)
    if not isinstance(data, dict):
        raise ValueError("BUDGET_DEFAULT_CATEGORY_ACCOUNTS must be a JSON object")
    return {str(k): str(v) for k, v in data.items()}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Asia/Seoul")
    transfer_category = os.getenv("BUDGET_TRANSFER_CATEGORY", "transfer")
    settlement_category = os.getenv("BUDGET_SETTLEMENT_CATEGORY", "settlement")
    balanced_threshold_cents = int(os.getenv("BUDGET_BALANCED_THRESHOLD_CENTS", "100"))
    pattern_key_max_length = int(os.getenv("BUDGET_PATTERN_KEY_MAX_LENGTH", "100"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        default_category_accounts=_load_category_accounts(),
        transfer_category=transfer_category,
        settlement_category=settlement_category,
        balanced_threshold_cents=balanced_threshold_cents,
        pattern_key_max_length=pattern_key_max_length,
    )
