import re
from dataclasses import dataclass
from typing import Callable, Mapping, Optional, Protocol

from models import CATEGORY_WIDE_PATTERN


_WHITESPACE = re.compile(r"\s+")


def extract_pattern_key(memo: Optional[str], max_length: int = 100) -> Optional[str]:
    """
    Derive a grouping key from a free-text memo.

    Memos are expected to follow a "label_detail" or "label rest..." convention:
    "홍콩여행_기념품" -> "홍콩여행", "버거킹 회사 중식" -> "버거킹".
    """
    if not memo:
        return None
    text = _WHITESPACE.sub(" ", memo.strip())
    underscore_idx = text.find("_")
    if underscore_idx > 0:
        return text[:underscore_idx].strip()[:max_length] or None
    first_token = text.split(" ")[0].strip()
    if not first_token:
        return None
    return first_token[:max_length]


class SuggestionSubject(Protocol):
    category: Optional[str]
    memo: Optional[str]


@dataclass(frozen=True)
class Suggestion:
    suggested: Optional[str]
    reason: str
    pattern_key: Optional[str]


OverrideLookup = Callable[[str, str], Optional[str]]


class SuggestionEngine:
    """
    Resolve the account a transaction is expected to be charged to.

    Resolvers run in a fixed order and the first hit wins: a learned rule for
    the memo's pattern key, a learned category-wide rule, the static category
    default, and finally "no suggestion".
    """

    def __init__(
        self,
        lookup_override: OverrideLookup,
        default_accounts: Mapping[str, str],
        *,
        pattern_key_max_length: int = 100,
    ) -> None:
        self.lookup_override = lookup_override
        self.default_accounts = dict(default_accounts)
        self.pattern_key_max_length = pattern_key_max_length
        self.resolvers: list[
            Callable[[Optional[str], Optional[str]], Optional[Suggestion]]
        ] = [
            self.resolve_pattern_override,
            self.resolve_category_override,
            self.resolve_default_mapping,
        ]

    def pattern_key(self, memo: Optional[str]) -> Optional[str]:
        return extract_pattern_key(memo, self.pattern_key_max_length)

    def compute(self, txn: SuggestionSubject) -> Suggestion:
        category = txn.category or None
        pattern_key = self.pattern_key(txn.memo)
        for resolver in self.resolvers:
            suggestion = resolver(category, pattern_key)
            if suggestion is not None:
                return suggestion
        return Suggestion(None, "no rule available, deferred", pattern_key)

    def _learned(
        self, category: str, pattern_key: Optional[str], account: str
    ) -> Suggestion:
        label = f"{category} + {pattern_key}" if pattern_key else category
        return Suggestion(account, f"learned rule applied ({label})", pattern_key)

    def resolve_pattern_override(
        self, category: Optional[str], pattern_key: Optional[str]
    ) -> Optional[Suggestion]:
        if not category or not pattern_key:
            return None
        account = self.lookup_override(category, pattern_key)
        if not account:
            return None
        return self._learned(category, pattern_key, account)

    def resolve_category_override(
        self, category: Optional[str], pattern_key: Optional[str]
    ) -> Optional[Suggestion]:
        if not category:
            return None
        account = self.lookup_override(category, CATEGORY_WIDE_PATTERN)
        if not account:
            return None
        return self._learned(category, pattern_key, account)

    def resolve_default_mapping(
        self, category: Optional[str], pattern_key: Optional[str]
    ) -> Optional[Suggestion]:
        if not category:
            return None
        account = self.default_accounts.get(category)
        if not account:
            return None
        return Suggestion(account, f"default mapping applied ({category})", pattern_key)
