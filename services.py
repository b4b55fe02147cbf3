from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Iterable, Optional

from sqlalchemy import and_, func, or_, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import unit_of_work
from models import (
    CATEGORY_WIDE_PATTERN,
    Account,
    Budget,
    LearningScope,
    RebalanceDecision,
    RebalanceFeedback,
    RebalanceOverride,
    Transaction,
    TransactionType,
)
from periods import Period, month_end
from schemas import BudgetIn, RebalanceDecisionIn, TransactionIn
from settlement import (
    BudgetUsage,
    extract_to_account,
    parse_item_key,
    plan_settlement,
)
from suggestions import Suggestion, SuggestionEngine


logger = logging.getLogger(__name__)

# Dialects whose INSERT supports ON CONFLICT DO UPDATE.
_UPSERT_INSERTS = {
    "sqlite": sqlite.insert,
    "postgresql": postgresql.insert,
}


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_account(self, name: str) -> int:
        """Return the id of the named account, creating it on first use."""
        clean_name = name.strip()
        if not clean_name:
            raise ValueError("Account name cannot be empty")
        existing = self.session.scalar(select(Account).where(Account.name == clean_name))
        if existing:
            return existing.id
        account = Account(name=clean_name)
        self.session.add(account)
        self.session.flush()
        logger.info(f"account_created: name={clean_name} id={account.id}")
        return account.id


class TransactionService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def create(self, data: TransactionIn) -> Transaction:
        account_id = None
        if data.account:
            account_id = AccountService(self.session).ensure_account(data.account)
        txn = Transaction(
            date=data.date,
            type=data.type,
            account=data.account,
            account_id=account_id,
            category=data.category,
            amount_cents=data.amount_cents,
            memo=data.memo,
        )
        self.session.add(txn)
        self.session.commit()
        self.session.refresh(txn)
        return txn

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.get(Transaction, transaction_id)
        if not txn:
            raise ValueError("Transaction not found")
        return txn

    def list_for_period(self, period: Period) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(Transaction.date.between(period.start, period.end))
            .order_by(Transaction.date.asc(), Transaction.id.asc())
        )
        return self.session.scalars(stmt).all()

    def transfers_for_period(
        self, period: Period, categories: Iterable[str]
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .where(
                Transaction.date.between(period.start, period.end),
                Transaction.category.in_(list(categories)),
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        )
        return self.session.scalars(stmt).all()

    def rebalance_to(
        self, txn: Transaction, final_account: str, *, settlement_category: str
    ) -> Transaction:
        """
        Move an expense to ``final_account``.

        A correcting settlement entry is booked against the original account
        and the original transaction is reclassified in place. Both writes
        happen in the caller's unit of work; nothing is committed here.
        """
        original_account = txn.account
        correction = Transaction(
            date=txn.date,
            type=TransactionType.expense,
            account=original_account,
            account_id=txn.account_id,
            category=settlement_category,
            amount_cents=txn.amount_cents,
            memo=f"transfer to {final_account} (rebalance: {txn.id})",
        )
        self.session.add(correction)

        account_id = AccountService(self.session).ensure_account(final_account)
        txn.account = final_account
        txn.account_id = account_id
        self.session.flush()
        logger.info(
            f"transaction_rebalanced: id={txn.id} from={original_account} "
            f"to={final_account} correction_id={correction.id}"
        )
        return correction


class BudgetService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def upsert(self, data: BudgetIn) -> Budget:
        account = data.account.strip()
        existing = self.session.scalar(
            select(Budget).where(
                Budget.account == account,
                Budget.year == data.year,
                Budget.month == data.month,
            )
        )
        if existing:
            existing.target_amount_cents = data.target_amount_cents
            self.session.commit()
            self.session.refresh(existing)
            return existing

        budget = Budget(
            account=account,
            year=data.year,
            month=data.month,
            target_amount_cents=data.target_amount_cents,
        )
        self.session.add(budget)
        self.session.commit()
        self.session.refresh(budget)
        return budget

    def usage_for_month(self, year: int, month: int) -> list[BudgetUsage]:
        budgets = self.session.scalars(
            select(Budget)
            .where(Budget.year == year, Budget.month == month)
            .order_by(Budget.account.asc())
        ).all()
        if not budgets:
            return []

        start = date(year, month, 1)
        end = month_end(year, month)
        used_stmt = (
            select(
                Transaction.account,
                func.coalesce(func.sum(Transaction.amount_cents), 0).label("used"),
            )
            .where(
                Transaction.type == TransactionType.expense,
                Transaction.date.between(start, end),
                Transaction.account.in_([b.account for b in budgets]),
            )
            .group_by(Transaction.account)
        )
        used_by_account = {
            row.account: int(row.used or 0) for row in self.session.execute(used_stmt)
        }
        return [
            BudgetUsage(
                account=b.account,
                year=b.year,
                month=b.month,
                target_cents=b.target_amount_cents,
                used_cents=used_by_account.get(b.account, 0),
            )
            for b in budgets
        ]


class OverrideService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get(self, category: str, pattern_key: str) -> Optional[RebalanceOverride]:
        return self.session.scalar(
            select(RebalanceOverride).where(
                RebalanceOverride.category == category,
                RebalanceOverride.pattern_key == pattern_key,
            )
        )

    def lookup_expected_account(
        self, category: Optional[str], pattern_key: Optional[str]
    ) -> Optional[str]:
        if not category or not pattern_key:
            return None
        stmt = (
            select(RebalanceOverride.expected_account)
            .where(
                RebalanceOverride.category == category,
                RebalanceOverride.pattern_key == pattern_key,
            )
            .order_by(
                RebalanceOverride.confidence.desc(),
                RebalanceOverride.updated_at.desc(),
            )
            .limit(1)
        )
        return self.session.scalar(stmt)

    def upsert(
        self, category: str, pattern_key: str, expected_account: str
    ) -> RebalanceOverride:
        """Learn ``expected_account`` for the key in one statement.

        A new key starts at confidence 1; an existing one is repointed and
        gains one. Concurrent batches on the same key both land instead of
        one of them tripping the unique constraint.
        """
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Override upsert is not supported on {dialect}")

        now = datetime.utcnow()
        stmt = insert(RebalanceOverride).values(
            category=category,
            pattern_key=pattern_key,
            expected_account=expected_account,
            confidence=1,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RebalanceOverride.category, RebalanceOverride.pattern_key],
            set_={
                "expected_account": stmt.excluded.expected_account,
                "confidence": RebalanceOverride.confidence + 1,
                "updated_at": now,
            },
        ).returning(RebalanceOverride)
        override = self.session.scalars(
            stmt, execution_options={"populate_existing": True}
        ).one()
        logger.info(
            f"override_learned: category={category} pattern={pattern_key} "
            f"account={expected_account} confidence={override.confidence}"
        )
        return override


class FeedbackService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def record(
        self,
        *,
        month: str,
        txn: Transaction,
        suggested_account: Optional[str],
        decision: RebalanceDecision,
        corrected_account: Optional[str],
    ) -> RebalanceFeedback:
        feedback = RebalanceFeedback(
            month=month,
            transaction_id=txn.id,
            original_account=txn.account,
            category=txn.category,
            memo=txn.memo,
            suggested_account=suggested_account,
            decision=decision,
            corrected_account=corrected_account,
        )
        self.session.add(feedback)
        self.session.flush()
        return feedback

    def applied_transaction_ids(self, month: str) -> set[int]:
        stmt = select(RebalanceFeedback.transaction_id).where(
            RebalanceFeedback.month == month,
            RebalanceFeedback.decision == RebalanceDecision.apply,
        )
        return set(self.session.scalars(stmt).all())

    def _unsettled_applied(self, month: str):
        return (
            select(RebalanceFeedback, Transaction)
            .join(Transaction, RebalanceFeedback.transaction_id == Transaction.id)
            .where(
                RebalanceFeedback.month == month,
                RebalanceFeedback.decision == RebalanceDecision.apply,
                RebalanceFeedback.is_settled.is_(False),
            )
        )

    def pending_transfers(self, month: str) -> list[dict[str, object]]:
        stmt = self._unsettled_applied(month).order_by(
            RebalanceFeedback.created_at.desc(), RebalanceFeedback.id.desc()
        )
        pending: list[dict[str, object]] = []
        for feedback, txn in self.session.execute(stmt).all():
            to_account = feedback.corrected_account or feedback.suggested_account
            if not feedback.original_account or not to_account:
                continue
            memo_text = f" - {feedback.memo}" if feedback.memo else ""
            pending.append(
                {
                    "transaction_id": feedback.transaction_id,
                    "from_account": feedback.original_account,
                    "to_account": to_account,
                    "amount_cents": txn.amount_cents,
                    "reason": f"rebalance correction{memo_text}",
                }
            )
        return pending

    def mark_settled(
        self, month: str, from_account: str, to_account: str, amount_cents: int
    ) -> bool:
        stmt = (
            self._unsettled_applied(month)
            .where(
                RebalanceFeedback.original_account == from_account,
                or_(
                    RebalanceFeedback.corrected_account == to_account,
                    and_(
                        RebalanceFeedback.corrected_account.is_(None),
                        RebalanceFeedback.suggested_account == to_account,
                    ),
                ),
                Transaction.amount_cents == amount_cents,
            )
            .order_by(RebalanceFeedback.id.asc())
            .limit(1)
        )
        row = self.session.execute(stmt).first()
        if not row:
            return False
        row[0].is_settled = True
        self.session.flush()
        return True


def learning_pattern_key(
    scope: LearningScope, pattern_key: Optional[str]
) -> Optional[str]:
    if scope == LearningScope.none:
        return None
    if scope == LearningScope.category:
        return CATEGORY_WIDE_PATTERN
    return pattern_key


class RebalanceService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()
        self.overrides = OverrideService(session)
        self.feedback = FeedbackService(session)
        self.transactions = TransactionService(session)
        self.engine = SuggestionEngine(
            self.overrides.lookup_expected_account,
            self.settings.default_category_accounts,
            pattern_key_max_length=self.settings.pattern_key_max_length,
        )

    def compute_suggested_account(self, txn: Transaction) -> Suggestion:
        return self.engine.compute(txn)

    def suggestions(self, period: Period) -> list[dict[str, object]]:
        excluded_categories = self.settings.excluded_categories
        settled_ids = self.feedback.applied_transaction_ids(period.slug)

        items: list[dict[str, object]] = []
        for txn in self.transactions.list_for_period(period):
            if txn.type != TransactionType.expense:
                continue
            if not txn.account:
                continue
            if txn.id in settled_ids:
                continue
            if txn.category in excluded_categories:
                continue

            suggestion = self.engine.compute(txn)
            if not suggestion.suggested:
                continue
            if suggestion.suggested == txn.account:
                continue

            items.append(
                {
                    "transaction_id": txn.id,
                    "date": txn.date.isoformat(),
                    "type": txn.type.value,
                    "amount_cents": txn.amount_cents,
                    "category": txn.category,
                    "memo": txn.memo,
                    "original_account": txn.account,
                    "suggested_account": suggestion.suggested,
                    "pattern_key": suggestion.pattern_key,
                    "reason": suggestion.reason,
                }
            )
        return items

    def commit(
        self, month: str, decisions: list[RebalanceDecisionIn]
    ) -> list[dict[str, object]]:
        """
        Apply a batch of user decisions as one unit of work.

        Decisions referencing missing transactions are skipped. Any other
        failure rolls back every decision of the batch and is re-raised.
        """
        results: list[dict[str, object]] = []
        with unit_of_work(self.session):
            for decision in decisions:
                result = self._apply_decision(month, decision)
                if result is not None:
                    results.append(result)
        applied = sum(1 for r in results if r.get("applied"))
        logger.info(
            f"rebalance_commit: month={month} decisions={len(decisions)} "
            f"processed={len(results)} applied={applied}"
        )
        return results

    def _apply_decision(
        self, month: str, decision: RebalanceDecisionIn
    ) -> Optional[dict[str, object]]:
        if decision.transaction_id is None:
            return None
        try:
            txn = self.transactions.get(decision.transaction_id)
        except ValueError:
            logger.info(
                f"rebalance_commit: skipping missing transaction id={decision.transaction_id}"
            )
            return None

        original_account = txn.account or None
        suggestion = self.engine.compute(txn)
        chosen_account = decision.chosen_account

        scope = decision.learning_scope
        if scope is None:
            scope = (
                LearningScope.pattern
                if decision.decision == RebalanceDecision.wrong
                else LearningScope.none
            )
        learning_key = learning_pattern_key(scope, suggestion.pattern_key)

        self.feedback.record(
            month=month,
            txn=txn,
            suggested_account=suggestion.suggested,
            decision=decision.decision,
            corrected_account=chosen_account,
        )

        disagrees = bool(suggestion.suggested) and chosen_account != suggestion.suggested
        if (
            txn.category
            and learning_key
            and chosen_account
            and (decision.decision == RebalanceDecision.wrong or disagrees)
        ):
            self.overrides.upsert(txn.category, learning_key, chosen_account)

        result: dict[str, object] = {
            "transactionId": txn.id,
            "decision": decision.decision.value,
        }
        if decision.decision != RebalanceDecision.apply:
            return result

        final_account = chosen_account or suggestion.suggested
        if not final_account or not original_account:
            result["applied"] = False
            return result

        self.transactions.rebalance_to(
            txn,
            final_account,
            settlement_category=self.settings.settlement_category,
        )
        result["applied"] = True
        return result


class SettlementService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def overview(self, period: Period) -> dict[str, object]:
        budgets = BudgetService(self.session).usage_for_month(
            period.start.year, period.start.month
        )
        plan = plan_settlement(
            budgets, balanced_threshold_cents=self.settings.balanced_threshold_cents
        )
        transfers = TransactionService(self.session).transfers_for_period(
            period,
            [self.settings.transfer_category, self.settings.settlement_category],
        )
        return {
            "suggestions": [s.as_dict() for s in plan.suggestions],
            "transfers": [
                {
                    "id": txn.id,
                    "date": txn.date.isoformat(),
                    "from_account": txn.account,
                    "to_account": extract_to_account(txn.memo),
                    "amount_cents": txn.amount_cents,
                    "memo": txn.memo,
                }
                for txn in transfers
            ],
            "pending": FeedbackService(self.session).pending_transfers(period.slug),
            "summary": plan.summary(),
        }

    def apply(self, month: str, item_keys: list[str]) -> dict[str, object]:
        feedback = FeedbackService(self.session)
        updated = 0
        with unit_of_work(self.session):
            for key in item_keys:
                parsed = parse_item_key(key)
                if parsed is None:
                    logger.warning(f"settlement_apply: malformed key={key!r}")
                    continue
                from_account, to_account, amount_cents = parsed
                if feedback.mark_settled(month, from_account, to_account, amount_cents):
                    updated += 1
                else:
                    logger.warning(
                        f"settlement_apply: no match key={key!r} from={from_account} "
                        f"to={to_account} amount={amount_cents}"
                    )
        logger.info(
            f"settlement_apply: month={month} updated={updated} requested={len(item_keys)}"
        )
        return {
            "month": month,
            "updated_count": updated,
            "total_requested": len(item_keys),
        }
