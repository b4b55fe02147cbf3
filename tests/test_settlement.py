import random
from collections import defaultdict
from datetime import date

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from config import Settings
from database import Base
from models import RebalanceDecision, RebalanceFeedback, TransactionType
from periods import resolve_month
from schemas import BudgetIn, RebalanceDecisionIn, TransactionIn
from services import BudgetService, RebalanceService, SettlementService, TransactionService
from settlement import BudgetUsage, extract_to_account, parse_item_key, plan_settlement


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        timezone="Asia/Seoul",
        default_category_accounts={"식비": "토스뱅크"},
        transfer_category="transfer",
        settlement_category="settlement",
        balanced_threshold_cents=100,
        pattern_key_max_length=100,
    )


def usage(account: str, available: int) -> BudgetUsage:
    return BudgetUsage(
        account=account,
        year=2025,
        month=3,
        target_cents=100_000,
        used_cents=100_000 - available,
    )


def test_greedy_matching_is_deterministic() -> None:
    plan = plan_settlement(
        [
            usage("A", -50_000),
            usage("B", -20_000),
            usage("C", 30_000),
            usage("D", 40_000),
        ]
    )
    assert [(s.from_account, s.to_account, s.amount_cents) for s in plan.suggestions] == [
        ("D", "A", 40_000),
        ("C", "A", 10_000),
        ("C", "B", 20_000),
    ]
    assert plan.suggestions[0].reason == "cover A budget overage"
    assert plan.total_surplus_cents == 70_000
    assert plan.total_deficit_cents == 70_000
    assert plan.balanced is True


def test_ties_keep_input_order() -> None:
    plan = plan_settlement(
        [usage("X", 10_000), usage("Y", 10_000), usage("Z", -15_000)]
    )
    assert [(s.from_account, s.amount_cents) for s in plan.suggestions] == [
        ("X", 10_000),
        ("Y", 5_000),
    ]


def test_unmatched_shortfall_and_balanced_threshold() -> None:
    plan = plan_settlement([usage("A", -50_000), usage("D", 49_950)])
    assert [s.amount_cents for s in plan.suggestions] == [49_950]
    assert plan.balanced is True

    plan = plan_settlement([usage("A", -50_000), usage("D", 49_000)])
    assert plan.balanced is False

    plan = plan_settlement(
        [usage("A", -50_000), usage("D", 49_000)], balanced_threshold_cents=5_000
    )
    assert plan.balanced is True


def test_zero_available_accounts_are_ignored() -> None:
    plan = plan_settlement([usage("A", 0), usage("B", 0)])
    assert plan.suggestions == []
    assert plan.summary() == {
        "total_surplus_cents": 0,
        "total_deficit_cents": 0,
        "balanced": True,
    }


def test_transfers_never_exceed_shortfall_or_capacity() -> None:
    rng = random.Random(7)
    for _ in range(200):
        rows = [
            usage(f"acc{i}", rng.randint(-80_000, 80_000))
            for i in range(rng.randint(1, 8))
        ]
        plan = plan_settlement(rows)

        received: dict[str, int] = defaultdict(int)
        sent: dict[str, int] = defaultdict(int)
        for s in plan.suggestions:
            assert s.amount_cents > 0
            received[s.to_account] += s.amount_cents
            sent[s.from_account] += s.amount_cents

        for row in rows:
            if row.available_cents < 0:
                assert received[row.account] <= -row.available_cents
                assert sent[row.account] == 0
            else:
                assert sent[row.account] <= row.available_cents
                assert received[row.account] == 0
        assert sum(received.values()) == min(
            plan.total_surplus_cents, plan.total_deficit_cents
        )


def test_extract_to_account_from_memo() -> None:
    assert extract_to_account("transfer to 토스뱅크 (rebalance: 12)") == "토스뱅크"
    assert extract_to_account("transfer to 카카오뱅크") == "카카오뱅크"
    assert extract_to_account("신한은행로 이체") == "신한은행"
    assert extract_to_account("용돈") == "용돈"
    assert extract_to_account(None) is None


def test_parse_item_key_splits_from_the_right() -> None:
    assert parse_item_key("토스뱅크-카카오뱅크-139200") == ("토스뱅크", "카카오뱅크", 139_200)
    assert parse_item_key("KB-국민-은행-토스뱅크-500") == ("KB-국민-은행", "토스뱅크", 500)
    assert parse_item_key("토스뱅크-500") is None
    assert parse_item_key("a-b-abc") is None


def add_txn(session, account, amount_cents, *, category="식비", memo="점심", day=5):
    return TransactionService(session).create(
        TransactionIn(
            date=date(2025, 3, day),
            type=TransactionType.expense,
            account=account,
            category=category,
            amount_cents=amount_cents,
            memo=memo,
        )
    )


def test_budget_usage_sums_month_expenses_per_account() -> None:
    session = make_session()
    budgets = BudgetService(session)
    budgets.upsert(BudgetIn(account="토스뱅크", year=2025, month=3, target_amount_cents=100_000))
    budgets.upsert(BudgetIn(account="국민은행", year=2025, month=3, target_amount_cents=200_000))
    budgets.upsert(BudgetIn(account="국민은행", year=2025, month=3, target_amount_cents=150_000))

    add_txn(session, "토스뱅크", 70_000)
    add_txn(session, "토스뱅크", 50_000)
    add_txn(session, "국민은행", 30_000)
    TransactionService(session).create(
        TransactionIn(
            date=date(2025, 3, 25),
            type=TransactionType.income,
            account="국민은행",
            category="급여",
            amount_cents=3_000_000,
            memo="월급",
        )
    )
    TransactionService(session).create(
        TransactionIn(
            date=date(2025, 4, 1),
            type=TransactionType.expense,
            account="국민은행",
            category="식비",
            amount_cents=9_000,
            memo="다음달",
        )
    )

    rows = budgets.usage_for_month(2025, 3)
    assert [(r.account, r.target_cents, r.used_cents, r.available_cents) for r in rows] == [
        ("국민은행", 150_000, 30_000, 120_000),
        ("토스뱅크", 100_000, 120_000, -20_000),
    ]
    assert budgets.usage_for_month(2025, 5) == []


def test_settlement_overview_and_marking_settled() -> None:
    session = make_session()
    settings = make_settings()
    budgets = BudgetService(session)
    budgets.upsert(BudgetIn(account="토스뱅크", year=2025, month=3, target_amount_cents=100_000))
    budgets.upsert(BudgetIn(account="국민은행", year=2025, month=3, target_amount_cents=200_000))
    add_txn(session, "토스뱅크", 120_000, memo="장보기")
    lunch = add_txn(session, "국민은행", 8_000, memo="버거킹 점심", day=9)
    add_txn(session, "국민은행", 20_000, category="transfer", memo="카카오뱅크로 이체", day=2)

    RebalanceService(session, settings).commit(
        "2025-03",
        [RebalanceDecisionIn(transactionId=lunch.id, decision=RebalanceDecision.apply)],
    )

    service = SettlementService(session, settings)
    data = service.overview(resolve_month("2025-03"))

    # lunch moved 8_000 onto 토스뱅크 while the settlement entry keeps
    # 8_000 on 국민은행 next to the 20_000 transfer: 토스뱅크 128_000 used,
    # 국민은행 28_000 used
    assert data["suggestions"] == [
        {
            "from_account": "국민은행",
            "to_account": "토스뱅크",
            "amount_cents": 28_000,
            "reason": "cover 토스뱅크 budget overage",
        }
    ]
    assert data["summary"] == {
        "total_surplus_cents": 28_000,
        "total_deficit_cents": 172_000,
        "balanced": False,
    }
    assert [(t["from_account"], t["to_account"], t["amount_cents"]) for t in data["transfers"]] == [
        ("국민은행", "토스뱅크", 8_000),
        ("국민은행", "카카오뱅크", 20_000),
    ]
    assert data["pending"] == [
        {
            "transaction_id": lunch.id,
            "from_account": "국민은행",
            "to_account": "토스뱅크",
            "amount_cents": 8_000,
            "reason": "rebalance correction - 버거킹 점심",
        }
    ]

    result = service.apply("2025-03", ["국민은행-토스뱅크-8000", "국민은행-토스뱅크-1", "bad"])
    assert result == {"month": "2025-03", "updated_count": 1, "total_requested": 3}
    assert service.overview(resolve_month("2025-03"))["pending"] == []

    feedback = session.scalar(select(RebalanceFeedback))
    assert feedback.is_settled is True
