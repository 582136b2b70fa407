"""
Balance audit: invariant mismatches and unpaid achievement rewards.
"""
from sqlalchemy import insert, update

from recipe_credits.core.database import get_db_session, subscriptions, user_achievements
from recipe_credits.features.achievements.catalog import CATALOG_VERSION
from recipe_credits.features.balance.audit import audit_balances
from recipe_credits.workers import audit_balances as audit_worker


def test_clean_ledger_reports_ok(make_account):
    make_account("audit_a", balance=5, status="active")
    make_account("audit_b")

    report = audit_balances()

    assert report["status"] == "ok"
    assert report["checked_accounts"] == 2
    assert report["mismatches"] == []
    assert report["unpaid_achievements"] == []
    assert report["computed_at"]


def test_corrupted_balance_is_reported(make_account):
    make_account("audit_bad", balance=5, status="active")
    with get_db_session() as session:
        session.execute(update(subscriptions).where(subscriptions.c.user_id == "audit_bad").values(balance=9))

    report = audit_balances()

    assert report["status"] == "violations"
    assert report["mismatches"] == [
        {
            "user_id": "audit_bad",
            "balance": 9,
            "used_lifetime": 0,
            "granted_lifetime": 5,
            "difference": -4,
        }
    ]


def test_unpaid_unlock_is_reported(make_account):
    make_account("audit_unpaid")
    with get_db_session() as session:
        session.execute(
            insert(user_achievements).values(
                user_id="audit_unpaid",
                achievement_id="recipe_5",
                reward_amount=1,
                catalog_version=CATALOG_VERSION,
            )
        )

    report = audit_balances()

    assert report["status"] == "violations"
    assert report["unpaid_achievements"] == [
        {"user_id": "audit_unpaid", "achievement_id": "recipe_5", "reward_amount": 1}
    ]


def test_worker_exit_code(make_account, capsys):
    make_account("audit_worker", balance=2, status="active")
    assert audit_worker.run() == 0
    assert '"status": "ok"' in capsys.readouterr().out

    with get_db_session() as session:
        session.execute(update(subscriptions).where(subscriptions.c.user_id == "audit_worker").values(balance=0))

    assert audit_worker.run() == 1
