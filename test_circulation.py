import threading
from datetime import date
from decimal import Decimal

import pytest

from circulation import DeclineReason, Declined, Failed, OutcomeStatus, Success
from exceptions import (
    BookNotFoundError,
    ConstraintViolation,
    EmployeeNotFoundError,
    InvalidRecordError,
    IssueNotFoundError,
    MemberNotFoundError,
)
from models import BookStatus


def _book_status(store, isbn):
    with store.transaction() as tx:
        return tx.get_book(isbn).status


def _issue(store, issue_id):
    with store.transaction() as tx:
        return tx.get_issue(issue_id)


def _ledger_sizes(store):
    with store.transaction() as tx:
        return len(tx.list_issues()), len(tx.list_returns())


# -----------------------------
# issue
# -----------------------------
def test_issue_marks_book_unavailable_and_records_loan(store, engine, seeded, clock, check_consistency):
    outcome = engine.issue("I1", "M1", "ISBN-1", "E1")

    assert isinstance(outcome, Success)
    assert outcome.status is OutcomeStatus.SUCCESS
    assert outcome.ok
    assert outcome.isbn == "ISBN-1"
    assert outcome.title == "Clean Code"
    assert "Clean Code" in outcome.message and "ISBN-1" in outcome.message

    assert _book_status(store, "ISBN-1") is BookStatus.UNAVAILABLE
    rec = _issue(store, "I1")
    assert rec.member_id == "M1"
    assert rec.employee_id == "E1"
    assert rec.issue_date == clock.today
    assert rec.book_title == "Clean Code"
    assert rec.late_fee == Decimal("0.00")
    check_consistency()


def test_issue_unavailable_book_declines_without_changes(store, engine, seeded, check_consistency):
    assert engine.issue("I1", "M1", "ISBN-1", "E1").ok
    before = _ledger_sizes(store)

    outcome = engine.issue("I2", "M2", "ISBN-1", "E1")

    assert isinstance(outcome, Declined)
    assert outcome.status is OutcomeStatus.DECLINED
    assert outcome.reason is DeclineReason.BOOK_ON_LOAN
    assert not outcome.ok
    assert "ISBN-1" in outcome.message and "Clean Code" in outcome.message
    assert _ledger_sizes(store) == before
    assert _issue(store, "I2") is None
    assert _book_status(store, "ISBN-1") is BookStatus.UNAVAILABLE
    check_consistency()


@pytest.mark.parametrize(
    "args, error",
    [
        (("I1", "M1", "NOPE", "E1"), BookNotFoundError),
        (("I1", "M999", "ISBN-1", "E1"), MemberNotFoundError),
        (("I1", "M1", "ISBN-1", "E999"), EmployeeNotFoundError),
    ],
)
def test_issue_unknown_reference_fails(store, engine, seeded, args, error, check_consistency):
    outcome = engine.issue(*args)

    assert isinstance(outcome, Failed)
    assert outcome.status is OutcomeStatus.ERROR
    assert isinstance(outcome.error, error)
    assert _ledger_sizes(store) == (0, 0)
    check_consistency()


def test_issue_reused_issue_id_fails(store, engine, seeded):
    assert engine.issue("I1", "M1", "ISBN-1", "E1").ok

    outcome = engine.issue("I1", "M2", "ISBN-2", "E1")

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ConstraintViolation)
    assert _book_status(store, "ISBN-2") is BookStatus.AVAILABLE


# -----------------------------
# returnBook
# -----------------------------
def test_return_makes_book_available(store, engine, seeded, clock, check_consistency):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(3)

    outcome = engine.returnBook("R1", "I1")

    assert isinstance(outcome, Success)
    assert outcome.record_id == "R1"
    assert "Clean Code" in outcome.message
    assert _book_status(store, "ISBN-1") is BookStatus.AVAILABLE
    with store.transaction() as tx:
        ret = tx.get_return("R1")
    assert ret.issue_id == "I1"
    assert ret.return_date == clock.today
    assert ret.isbn == "ISBN-1"
    assert ret.book_title == "Clean Code"
    check_consistency()


def test_return_twice_declines(store, engine, seeded, check_consistency):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    assert engine.returnBook("R1", "I1").ok

    outcome = engine.returnBook("R2", "I1")

    assert isinstance(outcome, Declined)
    assert outcome.reason is DeclineReason.ALREADY_RETURNED
    assert _ledger_sizes(store) == (1, 1)
    check_consistency()


def test_return_unknown_issue_fails(store, engine, seeded):
    outcome = engine.returnBook("R1", "I404")
    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, IssueNotFoundError)


def test_return_reused_return_id_fails(store, engine, seeded, check_consistency):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    engine.issue("I2", "M2", "ISBN-2", "E1")
    engine.returnBook("R1", "I1")

    outcome = engine.returnBook("R1", "I2")

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, ConstraintViolation)
    assert _book_status(store, "ISBN-2") is BookStatus.UNAVAILABLE
    check_consistency()


def test_return_before_issue_date_fails(store, engine, seeded, clock):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(-1)

    outcome = engine.returnBook("R1", "I1")

    assert isinstance(outcome, Failed)
    assert isinstance(outcome.error, InvalidRecordError)
    assert _book_status(store, "ISBN-1") is BookStatus.UNAVAILABLE


def test_issue_decline_return_reissue_cycle(store, engine, seeded, check_consistency):
    assert engine.issue("I1", "M1", "ISBN-1", "E1").ok
    assert _book_status(store, "ISBN-1") is BookStatus.UNAVAILABLE
    check_consistency()

    assert isinstance(engine.issue("I2", "M2", "ISBN-1", "E1"), Declined)
    check_consistency()

    assert engine.returnBook("R1", "I1").ok
    assert _book_status(store, "ISBN-1") is BookStatus.AVAILABLE
    check_consistency()

    assert engine.issue("I2", "M2", "ISBN-1", "E1").ok
    assert _book_status(store, "ISBN-1") is BookStatus.UNAVAILABLE
    check_consistency()


# -----------------------------
# assessLateFees
# -----------------------------
def test_assess_40_day_loan_charges_five(store, engine, seeded, clock):
    """
    Issued 40 days ago => (40 - 30) * 0.50 = 5.00
    """
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(40)

    report = engine.assessLateFees()

    assert report.on_date == clock.today
    assert report.scanned == 1
    assert report.updated == 1
    assert _issue(store, "I1").late_fee == Decimal("5.00")


@pytest.mark.parametrize(
    "days, fee",
    [
        (0, "0.00"),
        (30, "0.00"),
        (31, "0.50"),
        (45, "7.50"),
    ],
)
def test_assess_fee_formula(store, engine, seeded, clock, days, fee):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(days)
    engine.assessLateFees()
    assert _issue(store, "I1").late_fee == Decimal(fee)


def test_assess_is_idempotent_same_day(store, engine, seeded, clock):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    engine.issue("I2", "M2", "ISBN-2", "E1")
    clock.advance(37)

    first = engine.assessLateFees()
    fees_1 = (_issue(store, "I1").late_fee, _issue(store, "I2").late_fee)
    second = engine.assessLateFees()
    fees_2 = (_issue(store, "I1").late_fee, _issue(store, "I2").late_fee)

    assert fees_1 == fees_2 == (Decimal("3.50"), Decimal("3.50"))
    assert first.updated == 2
    assert second.updated == 0
    assert second.unchanged == 2


def test_assess_fee_monotonic_over_time(store, engine, seeded, clock):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    fees = []
    for _ in range(6):
        clock.advance(10)
        engine.assessLateFees()
        fees.append(_issue(store, "I1").late_fee)

    assert fees == sorted(fees)
    assert fees[-1] == Decimal("15.00")  # 60 days


def test_returned_loan_fee_frozen(store, engine, seeded, clock):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(35)
    engine.assessLateFees()
    assert _issue(store, "I1").late_fee == Decimal("2.50")

    outcome = engine.returnBook("R1", "I1")
    assert outcome.late_fee == Decimal("2.50")

    clock.advance(20)
    report = engine.assessLateFees()

    assert report.scanned == 0
    assert _issue(store, "I1").late_fee == Decimal("2.50")


def test_return_does_not_recompute_fee(store, engine, seeded, clock):
    """Returned on day 45 with no assessment after day 30: fee stays 0."""
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(20)
    engine.assessLateFees()
    clock.advance(25)

    engine.returnBook("R1", "I1")
    engine.assessLateFees()

    assert _issue(store, "I1").late_fee == Decimal("0.00")


def test_assess_skips_loan_returned_mid_scan(store, engine, seeded, clock, monkeypatch):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    engine.issue("I2", "M2", "ISBN-2", "E1")
    clock.advance(50)

    original = engine._assess_one

    def return_first(issue_id, today):
        if issue_id == "I1":
            assert engine.returnBook("R1", "I1").ok
        return original(issue_id, today)

    monkeypatch.setattr(engine, "_assess_one", return_first)
    report = engine.assessLateFees()

    assert report.scanned == 2
    assert report.skipped == 1
    assert report.updated == 1
    assert _issue(store, "I1").late_fee == Decimal("0.00")
    assert _issue(store, "I2").late_fee == Decimal("10.00")


def test_assess_continues_after_record_failure(store, engine, seeded, clock):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    clock.advance(40)
    engine.issue("I2", "M2", "ISBN-2", "E1")

    # I2 was issued after the assessment date
    report = engine.assessLateFees(on_date=date(2025, 2, 1))

    assert report.scanned == 2
    assert report.updated == 1
    assert [issue_id for issue_id, _ in report.failures] == ["I2"]
    assert _issue(store, "I1").late_fee == Decimal("0.50")
    assert _issue(store, "I2").late_fee == Decimal("0.00")


# -----------------------------
# Concurrency
# -----------------------------
def test_concurrent_issues_same_isbn_exactly_one_wins(store, engine, seeded, check_consistency):
    n = 8
    barrier = threading.Barrier(n)
    results = [None] * n

    def worker(k):
        barrier.wait()
        results[k] = engine.issue(f"I{k}", "M1" if k % 2 else "M2", "ISBN-1", "E1")

    threads = [threading.Thread(target=worker, args=(k,)) for k in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(isinstance(r, Success) for r in results) == 1
    assert sum(isinstance(r, Declined) for r in results) == n - 1
    assert _ledger_sizes(store) == (1, 0)
    check_consistency()


def test_concurrent_returns_same_issue_exactly_one_wins(store, engine, seeded, check_consistency):
    engine.issue("I1", "M1", "ISBN-1", "E1")
    n = 6
    barrier = threading.Barrier(n)
    results = [None] * n

    def worker(k):
        barrier.wait()
        results[k] = engine.returnBook(f"R{k}", "I1")

    threads = [threading.Thread(target=worker, args=(k,)) for k in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sum(isinstance(r, Success) for r in results) == 1
    assert sum(isinstance(r, Declined) for r in results) == n - 1
    assert _ledger_sizes(store) == (1, 1)
    check_consistency()
