"""
Read-only reporting projections over the circulation ledgers.

Each function opens one transaction, uses only the store's read methods
and returns plain dataclass rows. Nothing here calls the circulation
engine or writes to the store.
"""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
from datetime import date, timedelta
from decimal import Decimal
from typing import Dict, List, Optional

from config import ZERO, FeePolicy, money
from models import Book, Member
from store import Store


@dataclass
class OverdueLoan:
    issue_id: str
    member_id: str
    member_name: str
    isbn: str
    title: str
    issue_date: date
    days_overdue: int
    late_fee: Decimal


@dataclass
class CategoryRevenue:
    category: str
    issue_count: int
    revenue: Decimal


@dataclass
class IssuedBookCount:
    isbn: str
    title: str
    issue_count: int


@dataclass
class BranchPerformance:
    branch_id: str
    manager_id: Optional[str]
    books_issued: int
    books_returned: int
    revenue: Decimal


def overdue_loans(store: Store, on_date: date, policy: Optional[FeePolicy] = None) -> List[OverdueLoan]:
    """
    Open loans older than the grace period, most overdue first.

    ``late_fee`` is the value stored by the last assessment run, not a
    fresh computation.
    """
    policy = policy or FeePolicy()
    with store.transaction() as tx:
        open_ids = set(tx.open_issue_ids())
        members = {m.member_id: m for m in tx.list_members()}
        issues = [i for i in tx.list_issues() if i.issue_id in open_ids]

    rows: List[OverdueLoan] = []
    for i in issues:
        elapsed = (on_date - i.issue_date).days
        if elapsed <= policy.grace_days:
            continue
        member = members.get(i.member_id)
        rows.append(
            OverdueLoan(
                issue_id=i.issue_id,
                member_id=i.member_id,
                member_name=member.name if member else "",
                isbn=i.isbn,
                title=i.book_title,
                issue_date=i.issue_date,
                days_overdue=elapsed - policy.grace_days,
                late_fee=i.late_fee,
            )
        )
    rows.sort(key=lambda r: (-r.days_overdue, r.issue_id))
    return rows


def revenue_by_category(store: Store) -> List[CategoryRevenue]:
    """
    Rental revenue per category: the book's rental price for every issue.
    """
    with store.transaction() as tx:
        books = {b.isbn: b for b in tx.list_books()}
        issues = tx.list_issues()

    temp: Dict[str, Dict[str, object]] = {}
    for i in issues:
        book = books.get(i.isbn)
        if book is None:
            continue
        entry = temp.setdefault(book.category, {"count": 0, "revenue": ZERO})
        entry["count"] += 1
        entry["revenue"] += book.price

    rows = [
        CategoryRevenue(category=c, issue_count=int(v["count"]), revenue=money(v["revenue"]))
        for c, v in temp.items()
    ]
    rows.sort(key=lambda r: (-r.revenue, r.category))
    return rows


def most_issued_books(store: Store, min_issues: int = 1) -> List[IssuedBookCount]:
    with store.transaction() as tx:
        books = {b.isbn: b for b in tx.list_books()}
        counts = Counter(i.isbn for i in tx.list_issues())

    rows = [
        IssuedBookCount(
            isbn=isbn,
            title=books[isbn].title if isbn in books else "",
            issue_count=n,
        )
        for isbn, n in counts.items()
        if n >= min_issues
    ]
    rows.sort(key=lambda r: (-r.issue_count, r.isbn))
    return rows


def branch_performance(store: Store) -> List[BranchPerformance]:
    """
    Per branch: loans issued by its employees, how many of those came
    back, and the rental revenue they generated.
    """
    with store.transaction() as tx:
        branches = tx.list_branches()
        emp_branch = {e.emp_id: e.branch_id for e in tx.list_employees()}
        prices = {b.isbn: b.price for b in tx.list_books()}
        issues = tx.list_issues()
        returned = {r.issue_id for r in tx.list_returns()}

    rows = {
        b.branch_id: BranchPerformance(
            branch_id=b.branch_id,
            manager_id=b.manager_id,
            books_issued=0,
            books_returned=0,
            revenue=ZERO,
        )
        for b in branches
    }
    for i in issues:
        row = rows.get(emp_branch.get(i.employee_id, ""))
        if row is None:
            continue
        row.books_issued += 1
        if i.issue_id in returned:
            row.books_returned += 1
        row.revenue = money(row.revenue + prices.get(i.isbn, ZERO))

    return sorted(rows.values(), key=lambda r: r.branch_id)


def active_members(store: Store, on_date: date, within_days: int = 60) -> List[Member]:
    """
    Members who were issued at least one book in the last ``within_days``.
    """
    since = on_date - timedelta(days=within_days)
    with store.transaction() as tx:
        active_ids = {i.member_id for i in tx.list_issues() if since <= i.issue_date <= on_date}
        return [m for m in tx.list_members() if m.member_id in active_ids]


def never_issued_books(store: Store) -> List[Book]:
    with store.transaction() as tx:
        issued = {i.isbn for i in tx.list_issues()}
        return [b for b in tx.list_books() if b.isbn not in issued]
