from __future__ import annotations

import argparse
import logging
import sys
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import List, Optional

from dotenv import load_dotenv

import reports
from catalog import Catalog
from circulation import CirculationEngine, Outcome
from config import Settings, configure_logging
from exceptions import CirculationError
from models import Book, Branch, Employee, Member
from store import SqlStore

logger = logging.getLogger("circulation.cli")

REPORTS = ("overdue", "revenue", "most-issued", "branches", "active-members", "never-issued")


def seed_demo_data(catalog: Catalog) -> None:
    """
    Loads a small demo catalog: one branch, two employees, two members
    and four books.
    """
    catalog.addBranch(Branch("B001", address="123 Main St", contact="+919099988676", manager_id="E101"))
    catalog.hireEmployee(Employee("E101", "John Doe", "B001", position="Manager", salary=Decimal("60000")))
    catalog.hireEmployee(Employee("E102", "Jane Smith", "B001", position="Clerk", salary=Decimal("45000")))

    catalog.registerMember(Member("C101", "Alice Johnson", "123 Main St"))
    catalog.registerMember(Member("C102", "Bob Smith", "456 Elm St"))

    catalog.addBook(Book("978-0-553-29698-2", "The Catcher in the Rye", "Classic", Decimal("7.00"),
                         author="J.D. Salinger", publisher="Little, Brown"))
    catalog.addBook(Book("978-0-14-118776-1", "One Hundred Years of Solitude", "Literary Fiction",
                         Decimal("6.50"), author="Gabriel Garcia Marquez", publisher="Penguin Books"))
    catalog.addBook(Book("978-0-393-05081-8", "A People's History of the United States", "History",
                         Decimal("9.00"), author="Howard Zinn", publisher="Harper Perennial"))
    catalog.addBook(Book("978-0-307-58837-1", "Sapiens", "History", Decimal("8.00"),
                         author="Yuval Noah Harari", publisher="Harper Perennial"))


def _parse_date(s: str) -> date:
    try:
        return date.fromisoformat(s)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date (expected YYYY-MM-DD): {s!r}")


def _parse_money(s: str) -> Decimal:
    try:
        return Decimal(s)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"Invalid amount: {s!r}")


def _print_outcome(outcome: Outcome) -> int:
    print(f"[{outcome.status.value}] {outcome.message}")
    return 0 if outcome.ok else 1


def _print_report(name: str, store: SqlStore, settings: Settings, on_date: date) -> None:
    if name == "overdue":
        for r in reports.overdue_loans(store, on_date, settings.fee_policy):
            print(f"{r.issue_id}  {r.member_name:<20} {r.title:<40} {r.days_overdue:>4}d  {r.late_fee:.2f}")
    elif name == "revenue":
        for r in reports.revenue_by_category(store):
            print(f"{r.category:<20} {r.issue_count:>4}  {r.revenue:.2f}")
    elif name == "most-issued":
        for r in reports.most_issued_books(store):
            print(f"{r.isbn:<20} {r.title:<40} {r.issue_count:>4}")
    elif name == "branches":
        for r in reports.branch_performance(store):
            print(f"{r.branch_id:<8} manager={r.manager_id or '-':<8} issued={r.books_issued} "
                  f"returned={r.books_returned} revenue={r.revenue:.2f}")
    elif name == "active-members":
        for m in reports.active_members(store, on_date):
            print(f"{m.member_id:<8} {m.name}")
    elif name == "never-issued":
        for b in reports.never_issued_books(store):
            print(f"{b.isbn:<20} {b.title}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Library circulation: issue, return and late-fee assessment.")
    parser.add_argument("--database-url", default=None, help="SQLAlchemy URL (overrides LIBRARY_DATABASE_URL)")
    parser.add_argument("--log-level", default=None, help="Logging level (overrides LIBRARY_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create the database tables")
    sub.add_parser("seed", help="Load demo branch, staff, members and books")

    p = sub.add_parser("add-book", help="Add a book to the catalog")
    p.add_argument("isbn")
    p.add_argument("title")
    p.add_argument("--category", default="")
    p.add_argument("--price", type=_parse_money, default=Decimal("0.00"))
    p.add_argument("--author", default="")
    p.add_argument("--publisher", default="")

    p = sub.add_parser("add-member", help="Register a member")
    p.add_argument("member_id")
    p.add_argument("name")
    p.add_argument("--address", default="")

    p = sub.add_parser("issue", help="Issue a book to a member")
    p.add_argument("issue_id")
    p.add_argument("member_id")
    p.add_argument("isbn")
    p.add_argument("employee_id")

    p = sub.add_parser("return", help="Return an issued book")
    p.add_argument("return_id")
    p.add_argument("issue_id")

    p = sub.add_parser("assess-fees", help="Recompute late fees for all open loans")
    p.add_argument("--today", type=_parse_date, default=None, help="Assessment date (YYYY-MM-DD)")

    p = sub.add_parser("report", help="Print a read-only report")
    p.add_argument("name", choices=REPORTS)
    p.add_argument("--today", type=_parse_date, default=None, help="Reference date (YYYY-MM-DD)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
        configure_logging(args.log_level or settings.log_level)
    except CirculationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    store = SqlStore.from_url(args.database_url or settings.database_url)
    catalog = Catalog(store)
    engine = CirculationEngine(store, policy=settings.fee_policy)

    try:
        if args.command == "init-db":
            store.create_all()
        elif args.command == "seed":
            seed_demo_data(catalog)
        elif args.command == "add-book":
            catalog.addBook(Book(args.isbn, args.title, args.category, args.price,
                                 author=args.author, publisher=args.publisher))
        elif args.command == "add-member":
            catalog.registerMember(Member(args.member_id, args.name, args.address))
        elif args.command == "issue":
            return _print_outcome(engine.issue(args.issue_id, args.member_id, args.isbn, args.employee_id))
        elif args.command == "return":
            return _print_outcome(engine.returnBook(args.return_id, args.issue_id))
        elif args.command == "assess-fees":
            report = engine.assessLateFees(args.today)
            if report.snapshot_error:
                print(f"Error: {report.snapshot_error}", file=sys.stderr)
                return 1
            print(
                f"Assessed {report.scanned} open loan(s) on {report.on_date}: "
                f"updated={report.updated} unchanged={report.unchanged} "
                f"skipped={report.skipped} failed={len(report.failures)}"
            )
            for issue_id, reason in report.failures:
                print(f"  {issue_id}: {reason}")
            return 1 if report.failures else 0
        elif args.command == "report":
            _print_report(args.name, store, settings, args.today or date.today())
    except (CirculationError, ValueError) as e:
        logger.error("Command failed | command=%s | %s", args.command, e)
        print(f"Error: {e}", file=sys.stderr)
        return 1
    finally:
        store.dispose()

    return 0


if __name__ == "__main__":
    sys.exit(main())
