from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Callable, List, Optional, Tuple, Union

from config import FeePolicy
from exceptions import (
    BookNotFoundError,
    CirculationError,
    DuplicateIssueError,
    DuplicateReturnError,
    EmployeeNotFoundError,
    InvalidRecordError,
    IssueNotFoundError,
    MemberNotFoundError,
)
from models import Book, BookStatus, Employee, IssueRecord, Member, ReturnRecord
from store import Store, Transaction

logger = logging.getLogger("circulation.engine")


# -----------------------------
# Outcomes
# -----------------------------
class OutcomeStatus(str, Enum):
    SUCCESS = "success"
    DECLINED = "declined"
    ERROR = "error"


class DeclineReason(str, Enum):
    BOOK_ON_LOAN = "book_on_loan"
    ALREADY_RETURNED = "already_returned"


@dataclass(frozen=True)
class Success:
    message: str
    record_id: str
    isbn: str
    title: str
    late_fee: Optional[Decimal] = None
    status: OutcomeStatus = field(default=OutcomeStatus.SUCCESS, init=False)

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Declined:
    reason: DeclineReason
    message: str
    record_id: str
    isbn: str
    title: str
    status: OutcomeStatus = field(default=OutcomeStatus.DECLINED, init=False)

    @property
    def ok(self) -> bool:
        return False


@dataclass(frozen=True)
class Failed:
    error: CirculationError
    message: str
    status: OutcomeStatus = field(default=OutcomeStatus.ERROR, init=False)

    @property
    def ok(self) -> bool:
        return False


Outcome = Union[Success, Declined, Failed]


@dataclass
class AssessmentReport:
    on_date: date
    scanned: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failures: List[Tuple[str, str]] = field(default_factory=list)
    snapshot_error: Optional[str] = None


_UPDATED, _UNCHANGED, _SKIPPED = "updated", "unchanged", "skipped"


# -----------------------------
# Engine
# -----------------------------
class CirculationEngine:
    """
    Circulation state machine for the catalog.

    Rules enforced:
        (1) A book with an open loan cannot be issued again (declined)
        (2) A loan can be closed by exactly one return (declined otherwise)
        (3) Open loans accrue a late fee per day past the grace period,
            recomputed only by assessLateFees
        (4) Returning a book does not recompute its fee

    issue and returnBook never raise CirculationError; every failure
    comes back as a Failed outcome.
    """

    def __init__(
        self,
        store: Store,
        policy: Optional[FeePolicy] = None,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self.store = store
        self.policy = policy or FeePolicy()
        self.clock = clock

    # Public API

    def issue(self, issue_id: str, member_id: str, isbn: str, employee_id: str) -> Outcome:
        """
        Issues a book to a member, recorded by an employee.

        The availability check, the ledger insert and the status flip run
        in one transaction with the book row locked.

        Returns:
            Success: IssueRecord created, book now unavailable.
            Declined: Book already on loan; nothing changed.
            Failed: Unknown member/employee/book, reused issue_id, conflict
                or storage failure.
        """
        logger.info(
            "issue called | issue_id=%s member_id=%s isbn=%s employee_id=%s",
            issue_id, member_id, isbn, employee_id,
        )
        try:
            return self._issue(issue_id, member_id, isbn, employee_id)
        except CirculationError as e:
            logger.error("Issue failed | issue_id=%s isbn=%s | %s", issue_id, isbn, e)
            return Failed(error=e, message=f"Issue {issue_id} failed: {e}")

    def returnBook(self, return_id: str, issue_id: str) -> Outcome:
        """
        Closes an open loan and makes its book available again.

        The stored late fee is left as the last assessment wrote it.

        Returns:
            Success: ReturnRecord created, book available.
            Declined: The loan already has a return record.
            Failed: Unknown issue_id, reused return_id, conflict or storage
                failure.
        """
        logger.info("returnBook called | return_id=%s issue_id=%s", return_id, issue_id)
        try:
            return self._return(return_id, issue_id)
        except CirculationError as e:
            logger.error("Return failed | return_id=%s issue_id=%s | %s", return_id, issue_id, e)
            return Failed(error=e, message=f"Return {return_id} failed: {e}")

    def assessLateFees(self, on_date: Optional[date] = None) -> AssessmentReport:
        """
        Recomputes the late fee of every open loan as of ``on_date``.

        Each loan is updated in its own transaction, which re-checks that
        the loan is still open; loans returned mid-run are skipped.
        Per-record failures are logged and collected, never raised. If the
        open loans cannot be read at all, the report carries
        ``snapshot_error`` and nothing is scanned.
        """
        today = on_date or self.clock()
        logger.info("assessLateFees called | on_date=%s", today)

        report = AssessmentReport(on_date=today)
        try:
            with self.store.transaction() as tx:
                open_ids = tx.open_issue_ids()
        except CirculationError as e:
            logger.error("Open loan snapshot failed | on_date=%s | %s", today, e)
            report.snapshot_error = str(e)
            return report

        for issue_id in open_ids:
            report.scanned += 1
            try:
                result = self._assess_one(issue_id, today)
            except CirculationError as e:
                logger.error("Late fee assessment failed | issue_id=%s | %s", issue_id, e)
                report.failures.append((issue_id, str(e)))
                continue

            if result == _UPDATED:
                report.updated += 1
            elif result == _UNCHANGED:
                report.unchanged += 1
            else:
                report.skipped += 1

        logger.info(
            "Late fees assessed | on_date=%s scanned=%d updated=%d unchanged=%d skipped=%d failed=%d",
            today, report.scanned, report.updated, report.unchanged, report.skipped,
            len(report.failures),
        )
        return report

    # Operation bodies

    def _issue(self, issue_id: str, member_id: str, isbn: str, employee_id: str) -> Outcome:
        today = self.clock()
        with self.store.transaction() as tx:
            if tx.get_issue(issue_id) is not None:
                raise DuplicateIssueError(f"Issue ID already used: issue_id={issue_id}")
            self._get_member(tx, member_id)
            self._get_employee(tx, employee_id)
            book = self._get_book(tx, isbn, lock=True)

            if not book.is_available:
                logger.warning("Issue declined, book on loan | isbn=%s issue_id=%s", isbn, issue_id)
                return Declined(
                    reason=DeclineReason.BOOK_ON_LOAN,
                    message=f"Sorry, '{book.title}' (isbn={isbn}) is currently on loan.",
                    record_id=issue_id,
                    isbn=isbn,
                    title=book.title,
                )

            tx.add_issue(
                IssueRecord(
                    issue_id=issue_id,
                    member_id=member_id,
                    isbn=isbn,
                    employee_id=employee_id,
                    issue_date=today,
                    book_title=book.title,
                )
            )
            tx.set_book_status(isbn, BookStatus.UNAVAILABLE)

        logger.info("Issue successful | issue_id=%s isbn=%s member_id=%s", issue_id, isbn, member_id)
        return Success(
            message=f"'{book.title}' (isbn={isbn}) issued to member {member_id} as {issue_id}.",
            record_id=issue_id,
            isbn=isbn,
            title=book.title,
        )

    def _return(self, return_id: str, issue_id: str) -> Outcome:
        today = self.clock()
        with self.store.transaction() as tx:
            if tx.get_return(return_id) is not None:
                raise DuplicateReturnError(f"Return ID already used: return_id={return_id}")
            issue = tx.get_issue(issue_id, lock=True)
            if issue is None:
                raise IssueNotFoundError(f"Issue not found: issue_id={issue_id}")

            title = issue.book_title
            if tx.get_return_for_issue(issue_id) is not None:
                logger.warning("Return declined, already returned | issue_id=%s", issue_id)
                return Declined(
                    reason=DeclineReason.ALREADY_RETURNED,
                    message=f"'{title}' (isbn={issue.isbn}) for {issue_id} was already returned.",
                    record_id=return_id,
                    isbn=issue.isbn,
                    title=title,
                )
            if today < issue.issue_date:
                raise InvalidRecordError(
                    f"return_date {today} cannot be before issue_date {issue.issue_date}"
                )

            book = self._get_book(tx, issue.isbn, lock=True)
            title = title or book.title
            tx.add_return(
                ReturnRecord(
                    return_id=return_id,
                    issue_id=issue_id,
                    return_date=today,
                    isbn=issue.isbn,
                    book_title=title,
                )
            )
            tx.set_book_status(issue.isbn, BookStatus.AVAILABLE)

        logger.info("Return successful | return_id=%s issue_id=%s isbn=%s", return_id, issue_id, issue.isbn)
        return Success(
            message=f"Thank you for returning '{title}' (isbn={issue.isbn}).",
            record_id=return_id,
            isbn=issue.isbn,
            title=title,
            late_fee=issue.late_fee,
        )

    def _assess_one(self, issue_id: str, today: date) -> str:
        with self.store.transaction() as tx:
            issue = tx.get_issue(issue_id, lock=True)
            if issue is None or tx.get_return_for_issue(issue_id) is not None:
                return _SKIPPED

            fee = self.policy.late_fee(issue.issue_date, today)
            if fee == issue.late_fee:
                return _UNCHANGED
            tx.set_late_fee(issue_id, fee)

        logger.info("Late fee updated | issue_id=%s fee=%s", issue_id, fee)
        return _UPDATED

    # Internal Helpers
    @staticmethod
    def _get_book(tx: Transaction, isbn: str, lock: bool = False) -> Book:
        """
        Retrieves a book by ISBN or raises BookNotFoundError.
        """
        book = tx.get_book(isbn, lock=lock)
        if book is None:
            raise BookNotFoundError(f"Book not found: isbn={isbn}")
        return book

    @staticmethod
    def _get_member(tx: Transaction, member_id: str) -> Member:
        member = tx.get_member(member_id)
        if member is None:
            raise MemberNotFoundError(f"Member not found: member_id={member_id}")
        return member

    @staticmethod
    def _get_employee(tx: Transaction, employee_id: str) -> Employee:
        employee = tx.get_employee(employee_id)
        if employee is None:
            raise EmployeeNotFoundError(f"Employee not found: emp_id={employee_id}")
        return employee
