from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Optional

from config import ZERO


class BookStatus(str, Enum):
    AVAILABLE = "available"
    UNAVAILABLE = "unavailable"


# Domain Models
@dataclass
class Book:
    """
    A title in the catalog.

    Attributes:
        isbn (str): Unique, immutable catalog identifier.
        title (str): Book title.
        category (str): Shelf category, used by revenue reports.
        price (Decimal): Rental price charged per issue, never negative.
        status (BookStatus): Availability; only the circulation engine changes it.
        author (str): Author name.
        publisher (str): Publisher name.
    """
    isbn: str
    title: str
    category: str = ""
    price: Decimal = ZERO
    status: BookStatus = BookStatus.AVAILABLE
    author: str = ""
    publisher: str = ""

    @property
    def is_available(self) -> bool:
        return self.status is BookStatus.AVAILABLE


@dataclass
class Member:
    """
    A registered library member.

    Attributes:
        member_id (str): Unique member identifier.
        name (str): Member name.
        address (str): Postal address; the only field updated after registration.
        reg_date (Optional[date]): Registration date, set to today when omitted.
    """
    member_id: str
    name: str
    address: str = ""
    reg_date: Optional[date] = None


@dataclass
class Branch:
    """
    A library branch.

    ``manager_id`` is a plain lookup key: it may be None, or name an
    employee that has not been hired yet.
    """
    branch_id: str
    address: str = ""
    contact: str = ""
    manager_id: Optional[str] = None


@dataclass
class Employee:
    """
    A staff member who records issues.

    Attributes:
        emp_id (str): Unique employee identifier.
        name (str): Employee name.
        branch_id (str): The one branch this employee works at.
        position (str): Job title.
        salary (Decimal): Annual salary.
    """
    emp_id: str
    name: str
    branch_id: str
    position: str = ""
    salary: Decimal = ZERO


@dataclass
class IssueRecord:
    """
    One loan in the issue ledger.

    A record is open until a ReturnRecord references it. ``late_fee`` is
    written only by the fee assessment job and stays frozen once the
    loan is closed.
    """
    issue_id: str
    member_id: str
    isbn: str
    employee_id: str
    issue_date: date
    book_title: str = ""
    late_fee: Decimal = ZERO


@dataclass
class ReturnRecord:
    """
    Closes exactly one IssueRecord. Immutable once written.

    Attributes:
        return_id (str): Unique return identifier.
        issue_id (str): The loan this return closes.
        return_date (date): Date the book came back.
        isbn (str): ISBN copied from the issue record.
        book_title (str): Title copied from the issue record.
    """
    return_id: str
    issue_id: str
    return_date: date
    isbn: str
    book_title: str = ""
