from __future__ import annotations

import logging
from dataclasses import replace
from datetime import date
from decimal import Decimal
from typing import List, Optional

from config import money
from exceptions import (
    BookNotFoundError,
    BranchNotFoundError,
    DuplicateBookError,
    DuplicateBranchError,
    DuplicateEmployeeError,
    DuplicateMemberError,
    MemberNotFoundError,
    RecordInUseError,
)
from models import Book, BookStatus, Branch, Employee, Member
from store import Store

logger = logging.getLogger("circulation.catalog")

_BOOK_FIELDS = ("title", "category", "price", "author", "publisher")


class Catalog:
    """
    Admin surface for books, members, branches and employees.

    Plain CRUD: errors are raised, not returned. Book status is never
    writable here; only the circulation engine changes it.
    """

    def __init__(self, store: Store) -> None:
        self.store = store

    # Books

    def addBook(self, book: Book) -> None:
        """
        Adds a new book to the catalog. New books are always available.

        Raises:
            DuplicateBookError: If a book with the same ISBN already exists.
            ValueError: If ISBN or title is empty, or price is negative.
        """
        logger.info("addBook called | isbn=%s title=%s", book.isbn, book.title)

        if not book.isbn:
            raise ValueError("isbn cannot be empty")
        if not book.title:
            raise ValueError("title cannot be empty")
        self._require_price(book.price)

        with self.store.transaction() as tx:
            if tx.get_book(book.isbn) is not None:
                raise DuplicateBookError(f"Book already exists: isbn={book.isbn}")
            tx.add_book(replace(book, price=money(book.price), status=BookStatus.AVAILABLE))

        logger.info("Book added successfully | isbn=%s", book.isbn)

    def updateBook(self, isbn: str, **changes) -> Book:
        """
        Updates descriptive fields of a book (title, category, price,
        author, publisher).

        Raises:
            BookNotFoundError
            ValueError: On an unknown or read-only field, or a negative price.
        """
        logger.info("updateBook called | isbn=%s fields=%s", isbn, sorted(changes))

        unknown = set(changes) - set(_BOOK_FIELDS)
        if unknown:
            raise ValueError(f"Cannot update field(s): {', '.join(sorted(unknown))}")
        if "price" in changes:
            self._require_price(changes["price"])
            changes["price"] = money(changes["price"])

        with self.store.transaction() as tx:
            book = tx.get_book(isbn, lock=True)
            if book is None:
                raise BookNotFoundError(f"Book not found: isbn={isbn}")
            updated = replace(book, **changes)
            tx.update_book(updated)

        logger.info("Book updated successfully | isbn=%s", isbn)
        return updated

    def deleteBook(self, isbn: str) -> None:
        """
        Removes a book that has never been issued.

        Raises:
            BookNotFoundError
            RecordInUseError: If any issue record references the ISBN.
        """
        logger.info("deleteBook called | isbn=%s", isbn)
        with self.store.transaction() as tx:
            if tx.get_book(isbn, lock=True) is None:
                raise BookNotFoundError(f"Book not found: isbn={isbn}")
            if tx.count_issues(isbn=isbn):
                raise RecordInUseError(f"Book is referenced by the issue ledger: isbn={isbn}")
            tx.delete_book(isbn)
        logger.info("Book deleted | isbn=%s", isbn)

    def getBook(self, isbn: str) -> Book:
        with self.store.transaction() as tx:
            book = tx.get_book(isbn)
        if book is None:
            raise BookNotFoundError(f"Book not found: isbn={isbn}")
        return book

    def getAvailableBooks(self) -> List[Book]:
        """
        Returns all books currently available for issue.
        """
        with self.store.transaction() as tx:
            return [b for b in tx.list_books() if b.is_available]

    # Members

    def registerMember(self, member: Member) -> None:
        """
        Registers a new member. reg_date defaults to today.

        Raises:
            DuplicateMemberError: If member_id already exists.
            ValueError: If member_id is empty.
        """
        logger.info("registerMember called | member_id=%s", member.member_id)

        if not member.member_id:
            raise ValueError("member_id cannot be empty")

        with self.store.transaction() as tx:
            if tx.get_member(member.member_id) is not None:
                raise DuplicateMemberError(f"Member already exists: member_id={member.member_id}")
            tx.add_member(replace(member, reg_date=member.reg_date or date.today()))

        logger.info("Member registered successfully | member_id=%s", member.member_id)

    def updateMemberAddress(self, member_id: str, address: str) -> Member:
        logger.info("updateMemberAddress called | member_id=%s", member_id)
        with self.store.transaction() as tx:
            member = tx.get_member(member_id)
            if member is None:
                raise MemberNotFoundError(f"Member not found: member_id={member_id}")
            updated = replace(member, address=address)
            tx.update_member(updated)
        return updated

    def deleteMember(self, member_id: str) -> None:
        """
        Raises:
            MemberNotFoundError
            RecordInUseError: If the member appears in the issue ledger.
        """
        logger.info("deleteMember called | member_id=%s", member_id)
        with self.store.transaction() as tx:
            if tx.get_member(member_id) is None:
                raise MemberNotFoundError(f"Member not found: member_id={member_id}")
            if tx.count_issues(member_id=member_id):
                raise RecordInUseError(f"Member is referenced by the issue ledger: member_id={member_id}")
            tx.delete_member(member_id)

    # Branches / Employees

    def addBranch(self, branch: Branch) -> None:
        """
        Adds a branch. ``manager_id`` is stored as given, even if that
        employee is not hired yet.
        """
        logger.info("addBranch called | branch_id=%s", branch.branch_id)
        if not branch.branch_id:
            raise ValueError("branch_id cannot be empty")
        with self.store.transaction() as tx:
            if tx.get_branch(branch.branch_id) is not None:
                raise DuplicateBranchError(f"Branch already exists: branch_id={branch.branch_id}")
            tx.add_branch(branch)

    def hireEmployee(self, employee: Employee) -> None:
        """
        Raises:
            BranchNotFoundError: If the employee's branch does not exist.
            DuplicateEmployeeError: If emp_id already exists.
        """
        logger.info("hireEmployee called | emp_id=%s branch_id=%s", employee.emp_id, employee.branch_id)
        if not employee.emp_id:
            raise ValueError("emp_id cannot be empty")
        with self.store.transaction() as tx:
            if tx.get_branch(employee.branch_id) is None:
                raise BranchNotFoundError(f"Branch not found: branch_id={employee.branch_id}")
            if tx.get_employee(employee.emp_id) is not None:
                raise DuplicateEmployeeError(f"Employee already exists: emp_id={employee.emp_id}")
            tx.add_employee(replace(employee, salary=money(employee.salary)))

    def assignManager(self, branch_id: str, manager_id: Optional[str]) -> Branch:
        """
        Sets (or clears, with None) the manager of a branch.
        """
        logger.info("assignManager called | branch_id=%s manager_id=%s", branch_id, manager_id)
        with self.store.transaction() as tx:
            branch = tx.get_branch(branch_id)
            if branch is None:
                raise BranchNotFoundError(f"Branch not found: branch_id={branch_id}")
            updated = replace(branch, manager_id=manager_id)
            tx.update_branch(updated)
        return updated

    def getBranchManager(self, branch_id: str) -> Optional[Employee]:
        """
        Resolves the branch manager, or None when unset or not hired yet.
        """
        with self.store.transaction() as tx:
            branch = tx.get_branch(branch_id)
            if branch is None:
                raise BranchNotFoundError(f"Branch not found: branch_id={branch_id}")
            if branch.manager_id is None:
                return None
            return tx.get_employee(branch.manager_id)

    @staticmethod
    def _require_price(price: Decimal) -> None:
        if not isinstance(price, (Decimal, int)):
            raise ValueError(f"price must be a Decimal (got {price!r})")
        if price < 0:
            raise ValueError(f"price must be >= 0 (got {price})")
