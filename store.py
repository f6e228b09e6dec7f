"""
Persistence contract for the circulation engine, plus two implementations.

Every read and write happens inside ``Store.transaction()``. The engine
depends only on the ``Store``/``Transaction`` interface, so the same code
runs against ``SqlStore`` (SQLAlchemy) and ``InMemoryStore`` (tests).

Locking:
    SqlStore      - ``lock=True`` reads use SELECT ... FOR UPDATE. SQLite has
                    no row locks, so every SQLite transaction is opened with
                    BEGIN IMMEDIATE and writers run one at a time.
    InMemoryStore - one lock per store; a transaction holds it from begin
                    to commit/rollback.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import replace
from decimal import Decimal
from typing import ContextManager, Dict, Iterator, List, Optional

from sqlalchemy import create_engine, event, func, select
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError

import schema
from config import money
from exceptions import ConflictError, ConstraintViolation, InvalidRecordError, StorageError
from models import Book, BookStatus, Branch, Employee, IssueRecord, Member, ReturnRecord

logger = logging.getLogger("circulation.store")


class Transaction(ABC):
    """One unit of work. Reads see the transaction's own writes."""

    # books
    @abstractmethod
    def get_book(self, isbn: str, lock: bool = False) -> Optional[Book]: ...

    @abstractmethod
    def list_books(self) -> List[Book]: ...

    @abstractmethod
    def add_book(self, book: Book) -> None: ...

    @abstractmethod
    def update_book(self, book: Book) -> None:
        """Rewrites every column except ``status``."""

    @abstractmethod
    def set_book_status(self, isbn: str, status: BookStatus) -> None: ...

    @abstractmethod
    def delete_book(self, isbn: str) -> None: ...

    # members
    @abstractmethod
    def get_member(self, member_id: str) -> Optional[Member]: ...

    @abstractmethod
    def list_members(self) -> List[Member]: ...

    @abstractmethod
    def add_member(self, member: Member) -> None: ...

    @abstractmethod
    def update_member(self, member: Member) -> None: ...

    @abstractmethod
    def delete_member(self, member_id: str) -> None: ...

    # branches / employees
    @abstractmethod
    def get_branch(self, branch_id: str) -> Optional[Branch]: ...

    @abstractmethod
    def list_branches(self) -> List[Branch]: ...

    @abstractmethod
    def add_branch(self, branch: Branch) -> None: ...

    @abstractmethod
    def update_branch(self, branch: Branch) -> None: ...

    @abstractmethod
    def get_employee(self, emp_id: str) -> Optional[Employee]: ...

    @abstractmethod
    def list_employees(self) -> List[Employee]: ...

    @abstractmethod
    def add_employee(self, employee: Employee) -> None: ...

    # issue ledger
    @abstractmethod
    def get_issue(self, issue_id: str, lock: bool = False) -> Optional[IssueRecord]: ...

    @abstractmethod
    def list_issues(self) -> List[IssueRecord]: ...

    @abstractmethod
    def open_issue_ids(self) -> List[str]:
        """IDs of issue records with no return record, in issue_id order."""

    @abstractmethod
    def count_issues(self, isbn: Optional[str] = None, member_id: Optional[str] = None) -> int: ...

    @abstractmethod
    def add_issue(self, issue: IssueRecord) -> None: ...

    @abstractmethod
    def set_late_fee(self, issue_id: str, fee: Decimal) -> None: ...

    # return ledger
    @abstractmethod
    def get_return(self, return_id: str) -> Optional[ReturnRecord]: ...

    @abstractmethod
    def get_return_for_issue(self, issue_id: str) -> Optional[ReturnRecord]: ...

    @abstractmethod
    def list_returns(self) -> List[ReturnRecord]: ...

    @abstractmethod
    def add_return(self, ret: ReturnRecord) -> None: ...


class Store(ABC):
    @abstractmethod
    def transaction(self) -> ContextManager[Transaction]:
        """
        Context manager yielding a Transaction.

        Commits on normal exit and rolls back when the block raises.

        Raises:
            ConstraintViolation: A write broke a key or reference constraint.
            ConflictError: A lock could not be acquired.
            StorageError: Any other database failure.
        """


# -----------------------------
# SQLAlchemy store
# -----------------------------
_LOCK_MARKERS = ("locked", "deadlock", "could not serialize", "lock timeout")


def _is_lock_failure(e: OperationalError) -> bool:
    text = str(e.orig).lower()
    return any(m in text for m in _LOCK_MARKERS)


def _install_sqlite_hooks(engine: Engine) -> None:
    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # noqa: ARG001
        # let SQLAlchemy's "begin" event emit BEGIN itself
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class SqlStore(Store):
    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, url: str, busy_timeout: float = 30.0, echo: bool = False) -> "SqlStore":
        """
        Creates a store for ``url``. SQLite URLs get a busy timeout,
        foreign key enforcement and BEGIN IMMEDIATE transactions.
        """
        if url.startswith("sqlite"):
            engine = create_engine(
                url,
                echo=echo,
                connect_args={"timeout": busy_timeout, "check_same_thread": False},
            )
            _install_sqlite_hooks(engine)
        else:
            engine = create_engine(url, echo=echo)
        return cls(engine)

    def create_all(self) -> None:
        schema.metadata.create_all(self.engine)
        logger.info("Schema created | url=%s", self.engine.url.render_as_string(hide_password=True))

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def transaction(self) -> Iterator["SqlTransaction"]:
        try:
            with self.engine.begin() as conn:
                yield SqlTransaction(conn)
        except IntegrityError as e:
            logger.error("Constraint violation | %s", e.orig)
            raise ConstraintViolation(f"Constraint violation: {e.orig}") from e
        except OperationalError as e:
            if not _is_lock_failure(e):
                logger.error("Storage failure | %s", e.orig)
                raise StorageError(f"Storage failure: {e.orig}") from e
            logger.warning("Lock conflict | %s", e.orig)
            raise ConflictError(f"Transaction conflict, retry: {e.orig}") from e
        except SQLAlchemyError as e:
            logger.error("Storage failure | %s", e)
            raise StorageError(f"Storage failure: {e}") from e


def _book(row) -> Book:
    return Book(
        isbn=row.isbn,
        title=row.title,
        category=row.category,
        price=money(row.price),
        status=BookStatus(row.status),
        author=row.author,
        publisher=row.publisher,
    )


def _member(row) -> Member:
    return Member(member_id=row.member_id, name=row.name, address=row.address, reg_date=row.reg_date)


def _branch(row) -> Branch:
    return Branch(
        branch_id=row.branch_id,
        address=row.address,
        contact=row.contact,
        manager_id=row.manager_id,
    )


def _employee(row) -> Employee:
    return Employee(
        emp_id=row.emp_id,
        name=row.name,
        branch_id=row.branch_id,
        position=row.position,
        salary=money(row.salary),
    )


def _issue(row) -> IssueRecord:
    return IssueRecord(
        issue_id=row.issue_id,
        member_id=row.member_id,
        isbn=row.isbn,
        employee_id=row.employee_id,
        issue_date=row.issue_date,
        book_title=row.book_title,
        late_fee=money(row.late_fee),
    )


def _return(row) -> ReturnRecord:
    return ReturnRecord(
        return_id=row.return_id,
        issue_id=row.issue_id,
        return_date=row.return_date,
        isbn=row.isbn,
        book_title=row.book_title,
    )


class SqlTransaction(Transaction):
    def __init__(self, conn: Connection) -> None:
        self.conn = conn

    def _one(self, stmt):
        return self.conn.execute(stmt).first()

    def _all(self, stmt):
        return self.conn.execute(stmt).all()

    # books
    def get_book(self, isbn: str, lock: bool = False) -> Optional[Book]:
        t = schema.books
        stmt = select(t).where(t.c.isbn == isbn)
        if lock:
            stmt = stmt.with_for_update()
        row = self._one(stmt)
        return _book(row) if row else None

    def list_books(self) -> List[Book]:
        t = schema.books
        return [_book(r) for r in self._all(select(t).order_by(t.c.isbn))]

    def add_book(self, book: Book) -> None:
        self.conn.execute(
            schema.books.insert().values(
                isbn=book.isbn,
                title=book.title,
                category=book.category,
                price=book.price,
                status=book.status.value,
                author=book.author,
                publisher=book.publisher,
            )
        )

    def update_book(self, book: Book) -> None:
        t = schema.books
        self.conn.execute(
            t.update()
            .where(t.c.isbn == book.isbn)
            .values(
                title=book.title,
                category=book.category,
                price=book.price,
                author=book.author,
                publisher=book.publisher,
            )
        )

    def set_book_status(self, isbn: str, status: BookStatus) -> None:
        t = schema.books
        self.conn.execute(t.update().where(t.c.isbn == isbn).values(status=status.value))

    def delete_book(self, isbn: str) -> None:
        t = schema.books
        self.conn.execute(t.delete().where(t.c.isbn == isbn))

    # members
    def get_member(self, member_id: str) -> Optional[Member]:
        t = schema.members
        row = self._one(select(t).where(t.c.member_id == member_id))
        return _member(row) if row else None

    def list_members(self) -> List[Member]:
        t = schema.members
        return [_member(r) for r in self._all(select(t).order_by(t.c.member_id))]

    def add_member(self, member: Member) -> None:
        self.conn.execute(
            schema.members.insert().values(
                member_id=member.member_id,
                name=member.name,
                address=member.address,
                reg_date=member.reg_date,
            )
        )

    def update_member(self, member: Member) -> None:
        t = schema.members
        self.conn.execute(
            t.update()
            .where(t.c.member_id == member.member_id)
            .values(name=member.name, address=member.address, reg_date=member.reg_date)
        )

    def delete_member(self, member_id: str) -> None:
        t = schema.members
        self.conn.execute(t.delete().where(t.c.member_id == member_id))

    # branches / employees
    def get_branch(self, branch_id: str) -> Optional[Branch]:
        t = schema.branches
        row = self._one(select(t).where(t.c.branch_id == branch_id))
        return _branch(row) if row else None

    def list_branches(self) -> List[Branch]:
        t = schema.branches
        return [_branch(r) for r in self._all(select(t).order_by(t.c.branch_id))]

    def add_branch(self, branch: Branch) -> None:
        self.conn.execute(
            schema.branches.insert().values(
                branch_id=branch.branch_id,
                manager_id=branch.manager_id,
                address=branch.address,
                contact=branch.contact,
            )
        )

    def update_branch(self, branch: Branch) -> None:
        t = schema.branches
        self.conn.execute(
            t.update()
            .where(t.c.branch_id == branch.branch_id)
            .values(manager_id=branch.manager_id, address=branch.address, contact=branch.contact)
        )

    def get_employee(self, emp_id: str) -> Optional[Employee]:
        t = schema.employees
        row = self._one(select(t).where(t.c.emp_id == emp_id))
        return _employee(row) if row else None

    def list_employees(self) -> List[Employee]:
        t = schema.employees
        return [_employee(r) for r in self._all(select(t).order_by(t.c.emp_id))]

    def add_employee(self, employee: Employee) -> None:
        self.conn.execute(
            schema.employees.insert().values(
                emp_id=employee.emp_id,
                name=employee.name,
                position=employee.position,
                salary=employee.salary,
                branch_id=employee.branch_id,
            )
        )

    # issue ledger
    def get_issue(self, issue_id: str, lock: bool = False) -> Optional[IssueRecord]:
        t = schema.issued_status
        stmt = select(t).where(t.c.issue_id == issue_id)
        if lock:
            stmt = stmt.with_for_update()
        try:
            row = self._one(stmt)
            return _issue(row) if row else None
        except ValueError as e:
            # unparseable stored date
            raise InvalidRecordError(f"Malformed issue record: issue_id={issue_id} ({e})") from e

    def list_issues(self) -> List[IssueRecord]:
        t = schema.issued_status
        try:
            return [_issue(r) for r in self._all(select(t).order_by(t.c.issue_id))]
        except ValueError as e:
            raise InvalidRecordError(f"Malformed issue record in ledger ({e})") from e

    def open_issue_ids(self) -> List[str]:
        i, r = schema.issued_status, schema.return_status
        stmt = (
            select(i.c.issue_id)
            .outerjoin(r, r.c.issue_id == i.c.issue_id)
            .where(r.c.return_id.is_(None))
            .order_by(i.c.issue_id)
        )
        return [row.issue_id for row in self._all(stmt)]

    def count_issues(self, isbn: Optional[str] = None, member_id: Optional[str] = None) -> int:
        t = schema.issued_status
        stmt = select(func.count()).select_from(t)
        if isbn is not None:
            stmt = stmt.where(t.c.isbn == isbn)
        if member_id is not None:
            stmt = stmt.where(t.c.member_id == member_id)
        return self.conn.execute(stmt).scalar_one()

    def add_issue(self, issue: IssueRecord) -> None:
        self.conn.execute(
            schema.issued_status.insert().values(
                issue_id=issue.issue_id,
                member_id=issue.member_id,
                isbn=issue.isbn,
                employee_id=issue.employee_id,
                issue_date=issue.issue_date,
                book_title=issue.book_title,
                late_fee=issue.late_fee,
            )
        )

    def set_late_fee(self, issue_id: str, fee: Decimal) -> None:
        t = schema.issued_status
        self.conn.execute(t.update().where(t.c.issue_id == issue_id).values(late_fee=fee))

    # return ledger
    def get_return(self, return_id: str) -> Optional[ReturnRecord]:
        t = schema.return_status
        row = self._one(select(t).where(t.c.return_id == return_id))
        return _return(row) if row else None

    def get_return_for_issue(self, issue_id: str) -> Optional[ReturnRecord]:
        t = schema.return_status
        row = self._one(select(t).where(t.c.issue_id == issue_id))
        return _return(row) if row else None

    def list_returns(self) -> List[ReturnRecord]:
        t = schema.return_status
        return [_return(r) for r in self._all(select(t).order_by(t.c.return_id))]

    def add_return(self, ret: ReturnRecord) -> None:
        self.conn.execute(
            schema.return_status.insert().values(
                return_id=ret.return_id,
                issue_id=ret.issue_id,
                return_date=ret.return_date,
                isbn=ret.isbn,
                book_title=ret.book_title,
            )
        )


# -----------------------------
# In-memory store
# -----------------------------
class InMemoryStore(Store):
    """
    Dict-backed store with the same contract as SqlStore.

    Rows are stored as dataclass copies and replaced on write, never
    mutated in place, so a rollback only has to restore the table dicts.
    """

    _TABLES = ("books", "members", "branches", "employees", "issues", "returns")

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.books: Dict[str, Book] = {}
        self.members: Dict[str, Member] = {}
        self.branches: Dict[str, Branch] = {}
        self.employees: Dict[str, Employee] = {}
        self.issues: Dict[str, IssueRecord] = {}
        self.returns: Dict[str, ReturnRecord] = {}

    @contextmanager
    def transaction(self) -> Iterator["MemoryTransaction"]:
        with self._lock:
            saved = {name: dict(getattr(self, name)) for name in self._TABLES}
            try:
                yield MemoryTransaction(self)
            except BaseException:
                for name, table in saved.items():
                    setattr(self, name, table)
                raise


class MemoryTransaction(Transaction):
    def __init__(self, store: InMemoryStore) -> None:
        self.s = store

    @staticmethod
    def _insert(table: Dict, key: str, row, what: str) -> None:
        if key in table:
            raise ConstraintViolation(f"Duplicate {what}: {key}")
        table[key] = replace(row)

    def _require(self, table: Dict, key: str, what: str) -> None:
        if key not in table:
            raise ConstraintViolation(f"Foreign key violation: {what}={key} does not exist")

    @staticmethod
    def _copy(row):
        return replace(row) if row is not None else None

    # books
    def get_book(self, isbn: str, lock: bool = False) -> Optional[Book]:
        return self._copy(self.s.books.get(isbn))

    def list_books(self) -> List[Book]:
        return [replace(b) for _, b in sorted(self.s.books.items())]

    def add_book(self, book: Book) -> None:
        if book.price < 0:
            raise ConstraintViolation(f"Check constraint: price >= 0 (isbn={book.isbn})")
        self._insert(self.s.books, book.isbn, book, "isbn")

    def update_book(self, book: Book) -> None:
        current = self.s.books.get(book.isbn)
        if current is None:
            return
        if book.price < 0:
            raise ConstraintViolation(f"Check constraint: price >= 0 (isbn={book.isbn})")
        self.s.books[book.isbn] = replace(book, status=current.status)

    def set_book_status(self, isbn: str, status: BookStatus) -> None:
        current = self.s.books.get(isbn)
        if current is not None:
            self.s.books[isbn] = replace(current, status=status)

    def delete_book(self, isbn: str) -> None:
        if any(i.isbn == isbn for i in self.s.issues.values()):
            raise ConstraintViolation(f"Foreign key violation: isbn={isbn} is referenced")
        self.s.books.pop(isbn, None)

    # members
    def get_member(self, member_id: str) -> Optional[Member]:
        return self._copy(self.s.members.get(member_id))

    def list_members(self) -> List[Member]:
        return [replace(m) for _, m in sorted(self.s.members.items())]

    def add_member(self, member: Member) -> None:
        self._insert(self.s.members, member.member_id, member, "member_id")

    def update_member(self, member: Member) -> None:
        if member.member_id in self.s.members:
            self.s.members[member.member_id] = replace(member)

    def delete_member(self, member_id: str) -> None:
        if any(i.member_id == member_id for i in self.s.issues.values()):
            raise ConstraintViolation(f"Foreign key violation: member_id={member_id} is referenced")
        self.s.members.pop(member_id, None)

    # branches / employees
    def get_branch(self, branch_id: str) -> Optional[Branch]:
        return self._copy(self.s.branches.get(branch_id))

    def list_branches(self) -> List[Branch]:
        return [replace(b) for _, b in sorted(self.s.branches.items())]

    def add_branch(self, branch: Branch) -> None:
        self._insert(self.s.branches, branch.branch_id, branch, "branch_id")

    def update_branch(self, branch: Branch) -> None:
        if branch.branch_id in self.s.branches:
            self.s.branches[branch.branch_id] = replace(branch)

    def get_employee(self, emp_id: str) -> Optional[Employee]:
        return self._copy(self.s.employees.get(emp_id))

    def list_employees(self) -> List[Employee]:
        return [replace(e) for _, e in sorted(self.s.employees.items())]

    def add_employee(self, employee: Employee) -> None:
        self._require(self.s.branches, employee.branch_id, "branch_id")
        self._insert(self.s.employees, employee.emp_id, employee, "emp_id")

    # issue ledger
    def get_issue(self, issue_id: str, lock: bool = False) -> Optional[IssueRecord]:
        return self._copy(self.s.issues.get(issue_id))

    def list_issues(self) -> List[IssueRecord]:
        return [replace(i) for _, i in sorted(self.s.issues.items())]

    def open_issue_ids(self) -> List[str]:
        closed = {r.issue_id for r in self.s.returns.values()}
        return sorted(k for k in self.s.issues if k not in closed)

    def count_issues(self, isbn: Optional[str] = None, member_id: Optional[str] = None) -> int:
        return sum(
            1
            for i in self.s.issues.values()
            if (isbn is None or i.isbn == isbn) and (member_id is None or i.member_id == member_id)
        )

    def add_issue(self, issue: IssueRecord) -> None:
        self._require(self.s.members, issue.member_id, "member_id")
        self._require(self.s.books, issue.isbn, "isbn")
        self._require(self.s.employees, issue.employee_id, "employee_id")
        self._insert(self.s.issues, issue.issue_id, issue, "issue_id")

    def set_late_fee(self, issue_id: str, fee: Decimal) -> None:
        current = self.s.issues.get(issue_id)
        if current is not None:
            self.s.issues[issue_id] = replace(current, late_fee=fee)

    # return ledger
    def get_return(self, return_id: str) -> Optional[ReturnRecord]:
        return self._copy(self.s.returns.get(return_id))

    def get_return_for_issue(self, issue_id: str) -> Optional[ReturnRecord]:
        for r in self.s.returns.values():
            if r.issue_id == issue_id:
                return replace(r)
        return None

    def list_returns(self) -> List[ReturnRecord]:
        return [replace(r) for _, r in sorted(self.s.returns.items())]

    def add_return(self, ret: ReturnRecord) -> None:
        self._require(self.s.issues, ret.issue_id, "issue_id")
        if any(r.issue_id == ret.issue_id for r in self.s.returns.values()):
            raise ConstraintViolation(f"Unique constraint: issue_id={ret.issue_id} already returned")
        self._insert(self.s.returns, ret.return_id, ret, "return_id")
