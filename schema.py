"""
SQLAlchemy table definitions for the circulation database.

Column names follow the ledger terminology used across the code base
(``issue_id``, ``late_fee``, ...). ``branches.manager_id`` carries no
foreign key; it may name an employee who has not been hired yet.
"""

from __future__ import annotations

from sqlalchemy import (
    CheckConstraint,
    Column,
    Date,
    ForeignKey,
    MetaData,
    Numeric,
    String,
    Table,
)

metadata = MetaData()

books = Table(
    "books",
    metadata,
    Column("isbn", String(32), primary_key=True),
    Column("title", String(255), nullable=False),
    Column("category", String(64), nullable=False, default=""),
    Column("price", Numeric(10, 2), nullable=False, default=0),
    Column("status", String(16), nullable=False, default="available"),
    Column("author", String(255), nullable=False, default=""),
    Column("publisher", String(255), nullable=False, default=""),
    CheckConstraint("price >= 0", name="chk_books_price"),
    CheckConstraint("status IN ('available', 'unavailable')", name="chk_books_status"),
)

members = Table(
    "members",
    metadata,
    Column("member_id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("address", String(255), nullable=False, default=""),
    Column("reg_date", Date, nullable=True),
)

branches = Table(
    "branches",
    metadata,
    Column("branch_id", String(32), primary_key=True),
    Column("manager_id", String(32), nullable=True),
    Column("address", String(255), nullable=False, default=""),
    Column("contact", String(64), nullable=False, default=""),
)

employees = Table(
    "employees",
    metadata,
    Column("emp_id", String(32), primary_key=True),
    Column("name", String(255), nullable=False),
    Column("position", String(64), nullable=False, default=""),
    Column("salary", Numeric(10, 2), nullable=False, default=0),
    Column("branch_id", String(32), ForeignKey("branches.branch_id"), nullable=False, index=True),
)

issued_status = Table(
    "issued_status",
    metadata,
    Column("issue_id", String(32), primary_key=True),
    Column("member_id", String(32), ForeignKey("members.member_id"), nullable=False, index=True),
    Column("isbn", String(32), ForeignKey("books.isbn"), nullable=False, index=True),
    Column("employee_id", String(32), ForeignKey("employees.emp_id"), nullable=False),
    Column("issue_date", Date, nullable=False),
    Column("book_title", String(255), nullable=False, default=""),
    Column("late_fee", Numeric(10, 2), nullable=False, default=0),
)

return_status = Table(
    "return_status",
    metadata,
    Column("return_id", String(32), primary_key=True),
    Column(
        "issue_id",
        String(32),
        ForeignKey("issued_status.issue_id"),
        nullable=False,
        unique=True,
    ),
    Column("return_date", Date, nullable=False),
    Column("isbn", String(32), nullable=False),
    Column("book_title", String(255), nullable=False, default=""),
)
