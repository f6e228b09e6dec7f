import pytest
from datetime import date, timedelta
from decimal import Decimal

from catalog import Catalog
from circulation import CirculationEngine
from models import Book, BookStatus, Branch, Employee, Member
from store import InMemoryStore, SqlStore


class FakeClock:
    """Settable stand-in for date.today."""

    def __init__(self, today: date) -> None:
        self.today = today

    def __call__(self) -> date:
        return self.today

    def advance(self, days: int) -> None:
        self.today += timedelta(days=days)


@pytest.fixture
def clock():
    return FakeClock(date(2025, 1, 1))


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path):
    """Every test using this fixture runs once per store implementation."""
    if request.param == "memory":
        yield InMemoryStore()
        return
    s = SqlStore.from_url(f"sqlite:///{tmp_path / 'library.db'}")
    s.create_all()
    yield s
    s.dispose()


@pytest.fixture
def catalog(store):
    return Catalog(store)


@pytest.fixture
def engine(store, clock):
    return CirculationEngine(store, clock=clock)


@pytest.fixture
def seeded(catalog):
    """One branch, one employee, two members and three books."""
    catalog.addBranch(Branch("B1", address="1 Library Way", contact="555-0100", manager_id="E1"))
    catalog.hireEmployee(Employee("E1", "Jane Smith", "B1", position="Clerk", salary=Decimal("45000")))
    catalog.registerMember(Member("M1", "Alice Johnson", "123 Main St", reg_date=date(2024, 6, 1)))
    catalog.registerMember(Member("M2", "Bob Smith", "456 Elm St", reg_date=date(2024, 6, 2)))
    catalog.addBook(Book("ISBN-1", "Clean Code", "Software", Decimal("5.00"), author="Robert C. Martin"))
    catalog.addBook(Book("ISBN-2", "Design Patterns", "Software", Decimal("6.50"), author="GoF"))
    catalog.addBook(Book("ISBN-3", "Sapiens", "History", Decimal("8.00"), author="Yuval Noah Harari"))
    return catalog


@pytest.fixture
def check_consistency(store):
    """
    Asserts that a book is unavailable exactly when it has an open loan,
    and that no ISBN has two open loans.
    """

    def _check():
        with store.transaction() as tx:
            open_isbns = [tx.get_issue(i).isbn for i in tx.open_issue_ids()]
            books = tx.list_books()
        assert len(open_isbns) == len(set(open_isbns))
        for b in books:
            assert (b.status is BookStatus.UNAVAILABLE) == (b.isbn in open_isbns), b.isbn

    return _check
