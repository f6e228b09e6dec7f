class CirculationError(Exception):
    """Base exception for library circulation errors."""


class ConfigError(CirculationError):
    """A configuration value is missing or invalid."""


# Validation: a referenced identifier does not exist
class ValidationError(CirculationError):
    """Referenced identifier does not exist."""


class BookNotFoundError(ValidationError):
    """Requested ISBN does not exist in the catalog."""


class MemberNotFoundError(ValidationError):
    """Requested member_id does not exist."""


class EmployeeNotFoundError(ValidationError):
    """Requested emp_id does not exist."""


class BranchNotFoundError(ValidationError):
    """Requested branch_id does not exist."""


class IssueNotFoundError(ValidationError):
    """Requested issue_id does not exist in the issue ledger."""


# Constraint violations: rejected by the persistence layer
class ConstraintViolation(CirculationError):
    """Duplicate primary key or broken referential constraint."""


class DuplicateIssueError(ConstraintViolation):
    """Issue ID already used."""


class DuplicateReturnError(ConstraintViolation):
    """Return ID already used, or the issue already has a return record."""


class DuplicateBookError(ConstraintViolation):
    """Trying to add a book that already exists."""


class DuplicateMemberError(ConstraintViolation):
    """Trying to register a member that already exists."""


class DuplicateEmployeeError(ConstraintViolation):
    """Trying to hire an employee whose emp_id already exists."""


class DuplicateBranchError(ConstraintViolation):
    """Trying to add a branch that already exists."""


class RecordInUseError(ConstraintViolation):
    """Trying to delete a row still referenced by the issue ledger."""


class ConflictError(CirculationError):
    """A concurrent transaction invalidated this one; retry the operation."""


class InvalidRecordError(CirculationError):
    """A persisted record is malformed (e.g. unreadable issue date)."""


class StorageError(CirculationError):
    """The database failed for a reason other than a constraint or lock."""
