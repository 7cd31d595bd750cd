"""
Exception types raised by the DBF engine.

Every error carries enough context to locate the failing record (1-based)
and column name when one is known.
"""

from typing import Optional


class DBFError(Exception):
    """Base class for all DBF engine errors."""

    def __init__(self, message: str, record: Optional[int] = None, column: Optional[str] = None):
        self.record = record
        self.column = column
        super().__init__(message)

    def __str__(self) -> str:
        message = super().__str__()
        context = []
        if self.record is not None:
            context.append(f"record {self.record}")
        if self.column:
            context.append(f"column {self.column}")
        if context:
            return f"{message} ({', '.join(context)})"
        return message


class MalformedHeaderError(DBFError):
    """Header terminator missing or header/record length math disagrees."""


class UnsupportedFieldTypeError(DBFError):
    """A column type code is not legal in the active dialect."""


class DuplicateColumnNameError(DBFError):
    """Two column names clash after upper-casing."""


class EndOfTableError(DBFError):
    """next() was called with the cursor on the last record."""


class InvalidPositionError(DBFError):
    """A record position outside 1..record_count (or no current record)."""


class TypeMismatchError(DBFError, TypeError):
    """A value of an incompatible type was assigned to a field."""


class ValueOutOfRangeError(DBFError, ValueError):
    """Numeric overflow, or a string too long for its field."""


class ShapeMismatchError(DBFError):
    """A bound shape references an unknown column or an incompatible type."""


class MemoCorruptionError(DBFError):
    """A memo block number does not resolve, or a block overruns the file."""


class PersistenceError(DBFError, IOError):
    """Underlying I/O failure during open, read, write or flush."""


class FieldDecodeError(DBFError, ValueError):
    """Field bytes that cannot be decoded for the column's type."""


class ReadOnlyError(DBFError):
    """A mutation was attempted on a table opened read-only."""


class TableClosedError(DBFError):
    """The table handle was used after close()."""


class ColumnNotFoundError(DBFError, KeyError):
    """No column with the requested name or index."""

    def __str__(self) -> str:
        # KeyError would repr() the message
        return DBFError.__str__(self)


class FieldSpecError(DBFError, ValueError):
    """A column definition string such as 'N(10,2)' could not be parsed."""


__all__ = [
    'DBFError', 'MalformedHeaderError', 'UnsupportedFieldTypeError',
    'DuplicateColumnNameError', 'EndOfTableError', 'InvalidPositionError',
    'TypeMismatchError', 'ValueOutOfRangeError', 'ShapeMismatchError',
    'MemoCorruptionError', 'PersistenceError', 'FieldDecodeError',
    'ReadOnlyError', 'TableClosedError', 'ColumnNotFoundError', 'FieldSpecError',
]
