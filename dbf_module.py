"""
DBF table engine.

This module provides functionality for working with dBase and Visual FoxPro
(.DBF) tables: a positional cursor over the records, typed rows, append,
soft delete and recall, and persistence of buffered changes with save().

Typical use:

    table = dbf_table_open(DBFConfig("CUSTOMER.DBF", read_only=True))
    for row in table.rows(skip_deleted=True):
        print(row["NAME"])
    table.close()
"""

import datetime
import logging
import os
import threading
from dataclasses import dataclass
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, TextIO

try:
    import fcntl
except ImportError:  # not available on Windows
    fcntl = None

from dbf_codec import unpack_uint32
from dbf_columns import ColumnModel, DBFColumn, DBFDialect, code_page
from dbf_config import DBFConfig
from dbf_errors import (
    EndOfTableError, FieldSpecError, InvalidPositionError,
    MemoCorruptionError, PersistenceError, ReadOnlyError, TableClosedError,
)
from dbf_header import (
    DBFHeader, build_dbf_header, patch_dbf_header, read_dbf_header, write_dbf_header,
)
from dbf_memo import MemoBlock, MemoFile, create_memo_file, open_memo_file
from dbf_record import DBF_RECORD_DELETED, DBF_RECORD_LIVE, MemoPointer, RecordCodec, Row
from dbf_scan import BoundShape, bind_shape

logger = logging.getLogger("dbf.table")


# Constants
DBF_EOF_MARKER = b'\x1A'

DBF_STATE_FRESH = 'FRESH'
DBF_STATE_POSITIONED = 'POSITIONED'
DBF_STATE_END = 'END'
DBF_STATE_CLOSED = 'CLOSED'


@dataclass(frozen=True)
class HeaderView:
    """Read-only snapshot of a table header."""
    record_count: int
    field_count: int
    modified: Optional[datetime.date]
    record_length: int
    header_length: int
    language_driver: int
    version: int
    dialect: DBFDialect
    column_model: ColumnModel

    def columns(self) -> List[DBFColumn]:
        return list(self.column_model)


class DBFTable:
    """
    An open DBF table.

    Use dbf_table_open() or dbf_table_create() rather than constructing this
    class directly. Rows returned by next(), current() and new_row() are
    private copies; mutations reach the table through write_row().
    """

    def __init__(self, config: DBFConfig, file: BinaryIO, header: DBFHeader,
                 memo: Optional[MemoFile] = None, encoding: Optional[str] = None):
        self.config = config
        self.file = file
        self.memo = memo
        self._header = header
        self.codec = RecordCodec(
            header.column_model,
            encoding=encoding or code_page(header.language_driver),
            trim_spaces=config.trim_spaces,
            binary_memo_pointer=header.dialect.binary_memo_pointer,
        )
        self._cursor = 0
        self._state = DBF_STATE_FRESH
        self._record_count = header.record_count
        self._disk_count = header.record_count
        self._records: Dict[int, bytearray] = {}  # buffered writes by position
        self._header_dirty = False
        self._partial = False
        self._locked = False
        self._shapes: Dict[Any, BoundShape] = {}

    # Properties
    @property
    def filename(self) -> str:
        return self.config.filename

    @property
    def memo_filename(self) -> Optional[str]:
        return self.memo.filename if self.memo else None

    @property
    def dialect(self) -> DBFDialect:
        return self._header.dialect

    @property
    def read_only(self) -> bool:
        return self.config.read_only

    @property
    def encoding(self) -> str:
        return self.codec.encoding

    @property
    def record_count(self) -> int:
        return self._record_count

    @property
    def position(self) -> int:
        """Cursor position: 0 before the first record, else 1-based."""
        return self._cursor

    @property
    def state(self) -> str:
        return self._state

    @property
    def is_dirty(self) -> bool:
        return bool(self._records) or self._header_dirty or bool(self.memo and self.memo.is_dirty)

    @property
    def is_closed(self) -> bool:
        return self._state == DBF_STATE_CLOSED

    @property
    def backlink(self) -> str:
        return self._header.backlink

    def __repr__(self) -> str:
        return f"<DBFTable {os.path.basename(self.filename)} {self.dialect.name} records={self._record_count}>"

    # Guards
    def _check_open(self) -> None:
        if self._state == DBF_STATE_CLOSED:
            raise TableClosedError(f"{os.path.basename(self.filename)} is closed")

    def _check_writable(self) -> None:
        self._check_open()
        if self.config.read_only:
            raise ReadOnlyError(f"{os.path.basename(self.filename)} is open read-only")

    # Schema
    def header(self) -> HeaderView:
        self._check_open()
        model = self._header.column_model
        return HeaderView(
            record_count=self._record_count,
            field_count=len(model),
            modified=self._header.modified,
            record_length=model.record_length(),
            header_length=self._header.header_size,
            language_driver=self._header.language_driver,
            version=self._header.version,
            dialect=self._header.dialect,
            column_model=model,
        )

    def columns(self) -> List[DBFColumn]:
        return list(self._header.column_model)

    def column(self, name: str) -> DBFColumn:
        return self._header.column_model.by_name(name)

    @property
    def column_model(self) -> ColumnModel:
        return self._header.column_model

    # Record I/O
    def _read_record(self, position: int) -> bytearray:
        if position in self._records:
            return bytearray(self._records[position])
        size = self._header.record_size
        try:
            self.file.seek(self._header.header_size + (position - 1) * size)
            data = self.file.read(size)
        except OSError as exc:
            raise PersistenceError(f"cannot read record: {exc}", record=position) from exc
        if len(data) < size:
            raise PersistenceError(f"record is truncated ({len(data)} of {size} bytes)",
                                   record=position)
        return bytearray(data)

    def _row(self, position: int) -> Row:
        return Row(self, position, self._read_record(position))

    def read_memo(self, pointer: MemoPointer, record: Optional[int] = None,
                  column: Optional[str] = None) -> Optional[MemoBlock]:
        """Resolve a memo pointer through the memo file."""
        if not pointer:
            return None
        if self.memo is None:
            raise MemoCorruptionError("table has no memo file", record=record, column=column)
        try:
            return self.memo.read(pointer.block)
        except MemoCorruptionError as exc:
            exc.record = exc.record or record
            exc.column = exc.column or column
            raise

    # Cursor
    def next(self) -> Row:
        """
        Advance the cursor and return the row there.

        Deleted records are returned too; check row.deleted to filter them.
        """
        self._check_open()
        if self._state == DBF_STATE_END or self._cursor >= self._record_count:
            self._state = DBF_STATE_END
            self._cursor = self._record_count
            raise EndOfTableError("no more records", record=self._record_count)
        self._cursor += 1
        self._state = DBF_STATE_POSITIONED
        return self._row(self._cursor)

    def __iter__(self) -> Iterator[Row]:
        while True:
            try:
                row = self.next()
            except EndOfTableError:
                return
            yield row

    def rows(self, skip_deleted: bool = False, offset: int = 0,
             limit: Optional[int] = None) -> Iterator[Row]:
        """
        Iterate over the table from the first record.

        Args:
            skip_deleted: Leave out records flagged as deleted
            offset: Number of (non-skipped) rows to pass over first
            limit: Maximum number of rows to yield

        Yields:
            Row objects in record order
        """
        self.go_to(0)
        produced = 0
        for row in self:
            if skip_deleted and row.deleted:
                continue
            if offset > 0:
                offset -= 1
                continue
            if limit is not None and produced >= limit:
                return
            produced += 1
            yield row

    def read_all(self, skip_deleted: bool = False) -> List[Row]:
        """Return every remaining row from the cursor on."""
        return [row for row in self if not (skip_deleted and row.deleted)]

    def go_to(self, position: int) -> None:
        """Position the cursor on a record (1-based); 0 rewinds before the first."""
        self._check_open()
        if position == 0:
            self._cursor = 0
            self._state = DBF_STATE_FRESH
            return
        if not 1 <= position <= self._record_count:
            raise InvalidPositionError(
                f"position {position} outside 1..{self._record_count}", record=position)
        self._cursor = position
        self._state = DBF_STATE_POSITIONED

    def current(self) -> Row:
        self._check_open()
        if self._state != DBF_STATE_POSITIONED:
            raise InvalidPositionError(f"no current record (state {self._state})")
        return self._row(self._cursor)

    row = current

    def deleted(self) -> bool:
        """Delete flag of the current record."""
        return self.current().deleted

    # Mutation
    def new_row(self) -> Row:
        """Return a blank row bound to the next append position."""
        self._check_writable()
        return Row(self, self._record_count + 1, self.codec.blank_record())

    def write_row(self, row: Row) -> None:
        """
        Store a row: overwrite when it is an existing record, append when it
        sits at record_count + 1.
        """
        self._check_writable()
        if row.table is not self:
            raise InvalidPositionError("row belongs to another table", record=row.position)
        appending = row.position == self._record_count + 1
        if not appending and not 1 <= row.position <= self._record_count:
            raise InvalidPositionError(
                f"position {row.position} outside 1..{self._record_count + 1}", record=row.position)

        if row.pending_memos:
            if self.memo is None:
                raise MemoCorruptionError("table has no memo file", record=row.position)
            for name, (data, kind) in list(row.pending_memos.items()):
                column = self.column(name)
                block = self.memo.append(data, kind)
                self.codec.pack(row.buffer, column, MemoPointer(block, kind))
                del row.pending_memos[name]

        if appending:
            for column in self._header.column_model:
                if column.autoincrement:
                    self.codec.pack(row.buffer, column, column.autoinc_next)
                    column.autoinc_next += column.autoinc_step
                    self._header_dirty = True

        self._records[row.position] = bytearray(row.buffer)
        if appending:
            self._record_count += 1
        logger.debug("%s record %d", "appended" if appending else "wrote", row.position)

    def _set_flag(self, flag: int) -> None:
        self._check_writable()
        record = self.current().buffer
        if record[0] == flag:
            return
        record[0] = flag
        self._records[self._cursor] = record

    def delete(self) -> None:
        """Flag the current record as deleted."""
        self._set_flag(DBF_RECORD_DELETED)

    def recall(self) -> None:
        """Clear the delete flag of the current record."""
        self._set_flag(DBF_RECORD_LIVE)

    # Persistence
    def save(self) -> None:
        """
        Write buffered records, memo blocks and the header to disk.

        On failure the table stays open and dirty and is marked partially
        flushed; close() then requires discard=True.
        """
        self._check_writable()
        if not self.is_dirty:
            return
        try:
            if self.memo is not None:
                self.memo.flush()
            size = self._header.record_size
            for position in sorted(self._records):
                self.file.seek(self._header.header_size + (position - 1) * size)
                self.file.write(self._records[position])
            if self._record_count > self._disk_count:
                self.file.seek(self._header.header_size + self._record_count * size)
                self.file.write(DBF_EOF_MARKER)
            self._header.record_count = self._record_count
            self._header.touch()
            patch_dbf_header(self.file, self._header)
            self.file.flush()
        except (OSError, PersistenceError) as exc:
            self._partial = True
            logger.debug("save failed: %s", exc)
            if isinstance(exc, PersistenceError):
                raise
            raise PersistenceError(f"cannot save {self.filename}: {exc}") from exc
        logger.debug("saved %d record(s), record count %d", len(self._records), self._record_count)
        self._records.clear()
        self._disk_count = self._record_count
        self._header_dirty = False
        self._partial = False

    def discard(self) -> None:
        """Drop every change made since the last save."""
        self._check_open()
        self._records.clear()
        if self.memo is not None:
            self.memo.discard()
        self._record_count = self._disk_count
        if self._cursor > self._record_count:
            self._cursor = self._record_count
        if self._header_dirty:
            for index, column in enumerate(self._header.fields):
                if column.autoincrement:
                    column.autoinc_next = unpack_uint32(self._header.raw, 32 + index * 32 + 19)
            self._header_dirty = False
        self._partial = False

    def close(self, discard: bool = False) -> None:
        """
        Close the table.

        Buffered changes are saved when the table was opened with auto_save
        (unless discard is set) and dropped otherwise.
        """
        if self._state == DBF_STATE_CLOSED:
            return
        if self._partial and not discard:
            raise PersistenceError(
                f"{os.path.basename(self.filename)} was partially saved; close(discard=True) to drop changes")
        if self.config.auto_save and not self.config.read_only and not discard:
            self.save()
        elif self.is_dirty:
            logger.debug("discarding unsaved changes to %s", self.filename)
            self.discard()
        self._release()

    def _release(self) -> None:
        try:
            if self._locked and fcntl is not None:
                fcntl.flock(self.file.fileno(), fcntl.LOCK_UN)
            self.file.close()
            if self.memo is not None:
                self.memo.close()
        except OSError as exc:
            raise PersistenceError(f"cannot close {self.filename}: {exc}") from exc
        finally:
            self._locked = False
            self._state = DBF_STATE_CLOSED
            self._cursor = 0
        logger.debug("closed %s", self.filename)

    def __enter__(self) -> 'DBFTable':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close(discard=exc_type is not None)

    # Struct mapping
    def bind(self, shape) -> BoundShape:
        """
        Validate a record shape against the columns.

        Dataclass types are bound once per table; mapping shapes are bound
        on every call, so reuse the returned BoundShape inside loops.
        """
        if isinstance(shape, BoundShape):
            return shape
        if not isinstance(shape, type):
            return bind_shape(self._header.column_model, shape)
        bound = self._shapes.get(shape)
        if bound is None:
            bound = self._shapes[shape] = bind_shape(self._header.column_model, shape)
        return bound

    def scan(self, shape, out=None):
        """
        Populate an instance of a shape from the current record.

        Args:
            shape: Dataclass type, mapping shape, or a BoundShape from bind()
            out: Existing object to fill; a new one is built when None

        Returns:
            The populated object
        """
        return self.bind(shape).populate(self.current(), out)

    def lock(self) -> None:
        """Take the advisory lock: shared for readers, exclusive for writers."""
        self._check_open()
        if fcntl is None:
            raise PersistenceError("advisory locking is not supported on this platform")
        mode = fcntl.LOCK_SH if self.config.read_only else fcntl.LOCK_EX
        try:
            fcntl.flock(self.file.fileno(), mode | fcntl.LOCK_NB)
        except OSError as exc:
            raise PersistenceError(f"{os.path.basename(self.filename)} is locked: {exc}") from exc
        self._locked = True


def _find_memo_path(config: DBFConfig, dialect: DBFDialect) -> Optional[str]:
    for candidate in (config.memo_path(dialect.memo_extension),
                      config.base_name + dialect.memo_extension.lower(),
                      config.base_name + dialect.memo_extension.upper()):
        if os.path.exists(candidate):
            return candidate
    return None


# Main DBF functions
def dbf_table_open(config: DBFConfig) -> DBFTable:
    """
    Open an existing DBF table.

    Writers hold an exclusive advisory lock until close unless config.lock
    is False.

    Args:
        config: Table configuration; config.dialect None means detect it from
            the version byte

    Returns:
        A DBFTable with the cursor before the first record
    """
    try:
        file = open(config.filename, "rb" if config.read_only else "rb+")
    except OSError as exc:
        raise PersistenceError(f"cannot open DBF file {config.filename}: {exc}") from exc

    memo = None
    try:
        header = read_dbf_header(file, config.dialect)
        if header.has_memo:
            memo_path = _find_memo_path(config, header.dialect)
            if memo_path is None:
                raise MemoCorruptionError(
                    f"memo file {config.memo_path(header.dialect.memo_extension)} not found")
            memo = open_memo_file(memo_path, header.dialect.memo_format, config.read_only)
        table = DBFTable(config, file, header, memo, config.encoding)
        if config.lock or (config.lock is None and not config.read_only and fcntl is not None):
            table.lock()
    except BaseException:
        if memo is not None:
            memo.close()
        file.close()
        raise

    logger.debug("opened %s: %s, %d record(s), %d column(s)",
                 config.filename, header.dialect.name, header.record_count, header.field_count)
    return table


def dbf_table_create(config: DBFConfig) -> DBFTable:
    """
    Create a new, empty DBF table (and its memo file when needed).

    An existing file of the same name is replaced.

    Args:
        config: Table configuration with dialect and columns set

    Returns:
        The new table, open for writing
    """
    if config.dialect is None:
        raise FieldSpecError("a dialect is required to create a table")
    if config.read_only:
        raise ReadOnlyError("cannot create a table read-only")

    header = build_dbf_header(config.dialect, config.columns, config.language_driver)
    try:
        with open(config.filename, "wb") as f:
            write_dbf_header(f, header)
            f.write(DBF_EOF_MARKER)
    except OSError as exc:
        raise PersistenceError(f"cannot create DBF file {config.filename}: {exc}") from exc

    if header.has_memo:
        memo_path = config.memo_path(header.dialect.memo_extension)
        create_memo_file(memo_path, header.dialect.memo_format, config.memo_block_size,
                         os.path.basename(config.base_name)).close()

    logger.debug("created %s: %s, %d column(s)", config.filename, header.dialect.name, header.field_count)
    return dbf_table_open(config)


# Debug sink
_debug_lock = threading.Lock()
_debug_handler: Optional[logging.Handler] = None


def dbf_debug(enabled: bool, stream: Optional[TextIO] = None) -> None:
    """
    Turn trace logging of the "dbf" loggers on or off.

    Args:
        enabled: True to attach a DEBUG stream handler, False to remove it
        stream: Target stream (defaults to sys.stderr)
    """
    global _debug_handler
    root = logging.getLogger("dbf")
    with _debug_lock:
        if _debug_handler is not None:
            root.removeHandler(_debug_handler)
            _debug_handler = None
        if enabled:
            _debug_handler = logging.StreamHandler(stream)
            _debug_handler.setFormatter(logging.Formatter("%(asctime)s %(name)s: %(message)s"))
            root.addHandler(_debug_handler)
            root.setLevel(logging.DEBUG)
        else:
            root.setLevel(logging.NOTSET)


__all__ = [
    'DBFTable', 'HeaderView', 'dbf_table_open', 'dbf_table_create', 'dbf_debug',
    'DBF_STATE_FRESH', 'DBF_STATE_POSITIONED', 'DBF_STATE_END', 'DBF_STATE_CLOSED',
]
