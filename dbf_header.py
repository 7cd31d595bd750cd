"""
Table header parsing and writing.

A DBF header is 32 fixed bytes, one 32-byte descriptor per column, a 0x0D
terminator and, for Visual FoxPro tables, a 263-byte backlink to the owning
database container. The raw bytes are kept as read so that saving a table
only rewrites the fields it owns.
"""

import datetime
import logging
from dataclasses import dataclass, field
from typing import BinaryIO, List, Optional

from dbf_codec import pack_uint16, pack_uint32, unpack_uint16, unpack_uint32
from dbf_columns import (
    ColumnModel, DBFColumn, DBFDialect, DBF_FLAG_BINARY, DBF_FLAG_SYSTEM,
    NULL_FLAGS_NAME, NULL_FLAGS_TYPE, dialect_for_version, needs_null_flags,
    prepare_new_columns,
)
from dbf_errors import (
    FieldSpecError, MalformedHeaderError, PersistenceError, UnsupportedFieldTypeError,
)

logger = logging.getLogger("dbf.header")


# Constants
DBF_HEADER_PREFIX_SIZE = 32
DBF_DESCRIPTOR_SIZE = 32
DBF_HEADER_TERMINATOR = 0x0D
DBF_BACKLINK_SIZE = 263
DBF_MAX_RECORD_LENGTH = 65535

DBF_TABLE_FLAG_CDX = 0x01
DBF_TABLE_FLAG_MEMO = 0x02
DBF_TABLE_FLAG_DBC = 0x04


@dataclass
class DBFHeader:
    """Represents the header of a DBF file."""
    version: int = 0  # version byte, e.g. 0x03 for dBase III
    year: int = 0  # Last update year (since 1900)
    month: int = 0  # Last update month
    day: int = 0  # Last update day
    record_count: int = 0  # Number of records
    header_size: int = 0  # Header size in bytes
    record_size: int = 0  # Record size in bytes
    table_flags: int = 0  # byte 28
    language_driver: int = 0  # byte 29
    dialect: Optional[DBFDialect] = None
    fields: List[DBFColumn] = field(default_factory=list)  # every descriptor, _NullFlags included
    column_model: Optional[ColumnModel] = None
    backlink_bytes: bytes = b''
    raw: bytes = field(default=b'', repr=False)

    @property
    def field_count(self) -> int:
        return len(self.column_model) if self.column_model is not None else 0

    @property
    def modified(self) -> Optional[datetime.date]:
        """Last-modified date, or None when the header holds no valid date."""
        year = self.year + 2000 if self.year < 80 else self.year + 1900
        try:
            return datetime.date(year, self.month, self.day)
        except ValueError:
            return None

    @property
    def backlink(self) -> str:
        return self.backlink_bytes.split(b'\x00', 1)[0].decode('ascii', errors='replace')

    @property
    def has_memo(self) -> bool:
        return self.column_model is not None and self.column_model.has_memo()

    def touch(self, today: Optional[datetime.date] = None) -> None:
        """Set the last-modified date (defaults to today)."""
        today = today or datetime.date.today()
        self.year = today.year - 1900
        self.month = today.month
        self.day = today.day


def _decode_descriptor(buf: bytes, foxpro: bool) -> DBFColumn:
    # Extract field name (up to 11 bytes, null-terminated)
    name = buf[0:11].split(b'\x00', 1)[0].decode('ascii', errors='replace').strip()
    column = DBFColumn(
        name=name,
        field_type=chr(buf[11]).upper(),
        length=buf[16],
        decimals=buf[17],
        descriptor=bytes(buf),
    )
    if foxpro:
        column.flags = buf[18]
        column.autoinc_next = unpack_uint32(buf, 19)
        column.autoinc_step = buf[23]
    return column


def read_dbf_header(file: BinaryIO, dialect: Optional[DBFDialect] = None) -> DBFHeader:
    """
    Read and validate a DBF header.

    Args:
        file: Binary file positioned anywhere; the header is read from offset 0
        dialect: Dialect to enforce, or None to detect it from the version byte

    Returns:
        The decoded DBFHeader
    """
    try:
        file.seek(0)
        buf = file.read(DBF_HEADER_PREFIX_SIZE)
    except OSError as exc:
        raise PersistenceError(f"cannot read DBF header: {exc}") from exc
    if len(buf) < DBF_HEADER_PREFIX_SIZE:
        raise MalformedHeaderError(f"file holds {len(buf)} bytes, a header needs 32")

    header = DBFHeader()
    header.version = buf[0]
    header.year = buf[1]
    header.month = buf[2]
    header.day = buf[3]
    header.record_count = unpack_uint32(buf, 4)
    header.header_size = unpack_uint16(buf, 8)
    header.record_size = unpack_uint16(buf, 10)
    header.table_flags = buf[28]
    header.language_driver = buf[29]

    detected = None
    if dialect is None:
        detected = dialect = dialect_for_version(header.version)
    else:
        try:
            detected = dialect_for_version(header.version)
        except MalformedHeaderError:
            detected = dialect
    header.dialect = dialect
    foxpro = dialect.is_foxpro or detected.is_foxpro

    if header.header_size <= DBF_HEADER_PREFIX_SIZE:
        raise MalformedHeaderError(f"header length {header.header_size} is too small")
    try:
        rest = file.read(header.header_size - DBF_HEADER_PREFIX_SIZE)
    except OSError as exc:
        raise PersistenceError(f"cannot read DBF header: {exc}") from exc
    if len(rest) < header.header_size - DBF_HEADER_PREFIX_SIZE:
        raise MalformedHeaderError(
            f"header length {header.header_size} exceeds file size "
            f"{DBF_HEADER_PREFIX_SIZE + len(rest)}")

    # Read field descriptors until 0x0D (field descriptor terminator)
    fields = []
    pos = 0
    while True:
        if pos >= len(rest):
            raise MalformedHeaderError("field descriptor terminator 0x0D not found")
        if rest[pos] == DBF_HEADER_TERMINATOR:
            break
        if pos + DBF_DESCRIPTOR_SIZE > len(rest):
            raise MalformedHeaderError("truncated field descriptor")
        column = _decode_descriptor(rest[pos:pos + DBF_DESCRIPTOR_SIZE], foxpro)
        if not dialect.supports(column.field_type):
            raise UnsupportedFieldTypeError(
                f"field type {column.field_type!r} is not supported by {dialect.name}",
                column=column.name)
        fields.append(column)
        pos += DBF_DESCRIPTOR_SIZE

    expected = DBF_HEADER_PREFIX_SIZE + DBF_DESCRIPTOR_SIZE * len(fields) + 1
    if foxpro and header.header_size == expected + DBF_BACKLINK_SIZE:
        header.backlink_bytes = bytes(rest[pos + 1:pos + 1 + DBF_BACKLINK_SIZE])
        expected += DBF_BACKLINK_SIZE
    if header.header_size != expected:
        raise MalformedHeaderError(
            f"header length {header.header_size} does not match {len(fields)} columns "
            f"(expected {expected})")

    header.fields = fields
    header.column_model = ColumnModel(fields)
    if header.record_size != header.column_model.record_length():
        raise MalformedHeaderError(
            f"record length {header.record_size} does not match column lengths "
            f"(expected {header.column_model.record_length()})")

    header.raw = bytes(buf) + bytes(rest)
    logger.debug("read header: version=0x%02X dialect=%s records=%d columns=%d",
                 header.version, dialect.name, header.record_count, header.field_count)
    return header


def _encode_descriptor(column: DBFColumn, dialect: DBFDialect) -> bytes:
    buf = bytearray(DBF_DESCRIPTOR_SIZE)
    name = column.name.encode('ascii')
    buf[:len(name)] = name  # 11th byte stays 0x00
    buf[11] = ord(column.field_type)
    if dialect.is_foxpro:
        buf[12:16] = pack_uint32(column.offset)
    buf[16] = column.length
    buf[17] = column.decimals
    if dialect.is_foxpro:
        buf[18] = column.flags
        if column.autoincrement:
            buf[19:23] = pack_uint32(column.autoinc_next)
            buf[23] = column.autoinc_step
    return bytes(buf)


def encode_dbf_header(header: DBFHeader) -> bytes:
    """Encode a complete header (prefix, descriptors, terminator, backlink)."""
    buf = bytearray(DBF_HEADER_PREFIX_SIZE)
    buf[0] = header.version
    buf[1] = header.year
    buf[2] = header.month
    buf[3] = header.day
    buf[4:8] = pack_uint32(header.record_count)
    buf[8:10] = pack_uint16(header.header_size)
    buf[10:12] = pack_uint16(header.record_size)
    buf[28] = header.table_flags
    buf[29] = header.language_driver
    for column in header.fields:
        buf += _encode_descriptor(column, header.dialect)
    buf.append(DBF_HEADER_TERMINATOR)
    if header.dialect.backlink:
        buf += header.backlink_bytes.ljust(DBF_BACKLINK_SIZE, b'\x00')
    return bytes(buf)


def build_dbf_header(dialect: DBFDialect, columns: List[DBFColumn],
                     language_driver: Optional[int] = None,
                     today: Optional[datetime.date] = None) -> DBFHeader:
    """
    Build the header of a new, empty table.

    Args:
        dialect: Dialect of the new table
        columns: Column definitions (validated against the dialect)
        language_driver: Language driver byte, or None for the dialect default
        today: Creation date (defaults to today)

    Returns:
        A DBFHeader whose raw bytes are ready to be written
    """
    fields = prepare_new_columns(columns, dialect)
    if not fields:
        raise FieldSpecError("a table needs at least one column")

    if dialect.null_flags:
        bits = needs_null_flags(fields)
        if bits:
            fields.append(DBFColumn(
                name=NULL_FLAGS_NAME, field_type=NULL_FLAGS_TYPE,
                length=(bits + 7) // 8, flags=DBF_FLAG_SYSTEM | DBF_FLAG_BINARY,
            ))

    model = ColumnModel(fields)
    if model.record_length() > DBF_MAX_RECORD_LENGTH:
        raise FieldSpecError(f"record length {model.record_length()} exceeds {DBF_MAX_RECORD_LENGTH}")

    header = DBFHeader(dialect=dialect, fields=fields, column_model=model)
    header.version = dialect.version_byte(model.has_memo())
    header.touch(today)
    header.record_size = model.record_length()
    header.header_size = DBF_HEADER_PREFIX_SIZE + DBF_DESCRIPTOR_SIZE * len(fields) + 1
    if dialect.backlink:
        header.header_size += DBF_BACKLINK_SIZE
        header.backlink_bytes = b'\x00' * DBF_BACKLINK_SIZE
    if dialect.is_foxpro and model.has_memo():
        header.table_flags = DBF_TABLE_FLAG_MEMO
    if language_driver is None:
        language_driver = dialect.default_language_driver
    header.language_driver = language_driver

    header.raw = encode_dbf_header(header)
    for column, offset in zip(fields, range(DBF_HEADER_PREFIX_SIZE, len(header.raw), DBF_DESCRIPTOR_SIZE)):
        column.descriptor = header.raw[offset:offset + DBF_DESCRIPTOR_SIZE]
    return header


def write_dbf_header(file: BinaryIO, header: DBFHeader) -> None:
    """Write the whole header at offset 0."""
    try:
        file.seek(0)
        file.write(header.raw)
    except OSError as exc:
        raise PersistenceError(f"cannot write DBF header: {exc}") from exc


def patch_dbf_header(file: BinaryIO, header: DBFHeader) -> None:
    """
    Rewrite the bytes a save owns: last-modified date, record count and the
    next-value bytes of autoincrement columns. Everything else stays as read.
    """
    raw = bytearray(header.raw)
    raw[1] = header.year
    raw[2] = header.month
    raw[3] = header.day
    raw[4:8] = pack_uint32(header.record_count)

    patches = [(1, bytes(raw[1:8]))]
    for index, column in enumerate(header.fields):
        if not column.autoincrement:
            continue
        pos = DBF_HEADER_PREFIX_SIZE + index * DBF_DESCRIPTOR_SIZE + 19
        raw[pos:pos + 4] = pack_uint32(column.autoinc_next)
        patches.append((pos, bytes(raw[pos:pos + 4])))

    try:
        for pos, data in patches:
            file.seek(pos)
            file.write(data)
    except OSError as exc:
        raise PersistenceError(f"cannot update DBF header: {exc}") from exc
    header.raw = bytes(raw)
    logger.debug("patched header: records=%d modified=%s", header.record_count, header.modified)


__all__ = [
    'DBFHeader', 'DBF_BACKLINK_SIZE', 'DBF_HEADER_TERMINATOR',
    'DBF_TABLE_FLAG_CDX', 'DBF_TABLE_FLAG_MEMO', 'DBF_TABLE_FLAG_DBC',
    'read_dbf_header', 'build_dbf_header', 'encode_dbf_header',
    'write_dbf_header', 'patch_dbf_header',
]
