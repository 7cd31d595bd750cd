"""
Column model and dialect policy for DBF tables.

A dialect is an immutable value describing one variant of the format:
which field types are legal, which version bytes identify it, how memo
pointers are stored and which memo file layout goes with it.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, Iterator, List, Optional, Tuple

from dbf_errors import (
    ColumnNotFoundError, DuplicateColumnNameError, FieldSpecError,
    MalformedHeaderError, UnsupportedFieldTypeError,
)


# Constants
DBF_MAX_NAME_LEN = 10
DBF_MAX_FIELD_LEN = 255
DBF_MAX_NUMERIC_LEN = 20

DBF_LANG_US = 0x01
DBF_LANG_WESTERN_EUROPE = 0x02
DBF_LANG_WINDOWS_ANSI = 0x03
DBF_LANG_JAPAN = 0x7B

# Column descriptor flags (byte 18)
DBF_FLAG_SYSTEM = 0x01
DBF_FLAG_NULLABLE = 0x02
DBF_FLAG_BINARY = 0x04
DBF_FLAG_AUTOINCREMENT = 0x0C

NULL_FLAGS_NAME = "_NullFlags"
NULL_FLAGS_TYPE = "0"

MEMO_TYPES = frozenset("MGP")
VARLENGTH_TYPES = frozenset("VQ")
NUMERIC_TYPES = frozenset("NF")

# Types whose slot length is fixed by the format
FIXED_LENGTHS = {'D': 8, 'L': 1, 'I': 4, 'Y': 8, 'T': 8, 'B': 8}

# Language driver byte -> Python codec
DBF_CODE_PAGES = {
    0x00: 'cp437',    # no driver recorded; DOS code page
    0x01: 'cp437',    # U.S. MS-DOS
    0x02: 'cp850',    # International MS-DOS
    0x03: 'cp1252',   # Windows ANSI
    0x04: 'mac_roman',
    0x08: 'cp865',
    0x13: 'cp932',
    0x1F: 'cp852',
    0x26: 'cp866',
    0x57: 'cp1252',
    0x58: 'cp1252',
    0x59: 'cp1252',
    0x64: 'cp852',
    0x65: 'cp866',
    0x7A: 'cp936',
    0x7B: 'cp932',
    0x7D: 'cp1255',
    0x7E: 'cp1256',
    0xC8: 'cp1250',
    0xC9: 'cp1251',
    0xCA: 'cp1254',
    0xCB: 'cp1253',
}


def code_page(language_driver: int) -> str:
    """Return the Python codec for a language driver byte (cp1252 if unknown)."""
    return DBF_CODE_PAGES.get(language_driver, 'cp1252')


@dataclass(frozen=True)
class DBFDialect:
    """Capability table for one DBF variant."""
    name: str
    version: int                 # version byte without memo
    memo_version: int            # version byte with memo
    field_types: FrozenSet[str]
    memo_format: str             # 'dbt3', 'dbt4' or 'fpt'
    binary_memo_pointer: bool = False
    backlink: bool = False       # 263-byte DBC backlink after the terminator
    autoincrement: bool = False
    null_flags: bool = False
    default_language_driver: int = 0
    aliases: Tuple[int, ...] = ()

    def supports(self, field_type: str) -> bool:
        return field_type in self.field_types

    def version_byte(self, has_memo: bool) -> int:
        return self.memo_version if has_memo else self.version

    @property
    def memo_extension(self) -> str:
        return '.FPT' if self.memo_format == 'fpt' else '.DBT'

    @property
    def is_foxpro(self) -> bool:
        return self.memo_format == 'fpt'

    def memo_pointer_length(self) -> int:
        return 4 if self.binary_memo_pointer else 10

    def __str__(self) -> str:
        return self.name


DBASE3 = DBFDialect(
    name="dBase III", version=0x03, memo_version=0x83,
    field_types=frozenset("CNLDM"), memo_format='dbt3',
)
DBASE4 = DBFDialect(
    name="dBase IV", version=0x04, memo_version=0x8B,
    field_types=frozenset("CNFLDM"), memo_format='dbt4',
    default_language_driver=DBF_LANG_US,
)
DBASE5 = DBFDialect(
    name="dBase 5", version=0x05, memo_version=0x05,
    field_types=frozenset("CNFLDMG"), memo_format='dbt4',
    default_language_driver=DBF_LANG_US,
)
FOXPRO = DBFDialect(
    name="Visual FoxPro", version=0x30, memo_version=0x30,
    field_types=frozenset("CNFLDMGPIYTBVQ0"), memo_format='fpt',
    binary_memo_pointer=True, backlink=True, null_flags=True,
    default_language_driver=DBF_LANG_WINDOWS_ANSI, aliases=(0x32,),
)
FOXPRO_AUTOINCREMENT = DBFDialect(
    name="Visual FoxPro autoincrement", version=0x31, memo_version=0x31,
    field_types=frozenset("CNFLDMGPIYTBVQ0"), memo_format='fpt',
    binary_memo_pointer=True, backlink=True, autoincrement=True, null_flags=True,
    default_language_driver=DBF_LANG_WINDOWS_ANSI,
)

DBF_DIALECTS = (DBASE3, DBASE4, DBASE5, FOXPRO, FOXPRO_AUTOINCREMENT)


def dialect_for_version(version: int) -> DBFDialect:
    """
    Detect the dialect from a header version byte.

    Args:
        version: Byte 0 of the table header

    Returns:
        The matching DBFDialect
    """
    for dialect in DBF_DIALECTS:
        if version in (dialect.version, dialect.memo_version) or version in dialect.aliases:
            return dialect
    raise MalformedHeaderError(f"unknown DBF version byte 0x{version:02X}")


def dialect_by_name(name: str) -> DBFDialect:
    """Look up a dialect by name, case-insensitively ('dbase3', 'foxpro', ...)."""
    key = re.sub(r'[\s_-]', '', name).lower()
    aliases = {
        'dbase3': DBASE3, 'dbaseiii': DBASE3,
        'dbase4': DBASE4, 'dbaseiv': DBASE4,
        'dbase5': DBASE5, 'dbasev': DBASE5,
        'foxpro': FOXPRO, 'visualfoxpro': FOXPRO, 'vfp': FOXPRO,
        'foxproautoincrement': FOXPRO_AUTOINCREMENT,
        'visualfoxproautoincrement': FOXPRO_AUTOINCREMENT,
        'vfpautoincrement': FOXPRO_AUTOINCREMENT,
    }
    if key not in aliases:
        raise ValueError(f"unknown DBF dialect {name!r}")
    return aliases[key]


# Data structures
@dataclass
class DBFColumn:
    """Represents a column/field in a DBF file."""
    name: str  # Field name (max 10 chars, upper-case)
    field_type: str  # 'C', 'N', 'L', etc.
    length: int  # Field length in bytes
    decimals: int = 0  # Number of decimal places (for numeric)
    offset: int = 0  # offset within record; first field starts at 1
    flags: int = 0  # descriptor byte 18
    autoinc_next: int = 0  # FoxPro autoincrement next value
    autoinc_step: int = 0  # FoxPro autoincrement step
    descriptor: bytes = field(default=b'', repr=False)  # raw 32 bytes as read
    null_bit: Optional[int] = field(default=None, repr=False)
    varlength_bit: Optional[int] = field(default=None, repr=False)

    @property
    def is_system(self) -> bool:
        return bool(self.flags & DBF_FLAG_SYSTEM) or self.field_type == NULL_FLAGS_TYPE

    @property
    def nullable(self) -> bool:
        return bool(self.flags & DBF_FLAG_NULLABLE)

    @property
    def binary(self) -> bool:
        return bool(self.flags & DBF_FLAG_BINARY)

    @property
    def autoincrement(self) -> bool:
        return self.flags & DBF_FLAG_AUTOINCREMENT == DBF_FLAG_AUTOINCREMENT

    @property
    def is_memo(self) -> bool:
        return self.field_type in MEMO_TYPES

    @property
    def spec(self) -> str:
        return build_field_spec(self)


def build_field_spec(column: DBFColumn) -> str:
    """
    Build a field specification string (e.g., 'C(30)' or 'N(10,2)').

    Args:
        column: The column definition

    Returns:
        Field specification string
    """
    spec = f"{column.field_type}({column.length}"
    if column.decimals > 0:
        spec += f",{column.decimals}"
    spec += ")"
    return spec


def parse_field_spec(spec: str) -> Tuple[str, int, int]:
    """
    Parse a field specification string.

    Fixed-length types may omit the parentheses ('D', 'I', 'T', ...).

    Args:
        spec: Field specification string (e.g., 'C(30)' or 'N(10,2)')

    Returns:
        Tuple of (field_type, length, decimals)
    """
    spec = spec.strip()
    match = re.fullmatch(r'([A-Za-z0])\s*(?:\(\s*(\d+)\s*(?:,\s*(\d+)\s*)?\))?', spec)
    if not match:
        raise FieldSpecError(f"invalid field spec {spec!r}")
    field_type = match.group(1).upper()
    if match.group(2) is None:
        if field_type not in FIXED_LENGTHS and field_type not in MEMO_TYPES:
            raise FieldSpecError(f"field spec {spec!r} needs a length")
        # memo pointer length is settled by the dialect at create time
        length = FIXED_LENGTHS.get(field_type, 10)
    else:
        length = int(match.group(2))
    decimals = int(match.group(3) or 0)

    if length <= 0 or length > DBF_MAX_FIELD_LEN:
        raise FieldSpecError(f"field length {length} out of range in {spec!r}")
    if decimals and decimals >= length:
        raise FieldSpecError(f"decimals must be smaller than length in {spec!r}")

    return (field_type, length, decimals)


def parse_column_spec(spec: str) -> DBFColumn:
    """
    Parse a column definition such as 'AGE N(3,0)' or 'NOTES M NULL'.

    Recognized trailing keywords: NULL, BINARY, AUTOINC.
    """
    parts = spec.split()
    if len(parts) < 2:
        raise FieldSpecError(f"invalid column spec {spec!r}")
    name = parts[0]
    keywords = []
    type_parts = []
    for part in parts[1:]:
        if part.upper() in ('NULL', 'BINARY', 'AUTOINC'):
            keywords.append(part.upper())
        else:
            type_parts.append(part)
    field_type, length, decimals = parse_field_spec(''.join(type_parts))
    flags = 0
    if 'NULL' in keywords:
        flags |= DBF_FLAG_NULLABLE
    if 'BINARY' in keywords:
        flags |= DBF_FLAG_BINARY
    if 'AUTOINC' in keywords:
        flags |= DBF_FLAG_AUTOINCREMENT
    column = DBFColumn(name=name.upper(), field_type=field_type, length=length,
                       decimals=decimals, flags=flags)
    if column.autoincrement:
        column.autoinc_next = 1
        column.autoinc_step = 1
    return column


def prepare_new_columns(columns: List[DBFColumn], dialect: DBFDialect) -> List[DBFColumn]:
    """
    Validate and normalize columns for a table about to be created.

    Names are upper-cased, fixed-length types get their format length and
    every type is checked against the dialect.

    Returns:
        New DBFColumn objects (the caller's objects are not modified)
    """
    prepared = []
    seen = set()
    for column in columns:
        name = column.name.upper()
        try:
            encoded = name.encode('ascii')
        except UnicodeEncodeError as exc:
            raise FieldSpecError(f"column name {column.name!r} is not ASCII") from exc
        if not encoded or len(encoded) > DBF_MAX_NAME_LEN:
            raise FieldSpecError(f"column name {column.name!r} must be 1-{DBF_MAX_NAME_LEN} bytes")
        if name in seen:
            raise DuplicateColumnNameError(f"duplicate column name {name}", column=name)
        seen.add(name)

        field_type = column.field_type.upper()
        if field_type == NULL_FLAGS_TYPE or not dialect.supports(field_type):
            raise UnsupportedFieldTypeError(
                f"field type {field_type!r} is not supported by {dialect.name}", column=name)

        length = column.length
        decimals = column.decimals
        if field_type in FIXED_LENGTHS:
            length = FIXED_LENGTHS[field_type]
        elif field_type in MEMO_TYPES:
            length = dialect.memo_pointer_length()
        if length <= 0 or length > DBF_MAX_FIELD_LEN:
            raise FieldSpecError(f"field length {length} out of range", column=name)
        if field_type in NUMERIC_TYPES:
            if length > DBF_MAX_NUMERIC_LEN:
                raise FieldSpecError(f"numeric length {length} exceeds {DBF_MAX_NUMERIC_LEN}",
                                     column=name)
            if decimals and decimals >= length - 1:
                raise FieldSpecError(f"N({length},{decimals}) leaves no integer digits", column=name)
        elif field_type != 'B':
            decimals = 0

        flags = column.flags
        if not dialect.null_flags:
            flags = 0
        if column.autoincrement and not (dialect.autoincrement and field_type == 'I'):
            raise UnsupportedFieldTypeError(
                f"autoincrement requires an I column in {FOXPRO_AUTOINCREMENT.name}", column=name)

        prepared.append(DBFColumn(
            name=name, field_type=field_type, length=length, decimals=decimals,
            flags=flags, autoinc_next=column.autoinc_next, autoinc_step=column.autoinc_step,
        ))
    return prepared


def needs_null_flags(columns: List[DBFColumn]) -> int:
    """Return the number of _NullFlags bits the columns require."""
    bits = 0
    for column in columns:
        if column.field_type in VARLENGTH_TYPES:
            bits += 1
        if column.nullable:
            bits += 1
    return bits


class ColumnModel:
    """
    Ordered, immutable description of a table's columns.

    System columns (_NullFlags) take part in the record layout but are not
    exposed through by_index(), by_name() or iteration.
    """

    def __init__(self, columns: List[DBFColumn]):
        self._all = list(columns)
        self._columns: List[DBFColumn] = []
        self._by_name: Dict[str, int] = {}
        self.null_flags: Optional[DBFColumn] = None

        offset = 1  # First byte is delete flag
        for column in self._all:
            column.offset = offset
            offset += column.length
            if column.field_type == NULL_FLAGS_TYPE:
                self.null_flags = column
                continue
            key = column.name.upper()
            if key in self._by_name:
                raise DuplicateColumnNameError(f"duplicate column name {key}", column=key)
            self._by_name[key] = len(self._columns)
            self._columns.append(column)
        self._record_length = offset

        bit = 0
        for column in self._columns:
            column.null_bit = None
            column.varlength_bit = None
            if self.null_flags is None:
                continue
            if column.field_type in VARLENGTH_TYPES:
                column.varlength_bit = bit
                bit += 1
            if column.nullable:
                column.null_bit = bit
                bit += 1
        if self.null_flags is not None and bit > self.null_flags.length * 8:
            raise MalformedHeaderError(
                f"_NullFlags holds {self.null_flags.length * 8} bits, {bit} needed")

    def by_index(self, index: int) -> DBFColumn:
        """Return the column at a 0-based position."""
        if not 0 <= index < len(self._columns):
            raise ColumnNotFoundError(f"column index {index} out of range 0..{len(self._columns) - 1}")
        return self._columns[index]

    def by_name(self, name: str) -> DBFColumn:
        """Return the column with the given name (case-insensitive)."""
        return self._columns[self.index_of(name)]

    def index_of(self, name: str) -> int:
        try:
            return self._by_name[name.upper()]
        except KeyError:
            raise ColumnNotFoundError(f"no column named {name!r}", column=name) from None

    def __contains__(self, name: str) -> bool:
        return isinstance(name, str) and name.upper() in self._by_name

    def iter(self) -> Iterator[DBFColumn]:
        return iter(self._columns)

    __iter__ = iter

    def __len__(self) -> int:
        return len(self._columns)

    def names(self) -> List[str]:
        return [column.name for column in self._columns]

    def all_columns(self) -> List[DBFColumn]:
        """All columns in record order, system columns included."""
        return list(self._all)

    def record_length(self) -> int:
        return self._record_length

    def has_memo(self) -> bool:
        return any(column.is_memo for column in self._columns)


__all__ = [
    'DBFColumn', 'DBFDialect', 'ColumnModel',
    'DBASE3', 'DBASE4', 'DBASE5', 'FOXPRO', 'FOXPRO_AUTOINCREMENT', 'DBF_DIALECTS',
    'DBF_LANG_US', 'DBF_LANG_WESTERN_EUROPE', 'DBF_LANG_WINDOWS_ANSI', 'DBF_LANG_JAPAN',
    'DBF_FLAG_SYSTEM', 'DBF_FLAG_NULLABLE', 'DBF_FLAG_BINARY', 'DBF_FLAG_AUTOINCREMENT',
    'DBF_MAX_NAME_LEN', 'NULL_FLAGS_NAME', 'MEMO_TYPES', 'VARLENGTH_TYPES', 'FIXED_LENGTHS',
    'dialect_for_version', 'dialect_by_name', 'code_page',
    'build_field_spec', 'parse_field_spec', 'parse_column_spec',
    'prepare_new_columns', 'needs_null_flags',
]
