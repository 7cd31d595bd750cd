"""
Record codec and the typed row/field views over a record buffer.

RecordCodec converts a column slot of a record buffer to and from a Python
value, dispatching on the column type code. Row and Field wrap a private
copy of one record; assignments change only that copy until the row is
handed back to DBFTable.write_row().
"""

import datetime
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, List, Tuple

from dbf_codec import (
    format_currency, format_date, format_datetime, format_double, format_integer,
    format_logical, format_numeric, join_varlength, pack_uint32, parse_currency,
    parse_date, parse_datetime, parse_double, parse_integer, parse_logical,
    parse_numeric, split_varlength, unpack_uint32,
)
from dbf_columns import ColumnModel, DBFColumn, MEMO_TYPES, VARLENGTH_TYPES
from dbf_errors import (
    DBFError, FieldDecodeError, TypeMismatchError, ValueOutOfRangeError,
)
from dbf_memo import MEMO_OBJECT, MEMO_PICTURE, MEMO_TEXT


# Constants
DBF_RECORD_LIVE = 0x20
DBF_RECORD_DELETED = 0x2A

MEMO_KINDS = {'M': MEMO_TEXT, 'G': MEMO_OBJECT, 'P': MEMO_PICTURE}

_MISSING = object()


@dataclass(frozen=True)
class MemoPointer:
    """Reference from a record to a memo block; block 0 means no value."""
    block: int
    kind: int = MEMO_TEXT

    def __bool__(self) -> bool:
        return self.block != 0


class RecordCodec:
    """
    Pack and unpack column slots of a record buffer.

    Args:
        model: Column model of the table
        encoding: Codec for character data
        trim_spaces: Strip trailing spaces from C fields when reading
        binary_memo_pointer: Memo pointers are u32 LE (FoxPro) instead of
            10 ASCII digits (dBase)
    """

    def __init__(self, model: ColumnModel, encoding: str = 'cp1252',
                 trim_spaces: bool = True, binary_memo_pointer: bool = False):
        self.model = model
        self.encoding = encoding
        self.trim_spaces = trim_spaces
        self.binary_memo_pointer = binary_memo_pointer
        self._unpackers: Dict[str, Callable[[bytes, DBFColumn], Any]] = {
            'C': self._unpack_character,
            'N': self._unpack_numeric,
            'F': self._unpack_numeric,
            'D': lambda raw, column: parse_date(raw),
            'L': lambda raw, column: parse_logical(raw),
            'M': self._unpack_memo,
            'G': self._unpack_memo,
            'P': self._unpack_memo,
            'I': lambda raw, column: parse_integer(raw),
            'Y': lambda raw, column: parse_currency(raw),
            'T': lambda raw, column: parse_datetime(raw),
            'B': lambda raw, column: parse_double(raw),
        }
        self._packers: Dict[str, Callable[[Any, DBFColumn], bytes]] = {
            'C': self._pack_character,
            'N': lambda value, column: format_numeric(value, column.length, column.decimals),
            'F': lambda value, column: format_numeric(value, column.length, column.decimals),
            'D': lambda value, column: format_date(value),
            'L': lambda value, column: format_logical(value),
            'M': self._pack_memo,
            'G': self._pack_memo,
            'P': self._pack_memo,
            'I': lambda value, column: format_integer(value),
            'Y': lambda value, column: format_currency(value),
            'T': lambda value, column: format_datetime(value),
            'B': lambda value, column: format_double(value),
        }

    # Null bitmap
    def _bit(self, record: bytes, bit: int) -> bool:
        flags = self.model.null_flags
        return bool(record[flags.offset + bit // 8] & (1 << (bit % 8)))

    def _set_bit(self, record: bytearray, bit: int, value: bool) -> None:
        pos = self.model.null_flags.offset + bit // 8
        if value:
            record[pos] |= 1 << (bit % 8)
        else:
            record[pos] &= ~(1 << (bit % 8)) & 0xFF

    def is_null(self, record: bytes, column: DBFColumn) -> bool:
        return column.null_bit is not None and self._bit(record, column.null_bit)

    # Unpack
    def unpack(self, record: bytes, column: DBFColumn) -> Any:
        """
        Decode one column of a record.

        Returns:
            The typed value, None for null/blank, or a MemoPointer for memo columns
        """
        if self.is_null(record, column):
            return None
        raw = record[column.offset:column.offset + column.length]
        try:
            if column.field_type in VARLENGTH_TYPES:
                return self._unpack_varlength(record, raw, column)
            return self._unpackers[column.field_type](raw, column)
        except FieldDecodeError as exc:
            if exc.column is None:
                exc.column = column.name
            raise
        except KeyError:
            raise FieldDecodeError(f"no decoder for field type {column.field_type!r}",
                                   column=column.name) from None

    def _unpack_character(self, raw: bytes, column: DBFColumn) -> str:
        try:
            text = raw.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise FieldDecodeError(f"cannot decode {raw!r} as {self.encoding}") from exc
        if self.trim_spaces:
            text = text.rstrip(' ')
        return text

    def _unpack_numeric(self, raw: bytes, column: DBFColumn):
        value = parse_numeric(raw, column.decimals)
        if value is None and self.model.null_flags is not None and column.null_bit is None:
            # with a _NullFlags bitmap a blank non-nullable number is zero
            if not raw.replace(b'\x00', b'').strip():
                return 0.0 if column.decimals else 0
        return value

    def _unpack_memo(self, raw: bytes, column: DBFColumn) -> MemoPointer:
        kind = MEMO_KINDS[column.field_type]
        if len(raw) == 4 and self.binary_memo_pointer:
            return MemoPointer(unpack_uint32(raw), kind)
        text = raw.replace(b'\x00', b' ').strip()
        if not text:
            return MemoPointer(0, kind)
        if not text.isdigit():
            raise FieldDecodeError(f"invalid memo block number {raw!r}")
        return MemoPointer(int(text), kind)

    def _unpack_varlength(self, record: bytes, raw: bytes, column: DBFColumn):
        has_trailer = None
        if column.varlength_bit is not None:
            has_trailer = self._bit(record, column.varlength_bit)
        data = split_varlength(raw, has_trailer)
        if column.field_type == 'Q' or column.binary:
            return data
        try:
            return data.decode(self.encoding)
        except UnicodeDecodeError as exc:
            raise FieldDecodeError(f"cannot decode {data!r} as {self.encoding}") from exc

    # Pack
    def pack(self, record: bytearray, column: DBFColumn, value: Any) -> None:
        """
        Encode a value into a column of a record buffer.

        The buffer is left untouched when the value is rejected.
        """
        try:
            slot, bits = self._encode(column, value)
        except DBFError as exc:
            if exc.column is None:
                exc.column = column.name
            raise
        record[column.offset:column.offset + column.length] = slot
        for bit, state in bits:
            self._set_bit(record, bit, state)

    def _encode(self, column: DBFColumn, value: Any) -> Tuple[bytes, List[Tuple[int, bool]]]:
        bits = []
        if value is None:
            if column.null_bit is not None:
                bits.append((column.null_bit, True))
                if column.varlength_bit is not None:
                    bits.append((column.varlength_bit, True))
                return self.blank_slot(column), bits
            if column.varlength_bit is not None:
                bits.append((column.varlength_bit, True))
            return self._null_sentinel(column), bits

        if column.null_bit is not None:
            bits.append((column.null_bit, False))
        if column.field_type in VARLENGTH_TYPES:
            slot, trailer = self._pack_varlength(value, column)
            if column.varlength_bit is not None:
                bits.append((column.varlength_bit, trailer))
            return slot, bits
        try:
            packer = self._packers[column.field_type]
        except KeyError:
            raise TypeMismatchError(f"cannot store values in a {column.field_type!r} field") from None
        return packer(value, column), bits

    def _null_sentinel(self, column: DBFColumn) -> bytes:
        field_type = column.field_type
        if field_type in ('I', 'Y', 'B'):
            raise TypeMismatchError(f"{field_type} field {column.name} is not nullable")
        if field_type == 'L':
            return b'?'
        return self.blank_slot(column)

    def _pack_character(self, value: Any, column: DBFColumn) -> bytes:
        if isinstance(value, str):
            try:
                data = value.encode(self.encoding)
            except UnicodeEncodeError as exc:
                raise ValueOutOfRangeError(f"{value!r} cannot be encoded as {self.encoding}") from exc
        elif isinstance(value, (bytes, bytearray)):
            data = bytes(value)
        else:
            raise TypeMismatchError(f"expected a string, got {type(value).__name__}")
        if len(data) > column.length:
            raise ValueOutOfRangeError(
                f"string of {len(data)} bytes exceeds field length {column.length}")
        return data.ljust(column.length, b' ')

    def _pack_memo(self, value: Any, column: DBFColumn) -> bytes:
        if not isinstance(value, MemoPointer):
            raise TypeMismatchError(f"expected a MemoPointer, got {type(value).__name__}")
        return self.memo_pointer_bytes(value.block, column)

    def memo_pointer_bytes(self, block: int, column: DBFColumn) -> bytes:
        if column.length == 4 and self.binary_memo_pointer:
            return pack_uint32(block)
        if block == 0:
            return b' ' * column.length
        text = str(block).rjust(column.length)
        if len(text) > column.length:
            raise ValueOutOfRangeError(f"memo block {block} does not fit in {column.length} digits")
        return text.encode('ascii')

    def _pack_varlength(self, value: Any, column: DBFColumn) -> Tuple[bytes, bool]:
        if isinstance(value, str):
            if column.field_type == 'Q':
                raise TypeMismatchError("expected bytes for a varbinary field, got str")
            try:
                data = value.encode(self.encoding)
            except UnicodeEncodeError as exc:
                raise ValueOutOfRangeError(f"{value!r} cannot be encoded as {self.encoding}") from exc
        elif isinstance(value, (bytes, bytearray)):
            data = bytes(value)
        else:
            raise TypeMismatchError(f"expected str or bytes, got {type(value).__name__}")
        return join_varlength(data, column.length, column.varlength_bit is not None)

    # Blank records
    def blank_slot(self, column: DBFColumn) -> bytes:
        """Empty (null sentinel) fill for a column."""
        field_type = column.field_type
        if field_type in ('C', 'N', 'F', 'D', 'L'):
            return b' ' * column.length
        if field_type in MEMO_TYPES:
            return self.memo_pointer_bytes(0, column)
        if field_type in VARLENGTH_TYPES:
            return b'\x00' * column.length
        return b'\x00' * column.length

    def initial_slot(self, column: DBFColumn) -> bytes:
        """Fill for a column of a new record: ASCII zero for numbers, else blank."""
        if column.field_type in ('N', 'F'):
            text = format(0, f">{column.length}.{column.decimals}f")
            if len(text) > column.length:
                text = '0'.rjust(column.length)
            return text.encode('ascii')
        return self.blank_slot(column)

    def blank_record(self) -> bytearray:
        record = bytearray(self.model.record_length())
        record[0] = DBF_RECORD_LIVE
        for column in self.model:
            record[column.offset:column.offset + column.length] = self.initial_slot(column)
            if column.varlength_bit is not None:
                # empty value with a zero length trailer
                self._set_bit(record, column.varlength_bit, True)
        return record


class Field:
    """Typed view of one column of a Row."""

    def __init__(self, row: 'Row', column: DBFColumn):
        self.row = row
        self.column = column

    @property
    def name(self) -> str:
        return self.column.name

    @property
    def type(self) -> str:
        return self.column.field_type

    def __repr__(self) -> str:
        return f"Field({self.name!r}, {self.type!r})"

    def raw(self) -> bytes:
        """The slot bytes as stored in the row buffer."""
        return bytes(self.row.buffer[self.column.offset:self.column.offset + self.column.length])

    def memo_pointer(self) -> MemoPointer:
        if not self.column.is_memo:
            raise TypeMismatchError(f"{self.type} field is not a memo", column=self.name)
        value = self.row.codec.unpack(self.row.buffer, self.column)
        return value if value is not None else MemoPointer(0, MEMO_KINDS[self.type])

    def _decode_memo(self, data: bytes):
        if self.type == 'M' and not self.column.binary:
            try:
                return data.decode(self.row.codec.encoding)
            except UnicodeDecodeError as exc:
                raise FieldDecodeError(f"cannot decode memo as {self.row.codec.encoding}",
                                       record=self.row.position, column=self.name) from exc
        return data

    def get(self) -> Any:
        """Return the decoded value; memo fields are resolved through the memo file."""
        pending = self.row.pending_memos.get(self.name)
        if pending is not None:
            return self._decode_memo(pending[0])
        try:
            value = self.row.codec.unpack(self.row.buffer, self.column)
        except DBFError as exc:
            if exc.record is None:
                exc.record = self.row.position
            raise
        if isinstance(value, MemoPointer):
            if not value:
                return None
            block = self.row.table.read_memo(value, self.row.position, self.name)
            return self._decode_memo(block.data) if block is not None else None
        return value

    def is_null(self) -> bool:
        if self.name in self.row.pending_memos:
            return False
        value = self.row.codec.unpack(self.row.buffer, self.column)
        if isinstance(value, MemoPointer):
            return not value
        return value is None

    def get_string(self) -> str:
        value = self.get()
        if value is None:
            return ''
        if isinstance(value, bytes):
            return value.decode(self.row.codec.encoding, errors='replace')
        return str(value)

    def get_int(self) -> int:
        value = self.get()
        return 0 if value is None else int(value)

    def get_float(self) -> float:
        value = self.get()
        return 0.0 if value is None else float(value)

    def get_bool(self) -> bool:
        return bool(self.get())

    def set(self, value: Any) -> None:
        """
        Assign a value to the row buffer.

        Assigning a value equal to the current one leaves the bytes as they are.
        Memo payloads (str or bytes) are queued and written by write_row().
        """
        row = self.row
        if self.column.is_memo and not isinstance(value, MemoPointer) and value is not None:
            self._set_memo_payload(value)
            return
        row.pending_memos.pop(self.name, None)

        scratch = bytearray(row.buffer)
        try:
            row.codec.pack(scratch, self.column, value)
        except DBFError as exc:
            if exc.record is None:
                exc.record = row.position
            raise
        if scratch == row.buffer:
            return
        try:
            old = row.codec.unpack(row.buffer, self.column)
        except DBFError:
            old = _MISSING
        new = row.codec.unpack(scratch, self.column)
        same_null = row.codec.is_null(row.buffer, self.column) == row.codec.is_null(scratch, self.column)
        if old is not _MISSING and type(old) is type(new) and old == new and same_null:
            return
        row.buffer[:] = scratch

    def _set_memo_payload(self, value: Any) -> None:
        if isinstance(value, str):
            if self.type != 'M':
                raise TypeMismatchError(f"expected bytes for a {self.type} memo", column=self.name)
            try:
                data = value.encode(self.row.codec.encoding)
            except UnicodeEncodeError as exc:
                raise ValueOutOfRangeError(f"memo text cannot be encoded as {self.row.codec.encoding}",
                                           record=self.row.position, column=self.name) from exc
        elif isinstance(value, (bytes, bytearray)):
            data = bytes(value)
        else:
            raise TypeMismatchError(f"expected str or bytes, got {type(value).__name__}",
                                    record=self.row.position, column=self.name)
        try:
            current = self.get()
        except DBFError:
            current = _MISSING
        if current is not _MISSING and current == (value if isinstance(value, str) else data):
            return
        self.row.pending_memos[self.name] = (data, MEMO_KINDS[self.type])

    def set_string(self, value: str) -> None:
        if not isinstance(value, str):
            raise TypeMismatchError(f"expected a string, got {type(value).__name__}", column=self.name)
        self.set(value)

    def set_int(self, value: int) -> None:
        if isinstance(value, bool) or not isinstance(value, int):
            raise TypeMismatchError(f"expected an int, got {type(value).__name__}", column=self.name)
        if self.type in ('N', 'F') and self.column.decimals:
            self.set(float(value))
        else:
            self.set(value)

    def set_float(self, value: float) -> None:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise TypeMismatchError(f"expected a float, got {type(value).__name__}", column=self.name)
        self.set(float(value))

    def set_decimal(self, value: Decimal) -> None:
        if not isinstance(value, Decimal):
            raise TypeMismatchError(f"expected a Decimal, got {type(value).__name__}", column=self.name)
        self.set(value)

    def set_bool(self, value: bool) -> None:
        if not isinstance(value, bool):
            raise TypeMismatchError(f"expected a bool, got {type(value).__name__}", column=self.name)
        self.set(value)

    def set_date(self, value: datetime.date) -> None:
        if isinstance(value, datetime.datetime):
            value = value.date()
        if not isinstance(value, datetime.date):
            raise TypeMismatchError(f"expected a date, got {type(value).__name__}", column=self.name)
        self.set(value)

    def set_datetime(self, value: datetime.datetime) -> None:
        if not isinstance(value, datetime.date):
            raise TypeMismatchError(f"expected a datetime, got {type(value).__name__}", column=self.name)
        self.set(value)

    def set_bytes(self, value: bytes) -> None:
        if not isinstance(value, (bytes, bytearray)):
            raise TypeMismatchError(f"expected bytes, got {type(value).__name__}", column=self.name)
        self.set(bytes(value))

    def set_null(self) -> None:
        self.set(None)


class Row:
    """
    A private copy of one record plus its 1-based position in the table.

    Changes become visible to the table only through DBFTable.write_row().
    """

    def __init__(self, table, position: int, buffer: bytearray):
        self.table = table
        self.position = position
        self.buffer = buffer
        self.pending_memos: Dict[str, Tuple[bytes, int]] = {}

    @property
    def codec(self) -> RecordCodec:
        return self.table.codec

    @property
    def model(self) -> ColumnModel:
        return self.table.codec.model

    @property
    def deleted(self) -> bool:
        return self.buffer[0] == DBF_RECORD_DELETED

    @property
    def record(self) -> bytes:
        return bytes(self.buffer)

    def field(self, index: int) -> Field:
        """Field by 0-based column index."""
        return Field(self, self.model.by_index(index))

    def field_by_name(self, name: str) -> Field:
        return Field(self, self.model.by_name(name))

    def fields(self) -> List[Field]:
        return [Field(self, column) for column in self.model]

    def field_count(self) -> int:
        return len(self.model)

    def values(self) -> List[Any]:
        return [f.get() for f in self.fields()]

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: f.get() for f in self.fields()}

    def _field(self, key) -> Field:
        if isinstance(key, int) and not isinstance(key, bool):
            return self.field(key)
        if isinstance(key, str):
            return self.field_by_name(key)
        raise TypeError(f"row keys are column names or indexes, not {type(key).__name__}")

    def __getitem__(self, key):
        return self._field(key).get()

    def __setitem__(self, key, value) -> None:
        self._field(key).set(value)

    def __repr__(self) -> str:
        flag = ' deleted' if self.deleted else ''
        return f"<Row {self.position}{flag}>"


__all__ = [
    'RecordCodec', 'Row', 'Field', 'MemoPointer',
    'DBF_RECORD_LIVE', 'DBF_RECORD_DELETED', 'MEMO_KINDS',
]
