"""
Byte-level codecs for DBF field and header values.

Pure functions converting between raw byte slices and Python values:
little-endian integers, ASCII numerics, YYYYMMDD dates, FoxPro Julian
datetimes, currency, doubles, logicals and the varchar/varbinary length
trailer.
"""

import datetime
import math
import struct
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Optional, Tuple, Union

from dbf_errors import FieldDecodeError, TypeMismatchError, ValueOutOfRangeError


# Constants
VFP_JULIAN_OFFSET = 1721425  # Julian day of 0001-01-01 minus its ordinal (1)
MS_PER_DAY = 86400000
INT32_MIN = -2147483648
INT32_MAX = 2147483647
INT64_MIN = -9223372036854775808
INT64_MAX = 9223372036854775807
CURRENCY_SCALE = 10000

Number = Union[int, float, Decimal]


# Integer helpers
def _pack(fmt: str, value: int) -> bytes:
    try:
        return struct.pack(fmt, value)
    except struct.error as exc:
        raise ValueOutOfRangeError(f"{value} does not fit in format {fmt!r}") from exc


def pack_int16(value: int) -> bytes:
    """Pack a signed 16-bit little-endian integer."""
    return _pack("<h", value)


def pack_int32(value: int) -> bytes:
    """Pack a signed 32-bit little-endian integer."""
    return _pack("<i", value)


def pack_int64(value: int) -> bytes:
    """Pack a signed 64-bit little-endian integer."""
    return _pack("<q", value)


def pack_uint16(value: int) -> bytes:
    return _pack("<H", value)


def pack_uint32(value: int) -> bytes:
    return _pack("<L", value)


def pack_uint16_be(value: int) -> bytes:
    return _pack(">H", value)


def pack_uint32_be(value: int) -> bytes:
    return _pack(">L", value)


def unpack_int16(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from("<h", buf, pos)[0]


def unpack_int32(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from("<i", buf, pos)[0]


def unpack_int64(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from("<q", buf, pos)[0]


def unpack_uint16(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from("<H", buf, pos)[0]


def unpack_uint32(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from("<L", buf, pos)[0]


def unpack_uint16_be(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from(">H", buf, pos)[0]


def unpack_uint32_be(buf: bytes, pos: int = 0) -> int:
    return struct.unpack_from(">L", buf, pos)[0]


def _check_number(value) -> None:
    # bool is an int subclass but never a valid number for a DBF field
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise TypeMismatchError(f"expected a number, got {type(value).__name__}")
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        raise ValueOutOfRangeError(f"{value} cannot be stored")
    if isinstance(value, Decimal) and not value.is_finite():
        raise ValueOutOfRangeError(f"{value} cannot be stored")


# ASCII numerics (N, F)
def parse_numeric(raw: bytes, decimals: int) -> Optional[Number]:
    """
    Decode an ASCII numeric field.

    Args:
        raw: Field bytes (right-justified digits padded with spaces)
        decimals: Declared number of decimal places

    Returns:
        int when decimals is 0, float otherwise, or None for a blank
        (or '*'-filled overflow) field
    """
    text = raw.replace(b'\x00', b'').strip().decode('ascii', errors='replace')
    if not text or text.startswith('*'):
        return None
    try:
        if decimals == 0 and '.' not in text:
            return int(text)
        return float(text)
    except ValueError as exc:
        raise FieldDecodeError(f"invalid numeric value {text!r}") from exc


def format_numeric(value: Optional[Number], length: int, decimals: int) -> bytes:
    """
    Encode a number as a right-justified ASCII field.

    The integer part may use at most length - decimals - 1 digits; one
    column is always reserved (for the sign, or for the decimal point).

    Args:
        value: Number to encode, or None for a blank field
        length: Field length in bytes
        decimals: Number of decimal places

    Returns:
        Exactly `length` ASCII bytes
    """
    if value is None:
        return b' ' * length
    _check_number(value)
    if isinstance(value, int):
        value = Decimal(value)
    limit = 10 ** (length - decimals - 1)
    if abs(value) >= limit:
        raise ValueOutOfRangeError(f"{value} does not fit in N({length},{decimals})")
    text = format(value, f">{length}.{decimals}f")
    if len(text) > length:
        raise ValueOutOfRangeError(f"{value} does not fit in N({length},{decimals})")
    return text.encode('ascii')


# Dates (D)
def parse_date(raw: bytes) -> Optional[datetime.date]:
    """Decode a YYYYMMDD date; a blank or zero-filled field is None."""
    text = raw.replace(b'\x00', b' ').strip()
    if not text or text == b'00000000':
        return None
    if len(text) != 8 or not text.isdigit():
        raise FieldDecodeError(f"invalid date value {raw!r}")
    try:
        return datetime.date(int(text[0:4]), int(text[4:6]), int(text[6:8]))
    except ValueError as exc:
        raise FieldDecodeError(f"invalid date value {raw!r}") from exc


def format_date(value: Optional[datetime.date]) -> bytes:
    """Encode a date as YYYYMMDD; None becomes eight spaces."""
    if value is None:
        return b' ' * 8
    if not isinstance(value, datetime.date):
        raise TypeMismatchError(f"expected a date, got {type(value).__name__}")
    return f"{value.year:04d}{value.month:02d}{value.day:02d}".encode('ascii')


# Julian day helpers
def julian_day(value: datetime.date) -> int:
    """Return the Julian day number of a date."""
    return value.toordinal() + VFP_JULIAN_OFFSET


def from_julian_day(day: int) -> datetime.date:
    """Return the date for a Julian day number."""
    ordinal = day - VFP_JULIAN_OFFSET
    if ordinal < 1:
        raise ValueError(f"Julian day {day} is before 0001-01-01")
    return datetime.date.fromordinal(ordinal)


# DateTime (T)
def parse_datetime(raw: bytes) -> Optional[datetime.datetime]:
    """
    Decode a FoxPro datetime: Julian day and milliseconds since midnight,
    both little-endian int32. Julian day 0 is the empty datetime.
    """
    day = unpack_int32(raw, 0)
    if day == 0:
        return None
    millis = unpack_int32(raw, 4)
    if not 0 <= millis < MS_PER_DAY:
        raise FieldDecodeError(f"invalid time of day {millis} ms")
    try:
        date = from_julian_day(day)
    except (ValueError, OverflowError) as exc:
        raise FieldDecodeError(f"invalid Julian day {day}") from exc
    seconds, ms = divmod(millis, 1000)
    hours, seconds = divmod(seconds, 3600)
    minutes, seconds = divmod(seconds, 60)
    return datetime.datetime(date.year, date.month, date.day,
                             hours, minutes, seconds, ms * 1000)


def format_datetime(value: Optional[datetime.date]) -> bytes:
    """Encode a datetime (or date, at midnight); None becomes eight NULs."""
    if value is None:
        return b'\x00' * 8
    if not isinstance(value, datetime.date):
        raise TypeMismatchError(f"expected a datetime, got {type(value).__name__}")
    if isinstance(value, datetime.datetime):
        millis = ((value.hour * 3600 + value.minute * 60 + value.second) * 1000
                  + value.microsecond // 1000)
    else:
        millis = 0
    return pack_int32(julian_day(value)) + pack_int32(millis)


# Logical (L)
def parse_logical(raw: bytes) -> Optional[bool]:
    """Decode a logical byte; '?', space and NUL are indeterminate (None)."""
    flag = raw[:1]
    if flag in (b'T', b't', b'Y', b'y'):
        return True
    if flag in (b'F', b'f', b'N', b'n'):
        return False
    if flag in (b'?', b' ', b'\x00', b''):
        return None
    raise FieldDecodeError(f"invalid logical value {flag!r}")


def format_logical(value: Optional[bool]) -> bytes:
    if value is None:
        return b'?'
    if not isinstance(value, bool):
        raise TypeMismatchError(f"expected a bool, got {type(value).__name__}")
    return b'T' if value else b'F'


# Currency (Y)
def parse_currency(raw: bytes) -> Decimal:
    """Decode an int64 scaled by 10,000 into a Decimal with four places."""
    return Decimal(unpack_int64(raw)).scaleb(-4)


def format_currency(value: Optional[Number]) -> bytes:
    if value is None:
        return b'\x00' * 8
    _check_number(value)
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
        scaled = int((amount * CURRENCY_SCALE).to_integral_value(rounding=ROUND_HALF_UP))
    except InvalidOperation as exc:
        raise ValueOutOfRangeError(f"{value} cannot be stored as currency") from exc
    if not INT64_MIN <= scaled <= INT64_MAX:
        raise ValueOutOfRangeError(f"{value} is out of currency range")
    return pack_int64(scaled)


# Double (B)
def parse_double(raw: bytes) -> float:
    return struct.unpack("<d", raw)[0]


def format_double(value: Optional[Number]) -> bytes:
    if value is None:
        return b'\x00' * 8
    _check_number(value)
    return struct.pack("<d", float(value))


# Integer (I)
def parse_integer(raw: bytes) -> int:
    return unpack_int32(raw)


def format_integer(value: Optional[Number]) -> bytes:
    if value is None:
        return b'\x00' * 4
    _check_number(value)
    if not isinstance(value, int):
        if value != int(value):
            raise TypeMismatchError(f"{value} is not an integer")
        value = int(value)
    if not INT32_MIN <= value <= INT32_MAX:
        raise ValueOutOfRangeError(
            f"Integer size exceeded. Possible: {INT32_MIN}..{INT32_MAX}. Attempted: {value}")
    return pack_int32(value)


# Varchar / varbinary (V, Q)
def split_varlength(raw: bytes, has_trailer: Optional[bool] = None) -> bytes:
    """
    Return the used part of a varchar/varbinary slot.

    Args:
        raw: The whole field slot
        has_trailer: True/False when a _NullFlags varlength bit says whether
            the slot ends in a length trailer; None to infer it from the
            trailer byte itself (a trailer >= length means fully used)

    Returns:
        The value bytes without padding or trailer
    """
    if not raw:
        return b''
    length = len(raw)
    used = raw[-1]
    if has_trailer is None:
        if used >= length:
            return bytes(raw)
        return bytes(raw[:used])
    if not has_trailer:
        return bytes(raw)
    if used > length - 1:
        raise FieldDecodeError(f"varlength trailer {used} exceeds field length {length}")
    return bytes(raw[:used])


def join_varlength(data: bytes, length: int, flagged: bool) -> Tuple[bytes, bool]:
    """
    Build a varchar/varbinary slot.

    Args:
        data: Value bytes
        length: Field length in bytes
        flagged: True when a _NullFlags varlength bit will record whether the
            trailer is present, so a value may fill the whole slot

    Returns:
        Tuple of (slot bytes, trailer_present)
    """
    capacity = length if flagged else length - 1
    if len(data) > capacity:
        raise ValueOutOfRangeError(f"value of {len(data)} bytes exceeds capacity {capacity}")
    if flagged and len(data) == length:
        return bytes(data), False
    slot = bytes(data) + b'\x00' * (length - 1 - len(data)) + bytes([len(data)])
    return slot, True


__all__ = [
    'VFP_JULIAN_OFFSET',
    'pack_int16', 'pack_int32', 'pack_int64', 'pack_uint16', 'pack_uint32',
    'pack_uint16_be', 'pack_uint32_be',
    'unpack_int16', 'unpack_int32', 'unpack_int64', 'unpack_uint16', 'unpack_uint32',
    'unpack_uint16_be', 'unpack_uint32_be',
    'parse_numeric', 'format_numeric', 'parse_date', 'format_date',
    'julian_day', 'from_julian_day', 'parse_datetime', 'format_datetime',
    'parse_logical', 'format_logical', 'parse_currency', 'format_currency',
    'parse_double', 'format_double', 'parse_integer', 'format_integer',
    'split_varlength', 'join_varlength',
]
