"""
Memo sidecar files (.DBT and .FPT).

Memo fields store a block number; the payload lives in the sidecar file.
Three layouts are supported:

- dBase III .DBT: 512-byte blocks, payload terminated by 0x1A 0x1A,
  block 0 holds the next free block number.
- dBase IV/5 .DBT: every memo starts with FF FF 08 00 and the total length
  (header included) as u32 LE; block size is stored at offset 20.
- FoxPro .FPT: big-endian header (next free block at 0, block size at 6);
  every memo starts with its type and length as u32 BE.

Allocation is append-only. New blocks are buffered until flush().
"""

import logging
import os
from dataclasses import dataclass
from typing import BinaryIO, Dict, Optional

from dbf_codec import (
    pack_uint16, pack_uint16_be, pack_uint32, pack_uint32_be,
    unpack_uint16, unpack_uint16_be, unpack_uint32, unpack_uint32_be,
)
from dbf_errors import MemoCorruptionError, PersistenceError

logger = logging.getLogger("dbf.memo")


# Constants
DBF_MEMO_BLOCK_SIZE = 512
FPT_HEADER_SIZE = 512
DBT_FIELD_TERMINATOR = b'\x1A\x1A'
DBT4_SIGNATURE = b'\xFF\xFF\x08\x00'
MEMO_BLOCK_HEADER_SIZE = 8

MEMO_PICTURE = 0
MEMO_TEXT = 1
MEMO_OBJECT = 2


@dataclass(frozen=True)
class MemoBlock:
    """A memo payload and its kind (0 picture, 1 text, 2 object)."""
    data: bytes
    kind: int = MEMO_TEXT


class MemoFile:
    """Common buffering and block bookkeeping for memo files."""

    extension = ''

    def __init__(self, filename: str, file: BinaryIO, block_size: int,
                 next_free: int, read_only: bool = False):
        self.filename = filename
        self.file = file
        self.block_size = block_size
        self.read_only = read_only
        self._next_free = next_free
        self._disk_next_free = next_free
        self._pending: Dict[int, bytes] = {}
        self._file_size = self._size()

    # Subclass hooks
    def _encode(self, data: bytes, kind: int) -> bytes:
        raise NotImplementedError

    def _decode(self, block: int) -> MemoBlock:
        raise NotImplementedError

    def _header_update(self) -> bytes:
        raise NotImplementedError

    @property
    def first_block(self) -> int:
        return 1

    @property
    def next_free(self) -> int:
        return self._next_free

    @property
    def is_dirty(self) -> bool:
        return bool(self._pending)

    def _size(self) -> int:
        try:
            return os.fstat(self.file.fileno()).st_size
        except OSError as exc:
            raise PersistenceError(f"cannot stat {self.filename}: {exc}") from exc

    def _read_at(self, block: int, offset: int, size: int) -> bytes:
        """Read bytes relative to the start of a block, from buffer or disk."""
        if block in self._pending:
            return self._pending[block][offset:offset + size]
        start = block * self.block_size + offset
        if start + size > self._file_size:
            raise MemoCorruptionError(
                f"memo block {block} overruns {os.path.basename(self.filename)}")
        try:
            self.file.seek(start)
            data = self.file.read(size)
        except OSError as exc:
            raise PersistenceError(f"cannot read {self.filename}: {exc}") from exc
        if len(data) < size:
            raise MemoCorruptionError(f"memo block {block} is truncated")
        return data

    def read(self, block: int) -> Optional[MemoBlock]:
        """
        Read the memo stored at a block.

        Args:
            block: Block number from the record; 0 means no value

        Returns:
            MemoBlock, or None for block 0
        """
        if block == 0:
            return None
        if block < self.first_block or block >= self._next_free:
            raise MemoCorruptionError(
                f"memo block {block} outside {self.first_block}..{self._next_free - 1}")
        return self._decode(block)

    def append(self, data: bytes, kind: int = MEMO_TEXT) -> int:
        """
        Allocate blocks at the end of the file for a new memo.

        Returns:
            Block number of the new memo
        """
        if self.read_only:
            raise PersistenceError(f"{self.filename} is open read-only")
        image = self._encode(bytes(data), kind)
        blocks = max(1, (len(image) + self.block_size - 1) // self.block_size)
        block = self._next_free
        self._pending[block] = image.ljust(blocks * self.block_size, b'\x00')
        self._next_free += blocks
        logger.debug("memo append: block=%d blocks=%d bytes=%d", block, blocks, len(data))
        return block

    def delete(self, block: int) -> None:
        """Release a memo. Space is only reclaimed by packing the table."""

    def flush(self) -> None:
        if not self._pending:
            return
        try:
            for block in sorted(self._pending):
                self.file.seek(block * self.block_size)
                self.file.write(self._pending[block])
            self.file.seek(0)
            self.file.write(self._header_update())
            self.file.flush()
        except OSError as exc:
            raise PersistenceError(f"cannot write {self.filename}: {exc}") from exc
        logger.debug("memo flush: %d memo(s), next free block %d", len(self._pending), self._next_free)
        self._pending.clear()
        self._disk_next_free = self._next_free
        self._file_size = self._size()

    def discard(self) -> None:
        """Drop every block appended since the last flush."""
        self._pending.clear()
        self._next_free = self._disk_next_free

    def close(self) -> None:
        if self.file:
            self.file.close()
            self.file = None


class DBTMemoFile(MemoFile):
    """dBase .DBT memo file, in the dBase III or dBase IV/5 layout."""

    extension = '.DBT'

    def __init__(self, filename: str, file: BinaryIO, block_size: int,
                 next_free: int, version: int = 4, read_only: bool = False):
        self.version = version
        super().__init__(filename, file, block_size, next_free, read_only)

    @classmethod
    def open(cls, filename: str, version: int = 4, read_only: bool = False) -> 'DBTMemoFile':
        file = _open_file(filename, read_only)
        try:
            head = file.read(DBF_MEMO_BLOCK_SIZE)
            if len(head) < 22:
                raise MemoCorruptionError(f"{filename} has no memo header")
            next_free = unpack_uint32(head, 0)
            block_size = DBF_MEMO_BLOCK_SIZE
            if version != 3:
                block_size = unpack_uint16(head, 20) or DBF_MEMO_BLOCK_SIZE
            return cls(filename, file, block_size, next_free, version, read_only)
        except BaseException:
            file.close()
            raise

    @classmethod
    def create(cls, filename: str, version: int = 4, block_size: int = DBF_MEMO_BLOCK_SIZE,
               table_name: str = '') -> 'DBTMemoFile':
        """
        Create an empty .DBT file.

        Args:
            filename: Path of the memo file
            version: 3 for the dBase III layout, 4 for dBase IV/5
            block_size: Block size (always 512 for dBase III)
            table_name: Base name of the owning table, stored by dBase IV/5
        """
        if version == 3:
            block_size = DBF_MEMO_BLOCK_SIZE
        elif block_size < DBF_MEMO_BLOCK_SIZE or block_size % DBF_MEMO_BLOCK_SIZE:
            raise ValueError(f"dBase IV memo block size must be a multiple of 512, got {block_size}")
        buf = bytearray(block_size)
        buf[0:4] = pack_uint32(1)
        if version == 3:
            buf[16] = 0x03
        else:
            name = table_name.upper().encode('ascii', errors='replace')[:8]
            buf[8:8 + len(name)] = name
            buf[20:22] = pack_uint16(block_size)
        _write_new_file(filename, bytes(buf))
        return cls.open(filename, version)

    def _encode(self, data: bytes, kind: int) -> bytes:
        if self.version == 3:
            return data + DBT_FIELD_TERMINATOR
        return DBT4_SIGNATURE + pack_uint32(len(data) + MEMO_BLOCK_HEADER_SIZE) + data

    def _decode(self, block: int) -> MemoBlock:
        if self.version == 3:
            return MemoBlock(self._scan_terminated(block), MEMO_TEXT)
        head = self._read_at(block, 0, MEMO_BLOCK_HEADER_SIZE)
        if head[0:4] != DBT4_SIGNATURE:
            raise MemoCorruptionError(f"memo block {block} has no dBase IV signature")
        total = unpack_uint32(head, 4)
        if total < MEMO_BLOCK_HEADER_SIZE:
            raise MemoCorruptionError(f"memo block {block} declares length {total}")
        return MemoBlock(self._read_at(block, MEMO_BLOCK_HEADER_SIZE, total - MEMO_BLOCK_HEADER_SIZE),
                         MEMO_TEXT)

    def _scan_terminated(self, block: int) -> bytes:
        # dBase III memos carry no length; read block by block up to 0x1A
        data = bytearray()
        offset = 0
        while True:
            if block in self._pending:
                chunk = self._pending[block][offset:]
                if not chunk:
                    raise MemoCorruptionError(f"memo block {block} has no terminator")
            else:
                remaining = self._file_size - block * self.block_size - offset
                if remaining <= 0:
                    raise MemoCorruptionError(f"memo block {block} has no terminator")
                chunk = self._read_at(block, offset, min(self.block_size, remaining))
            end = chunk.find(b'\x1A')
            if end >= 0:
                data += chunk[:end]
                return bytes(data)
            data += chunk
            offset += len(chunk)

    def _header_update(self) -> bytes:
        return pack_uint32(self._next_free)


class FPTMemoFile(MemoFile):
    """Visual FoxPro .FPT memo file."""

    extension = '.FPT'

    @property
    def first_block(self) -> int:
        return (FPT_HEADER_SIZE + self.block_size - 1) // self.block_size

    @classmethod
    def open(cls, filename: str, read_only: bool = False) -> 'FPTMemoFile':
        file = _open_file(filename, read_only)
        try:
            head = file.read(FPT_HEADER_SIZE)
            if len(head) < 8:
                raise MemoCorruptionError(f"{filename} has no memo header")
            next_free = unpack_uint32_be(head, 0)
            block_size = unpack_uint16_be(head, 6)
            if block_size == 0:
                raise MemoCorruptionError(f"{filename} declares block size 0")
            return cls(filename, file, block_size, next_free, read_only)
        except BaseException:
            file.close()
            raise

    @classmethod
    def create(cls, filename: str, block_size: int = DBF_MEMO_BLOCK_SIZE) -> 'FPTMemoFile':
        """Create an empty .FPT file with the given block size."""
        if not 0 < block_size <= 0xFFFF:
            raise ValueError(f"invalid memo block size {block_size}")
        first = (FPT_HEADER_SIZE + block_size - 1) // block_size
        buf = bytearray(first * block_size)
        buf[0:4] = pack_uint32_be(first)
        buf[6:8] = pack_uint16_be(block_size)
        _write_new_file(filename, bytes(buf))
        return cls.open(filename)

    def _encode(self, data: bytes, kind: int) -> bytes:
        return pack_uint32_be(kind) + pack_uint32_be(len(data)) + data

    def _decode(self, block: int) -> MemoBlock:
        head = self._read_at(block, 0, MEMO_BLOCK_HEADER_SIZE)
        kind = unpack_uint32_be(head, 0)
        length = unpack_uint32_be(head, 4)
        return MemoBlock(self._read_at(block, MEMO_BLOCK_HEADER_SIZE, length), kind)

    def _header_update(self) -> bytes:
        return pack_uint32_be(self._next_free)


def _open_file(filename: str, read_only: bool) -> BinaryIO:
    try:
        return open(filename, "rb" if read_only else "rb+")
    except OSError as exc:
        raise PersistenceError(f"cannot open memo file {filename}: {exc}") from exc


def _write_new_file(filename: str, data: bytes) -> None:
    try:
        with open(filename, "wb") as f:
            f.write(data)
    except OSError as exc:
        raise PersistenceError(f"cannot create memo file {filename}: {exc}") from exc


def open_memo_file(filename: str, memo_format: str, read_only: bool = False) -> MemoFile:
    """Open a memo file in the layout named by a dialect ('dbt3', 'dbt4', 'fpt')."""
    if memo_format == 'fpt':
        return FPTMemoFile.open(filename, read_only)
    return DBTMemoFile.open(filename, 3 if memo_format == 'dbt3' else 4, read_only)


def create_memo_file(filename: str, memo_format: str, block_size: Optional[int] = None,
                     table_name: str = '') -> MemoFile:
    block_size = block_size or DBF_MEMO_BLOCK_SIZE
    if memo_format == 'fpt':
        return FPTMemoFile.create(filename, block_size)
    return DBTMemoFile.create(filename, 3 if memo_format == 'dbt3' else 4, block_size, table_name)


__all__ = [
    'MemoBlock', 'MemoFile', 'DBTMemoFile', 'FPTMemoFile',
    'MEMO_PICTURE', 'MEMO_TEXT', 'MEMO_OBJECT', 'DBF_MEMO_BLOCK_SIZE',
    'open_memo_file', 'create_memo_file',
]
