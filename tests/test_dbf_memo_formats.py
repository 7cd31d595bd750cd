"""
Test file for the on-disk layouts of the three memo file formats.
This checks dBase III .DBT, dBase IV .DBT and FoxPro .FPT byte by byte.
"""

import os
import shutil
import struct
import tempfile
import unittest

from dbf_memo import (
    DBF_MEMO_BLOCK_SIZE, MEMO_OBJECT, MEMO_PICTURE, MEMO_TEXT,
    DBTMemoFile, FPTMemoFile, create_memo_file, open_memo_file,
)


class TestDBFMemoFormats(unittest.TestCase):
    """Test cases for dBase III, dBase IV and FoxPro memo formats."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()

    def tearDown(self):
        """Clean up test files."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def path(self, name):
        return os.path.join(self.test_dir, name)

    def read_file(self, filename):
        with open(filename, 'rb') as f:
            return f.read()

    def test_dbase3_memo_format(self):
        """dBase III stores the payload followed by 0x1A 0x1A."""
        filename = self.path("notes3.DBT")
        memo = create_memo_file(filename, 'dbt3')
        self.assertIsInstance(memo, DBTMemoFile)
        self.assertEqual(memo.block_size, DBF_MEMO_BLOCK_SIZE)
        block = memo.append(b"Hello dBase III")
        memo.flush()
        memo.close()

        self.assertEqual(block, 1)
        data = self.read_file(filename)
        self.assertEqual(len(data), 2 * DBF_MEMO_BLOCK_SIZE)
        self.assertEqual(struct.unpack("<L", data[0:4])[0], 2)
        self.assertEqual(data[16], 0x03)
        self.assertEqual(data[512:512 + 17], b"Hello dBase III\x1a\x1a")

        memo = open_memo_file(filename, 'dbt3', read_only=True)
        self.assertEqual(memo.read(1).data, b"Hello dBase III")
        memo.close()

    def test_dbase4_memo_format(self):
        """dBase IV prefixes each memo with FF FF 08 00 and the total length."""
        filename = self.path("notes4.DBT")
        memo = create_memo_file(filename, 'dbt4', table_name="notes4")
        block = memo.append(b"Hello dBase IV")
        memo.flush()
        memo.close()

        data = self.read_file(filename)
        self.assertEqual(struct.unpack("<L", data[0:4])[0], 2)
        self.assertEqual(data[8:16], b"NOTES4\x00\x00")
        self.assertEqual(struct.unpack("<H", data[20:22])[0], 512)
        start = block * 512
        self.assertEqual(data[start:start + 4], b'\xff\xff\x08\x00')
        self.assertEqual(struct.unpack("<L", data[start + 4:start + 8])[0], 8 + 14)
        self.assertEqual(data[start + 8:start + 22], b"Hello dBase IV")

        memo = open_memo_file(filename, 'dbt4')
        self.assertEqual(memo.read(block).data, b"Hello dBase IV")
        memo.close()

    def test_dbase4_block_size(self):
        filename = self.path("big.DBT")
        memo = create_memo_file(filename, 'dbt4', block_size=1024)
        self.assertEqual(memo.block_size, 1024)
        memo.close()
        memo = open_memo_file(filename, 'dbt4')
        self.assertEqual(memo.block_size, 1024)
        memo.close()
        with self.assertRaises(ValueError):
            create_memo_file(self.path("odd.DBT"), 'dbt4', block_size=100)

    def test_foxpro_memo_format(self):
        """FoxPro headers and block headers are big-endian."""
        filename = self.path("notes.FPT")
        memo = create_memo_file(filename, 'fpt', block_size=64)
        self.assertIsInstance(memo, FPTMemoFile)
        self.assertEqual(memo.first_block, 8)
        block = memo.append(b"abc", MEMO_TEXT)
        memo.flush()
        memo.close()

        self.assertEqual(block, 8)
        data = self.read_file(filename)
        self.assertEqual(len(data), 512 + 64)
        self.assertEqual(struct.unpack(">L", data[0:4])[0], 9)
        self.assertEqual(struct.unpack(">H", data[6:8])[0], 64)
        self.assertEqual(data[512:523], b'\x00\x00\x00\x01\x00\x00\x00\x03abc')

    def test_foxpro_memo_kinds(self):
        filename = self.path("kinds.FPT")
        memo = create_memo_file(filename, 'fpt')
        blocks = {
            MEMO_TEXT: memo.append(b"text", MEMO_TEXT),
            MEMO_OBJECT: memo.append(b"\x01\x02", MEMO_OBJECT),
            MEMO_PICTURE: memo.append(b"\x89PNG", MEMO_PICTURE),
        }
        memo.flush()
        memo.close()

        memo = open_memo_file(filename, 'fpt', read_only=True)
        for kind, block in blocks.items():
            self.assertEqual(memo.read(block).kind, kind)
        self.assertEqual(memo.read(blocks[MEMO_OBJECT]).data, b"\x01\x02")
        memo.close()

    def test_dbase3_memo_with_embedded_nulls(self):
        filename = self.path("nulls.DBT")
        memo = create_memo_file(filename, 'dbt3')
        block = memo.append(b"a\x00b\x00c")
        memo.flush()
        self.assertEqual(memo.read(block).data, b"a\x00b\x00c")
        memo.close()

    def test_dbase3_memo_stops_at_terminator(self):
        """A 0x1A inside a dBase III memo ends the value; the format has no length."""
        filename = self.path("eof.DBT")
        memo = create_memo_file(filename, 'dbt3')
        block = memo.append(b"before\x1aafter")
        memo.flush()
        self.assertEqual(memo.read(block).data, b"before")
        memo.close()

    def test_dbase4_binary_memo(self):
        filename = self.path("binary.DBT")
        payload = bytes(range(256)) * 3
        memo = create_memo_file(filename, 'dbt4')
        block = memo.append(payload)
        memo.flush()
        memo.close()
        memo = open_memo_file(filename, 'dbt4')
        self.assertEqual(memo.read(block).data, payload)
        memo.close()

    def test_empty_memo(self):
        for fmt, name in (('dbt3', 'e3.DBT'), ('dbt4', 'e4.DBT'), ('fpt', 'e.FPT')):
            memo = create_memo_file(self.path(name), fmt)
            block = memo.append(b"")
            memo.flush()
            self.assertEqual(memo.read(block).data, b"")
            self.assertEqual(memo.next_free, block + 1)
            memo.close()

    def test_memo_spans_multiple_blocks_dbase3(self):
        filename = self.path("span3.DBT")
        memo = create_memo_file(filename, 'dbt3')
        first = memo.append(b"x" * 600)
        second = memo.append(b"second")
        memo.flush()
        memo.close()

        self.assertEqual((first, second), (1, 3))
        memo = open_memo_file(filename, 'dbt3')
        self.assertEqual(memo.read(first).data, b"x" * 600)
        self.assertEqual(memo.read(second).data, b"second")
        self.assertEqual(memo.next_free, 4)
        memo.close()

    def test_memo_spans_multiple_blocks_dbase4(self):
        filename = self.path("span4.DBT")
        memo = create_memo_file(filename, 'dbt4')
        # 505 bytes + 8-byte header overflow one block
        first = memo.append(b"y" * 505)
        second = memo.append(b"z" * 504)
        memo.flush()
        memo.close()
        self.assertEqual((first, second), (1, 3))


if __name__ == '__main__':
    unittest.main()
