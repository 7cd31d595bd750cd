"""
Test file for DBF row operations.
This covers the cursor, appending, updating, soft delete and recall, and
the save/close life cycle of buffered changes.
"""

import os
import shutil
import struct
import tempfile
import unittest

from dbf_columns import DBASE3, DBASE4
from dbf_config import DBFConfig
from dbf_errors import (
    ColumnNotFoundError, EndOfTableError, InvalidPositionError, ReadOnlyError,
    TableClosedError, TypeMismatchError, ValueOutOfRangeError,
)
from dbf_module import (
    DBF_STATE_CLOSED, DBF_STATE_END, DBF_STATE_FRESH, DBF_STATE_POSITIONED,
    dbf_table_create, dbf_table_open,
)
from dbf_record import DBF_RECORD_DELETED, DBF_RECORD_LIVE, Row


COLUMNS = ["ID N(5,0)", "NAME C(20)", "SALARY N(10,2)", "ACTIVE L"]

PEOPLE = [
    (1, "John Smith", 50000.0, True),
    (2, "Jane Doe", 62000.5, True),
    (3, "Bob Jones", 48000.0, False),
]


class TestDBFRowOperations(unittest.TestCase):
    """Test cases for DBF row operations."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()
        self.filename = os.path.join(self.test_dir, "people.DBF")

    def tearDown(self):
        """Clean up test files."""
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def create_people(self, **kwargs):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE4, columns=COLUMNS, **kwargs))
        for person in PEOPLE:
            row = table.new_row()
            row["ID"], row["NAME"], row["SALARY"], row["ACTIVE"] = person
            table.write_row(row)
        table.save()
        return table

    def open(self, **kwargs):
        return dbf_table_open(DBFConfig(self.filename, **kwargs))

    def file_layout(self):
        with open(self.filename, 'rb') as f:
            data = f.read()
        count = struct.unpack("<L", data[4:8])[0]
        header_size = struct.unpack("<H", data[8:10])[0]
        record_size = struct.unpack("<H", data[10:12])[0]
        return data, count, header_size, record_size

    def test_row_append_one(self):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE4, columns=COLUMNS))
        self.assertEqual(table.record_count, 0)
        row = table.new_row()
        self.assertEqual(row.position, 1)
        row["ID"] = 1
        row["NAME"] = "John Smith"
        table.write_row(row)
        self.assertEqual(table.record_count, 1)
        table.save()
        table.close()

        data, count, header_size, record_size = self.file_layout()
        self.assertEqual(count, 1)
        self.assertEqual(len(data), header_size + record_size + 1)
        self.assertEqual(data[-1], 0x1A)
        self.assertEqual(data[header_size], DBF_RECORD_LIVE)

    def test_new_row_fill(self):
        """New rows hold spaces for text and a right-justified ASCII zero for numbers."""
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE4, columns=COLUMNS))
        row = table.new_row()
        self.assertEqual(row.record[0], DBF_RECORD_LIVE)
        self.assertEqual(row.field_by_name("ID").raw(), b'    0')
        self.assertEqual(row.field_by_name("NAME").raw(), b' ' * 20)
        self.assertEqual(row.field_by_name("SALARY").raw(), b'      0.00')
        self.assertEqual(row.field_by_name("ACTIVE").raw(), b' ')
        self.assertEqual(row["ID"], 0)
        self.assertEqual(row["SALARY"], 0.0)
        self.assertIsInstance(row["SALARY"], float)

        table.write_row(row)
        table.save()
        table.close()
        data, _, header_size, record_size = self.file_layout()
        self.assertEqual(data[header_size:header_size + record_size],
                         b' ' + b'    0' + b' ' * 20 + b'      0.00' + b' ')

    def test_row_append_multiple(self):
        self.create_people().close()
        data, count, header_size, record_size = self.file_layout()
        self.assertEqual(count, 3)
        self.assertEqual(len(data), header_size + 3 * record_size + 1)

        table = self.open(read_only=True)
        self.assertEqual([row.values() for row in table], [list(p) for p in PEOPLE])
        table.close()

    def test_append_count_before_save(self):
        table = self.create_people()
        for _ in range(2):
            row = table.new_row()
            row["ID"] = table.record_count + 1
            table.write_row(row)
        self.assertEqual(table.record_count, 5)
        table.go_to(5)
        self.assertEqual(table.current()["ID"], 5)

        _, count, _, _ = self.file_layout()
        self.assertEqual(count, 3)
        table.save()
        _, count, _, _ = self.file_layout()
        self.assertEqual(count, 5)
        table.close()

    def test_cursor_states(self):
        table = self.create_people()
        table.close()
        table = self.open(read_only=True)
        self.assertEqual(table.state, DBF_STATE_FRESH)
        self.assertEqual(table.position, 0)
        with self.assertRaises(InvalidPositionError):
            table.current()

        for expected in (1, 2, 3):
            row = table.next()
            self.assertEqual(table.state, DBF_STATE_POSITIONED)
            self.assertEqual(row.position, expected)
            self.assertEqual(table.position, expected)

        with self.assertRaises(EndOfTableError):
            table.next()
        self.assertEqual(table.state, DBF_STATE_END)
        with self.assertRaises(EndOfTableError):
            table.next()

        table.go_to(0)
        self.assertEqual(table.state, DBF_STATE_FRESH)
        self.assertEqual(table.next()["ID"], 1)
        table.close()
        self.assertEqual(table.state, DBF_STATE_CLOSED)

    def test_empty_table_end(self):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE3, columns=["ID N(3,0)"]))
        with self.assertRaises(EndOfTableError):
            table.next()
        self.assertEqual(list(table.rows()), [])
        table.close()

    def test_row_seek(self):
        table = self.create_people()
        table.go_to(2)
        self.assertEqual(table.current()["NAME"], "Jane Doe")
        self.assertEqual(table.next()["NAME"], "Bob Jones")
        table.go_to(1)
        self.assertEqual(table.row()["NAME"], "John Smith")
        for bad in (-1, 4, 100):
            with self.assertRaises(InvalidPositionError):
                table.go_to(bad)
        table.close()

    def test_rows_offset_and_limit(self):
        table = self.create_people()
        self.assertEqual([row["ID"] for row in table.rows(offset=1)], [2, 3])
        self.assertEqual([row["ID"] for row in table.rows(limit=2)], [1, 2])
        self.assertEqual([row["ID"] for row in table.rows(offset=1, limit=1)], [2])
        table.go_to(2)
        self.assertEqual([row["ID"] for row in table.read_all()], [3])
        table.close()

    def test_row_delete(self):
        table = self.create_people()
        table.go_to(2)
        table.delete()
        self.assertTrue(table.deleted())
        table.save()
        table.close()

        data, count, header_size, record_size = self.file_layout()
        self.assertEqual(count, 3)
        self.assertEqual(data[header_size + record_size], DBF_RECORD_DELETED)
        self.assertEqual(data[header_size], DBF_RECORD_LIVE)

        table = self.open()
        self.assertEqual([row["ID"] for row in table.rows(skip_deleted=True)], [1, 3])
        self.assertEqual([row.deleted for row in table.rows()], [False, True, False])
        self.assertEqual(table.record_count, 3)

        table.go_to(2)
        table.recall()
        table.save()
        table.close()
        data, _, header_size, record_size = self.file_layout()
        self.assertEqual(data[header_size + record_size], DBF_RECORD_LIVE)

    def test_deleted_values_still_readable(self):
        table = self.create_people()
        table.go_to(3)
        table.delete()
        table.go_to(3)
        self.assertEqual(table.current()["NAME"], "Bob Jones")
        self.assertEqual(table.read_all(skip_deleted=True), [])
        table.close()

    def test_row_update(self):
        table = self.create_people()
        table.go_to(2)
        row = table.current()
        row["SALARY"] = 70000.25
        row["ACTIVE"] = False
        table.write_row(row)
        table.save()
        table.close()

        table = self.open(read_only=True)
        table.go_to(2)
        row = table.current()
        self.assertEqual(row["SALARY"], 70000.25)
        self.assertIs(row["ACTIVE"], False)
        self.assertEqual(row["NAME"], "Jane Doe")
        self.assertEqual(table.record_count, 3)
        table.close()

    def test_row_update_by_field(self):
        table = self.create_people()
        table.go_to(1)
        row = table.current()
        row.field(0).set_int(10)
        row.field_by_name("NAME").set_string("Johnny")
        row.field(2).set_float(1.5)
        row.field(3).set_bool(False)
        table.write_row(row)
        table.go_to(1)
        row = table.current()
        self.assertEqual(row.field(0).get_int(), 10)
        self.assertEqual(row.field(1).get_string(), "Johnny")
        self.assertEqual(row.field(2).get_float(), 1.5)
        self.assertFalse(row.field(3).get_bool())
        with self.assertRaises(TypeMismatchError):
            row.field(0).set_int("10")
        with self.assertRaises(ColumnNotFoundError):
            row["MISSING"]
        table.close()

    def test_changes_visible_only_after_write_row(self):
        table = self.create_people()
        table.go_to(1)
        row = table.current()
        row["NAME"] = "Changed"
        self.assertEqual(table.current()["NAME"], "John Smith")
        table.write_row(row)
        self.assertEqual(table.current()["NAME"], "Changed")
        table.close()

    def test_numeric_overflow_leaves_field(self):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE4, columns=["AMOUNT N(6,2)"]))
        row = table.new_row()
        row["AMOUNT"] = 999.99
        with self.assertRaises(ValueOutOfRangeError) as ctx:
            row["AMOUNT"] = 1000.0
        self.assertEqual(ctx.exception.column, "AMOUNT")
        self.assertEqual(ctx.exception.record, 1)
        self.assertEqual(row.field(0).raw(), b'999.99')
        self.assertEqual(row["AMOUNT"], 999.99)
        table.close()

    def test_field_truncation(self):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE3, columns=["CODE C(3)"]))
        row = table.new_row()
        with self.assertRaises(ValueOutOfRangeError):
            row["CODE"] = "ABCD"
        self.assertEqual(row.field(0).raw(), b'   ')
        table.close()

    def test_field_padding(self):
        table = dbf_table_create(DBFConfig(self.filename, dialect=DBASE3, columns=["CODE C(6)"]))
        row = table.new_row()
        row["CODE"] = "AB "
        self.assertEqual(row.field(0).raw(), b'AB    ')
        self.assertEqual(row["CODE"], "AB")
        table.write_row(row)
        table.save()
        table.close()

        table = self.open(read_only=True, trim_spaces=False)
        self.assertEqual(table.next()["CODE"], "AB    ")
        table.close()

    def test_invalid_write_position(self):
        table = self.create_people()
        row = table.new_row()
        row.position = 5
        with self.assertRaises(InvalidPositionError):
            table.write_row(row)

        other = dbf_table_create(DBFConfig(os.path.join(self.test_dir, "other.DBF"),
                                           dialect=DBASE4, columns=COLUMNS))
        with self.assertRaises(InvalidPositionError):
            table.write_row(Row(other, 1, other.codec.blank_record()))
        other.close()
        table.close()

    def test_close_discards_without_auto_save(self):
        table = self.create_people()
        row = table.new_row()
        row["ID"] = 4
        table.write_row(row)
        table.close()

        table = self.open()
        self.assertEqual(table.record_count, 3)
        table.close()

    def test_close_saves_with_auto_save(self):
        self.create_people().close()
        table = self.open(auto_save=True)
        row = table.new_row()
        row["ID"] = 4
        table.write_row(row)
        table.close()

        table = self.open()
        self.assertEqual(table.record_count, 4)
        table.close()

        table = self.open(auto_save=True)
        row = table.new_row()
        row["ID"] = 5
        table.write_row(row)
        table.close(discard=True)
        table = self.open()
        self.assertEqual(table.record_count, 4)
        table.close()

    def test_discard_restores_disk_state(self):
        table = self.create_people()
        table.go_to(1)
        table.delete()
        row = table.new_row()
        table.write_row(row)
        self.assertTrue(table.is_dirty)
        table.discard()
        self.assertFalse(table.is_dirty)
        self.assertEqual(table.record_count, 3)
        table.go_to(1)
        self.assertFalse(table.deleted())
        table.close()

    def test_read_only_table(self):
        self.create_people().close()
        table = self.open(read_only=True)
        with self.assertRaises(ReadOnlyError):
            table.new_row()
        table.go_to(1)
        with self.assertRaises(ReadOnlyError):
            table.delete()
        with self.assertRaises(ReadOnlyError):
            table.write_row(table.current())
        with self.assertRaises(ReadOnlyError):
            table.save()
        table.close()

    def test_closed_table(self):
        table = self.create_people()
        table.close()
        table.close()
        with self.assertRaises(TableClosedError):
            table.next()
        with self.assertRaises(TableClosedError):
            table.go_to(1)
        with self.assertRaises(TableClosedError):
            table.header()
        with self.assertRaises(TableClosedError):
            table.new_row()

    def test_reopen_and_read(self):
        self.create_people().close()
        table = self.open(read_only=True)
        rows = [row.to_dict() for row in table.rows()]
        self.assertEqual(rows[0], {"ID": 1, "NAME": "John Smith", "SALARY": 50000.0, "ACTIVE": True})
        self.assertEqual(len(rows), 3)
        table.close()


if __name__ == '__main__':
    unittest.main()
