"""
Test file for mapping rows onto dataclasses and mapping shapes.
"""

import datetime
import os
import shutil
import tempfile
import unittest
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional

from dbf_columns import FOXPRO
from dbf_config import DBFConfig
from dbf_errors import ShapeMismatchError
from dbf_module import dbf_table_create
from dbf_scan import BoundShape, compatible_types


COLUMNS = [
    "NAME C(10)", "AGE N(3,0)", "SALARY N(8,2)", "HIRED D", "STAMP T",
    "ACTIVE L", "COUNT I", "PRICE Y", "NOTES M",
]


@dataclass
class Employee:
    name: str
    age: int
    hired: datetime.date
    active: bool
    salary: Optional[float] = None
    remarks: str = field(default='', metadata={"dbf": "NOTES"})


@dataclass
class BadDate:
    hired: datetime.datetime


@dataclass
class BadAge:
    age: str


@dataclass
class Unknown:
    missing: int


class TestDBFScan(unittest.TestCase):
    """Test cases for bind() and scan()."""

    def setUp(self):
        """Set up test environment."""
        self.test_dir = tempfile.mkdtemp()
        self.table = dbf_table_create(DBFConfig(os.path.join(self.test_dir, "staff.DBF"),
                                                dialect=FOXPRO, columns=COLUMNS))
        row = self.table.new_row()
        row["NAME"] = "ALICE"
        row["AGE"] = 30
        row["HIRED"] = datetime.date(2023, 5, 14)
        row["STAMP"] = datetime.datetime(2023, 5, 14, 9, 30)
        row["ACTIVE"] = True
        row["COUNT"] = 4
        row["PRICE"] = Decimal("12.50")
        row["NOTES"] = "reliable"
        self.table.write_row(row)
        self.table.go_to(1)

    def tearDown(self):
        """Clean up test files."""
        self.table.close(discard=True)
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def test_scan_dataclass(self):
        employee = self.table.scan(Employee)
        self.assertEqual(employee, Employee(
            name="ALICE", age=30, hired=datetime.date(2023, 5, 14), active=True,
            salary=0.0, remarks="reliable"))

    def test_scan_into_existing_object(self):
        employee = Employee(name="", age=0, hired=datetime.date(2000, 1, 1), active=False)
        result = self.table.scan(Employee, employee)
        self.assertIs(result, employee)
        self.assertEqual(employee.name, "ALICE")
        self.assertEqual(employee.remarks, "reliable")

    def test_scan_mapping_shape(self):
        shape = {
            "who": ("NAME", str),
            "price": ("PRICE", float),
            "count": ("COUNT", Decimal),
            "when": ("STAMP", datetime.datetime),
            "day": ("STAMP", datetime.date),
        }
        values = self.table.scan(shape)
        self.assertEqual(values, {
            "who": "ALICE",
            "price": 12.5,
            "count": Decimal(4),
            "when": datetime.datetime(2023, 5, 14, 9, 30),
            "day": datetime.date(2023, 5, 14),
        })
        self.assertIsInstance(values["price"], float)

        out = {"extra": 1}
        self.table.scan(shape, out)
        self.assertEqual(out["who"], "ALICE")
        self.assertEqual(out["extra"], 1)

    def test_bind_is_cached(self):
        bound = self.table.bind(Employee)
        self.assertIsInstance(bound, BoundShape)
        self.assertIs(self.table.bind(Employee), bound)
        self.assertIs(self.table.bind(bound), bound)
        self.assertEqual(bound.populate(self.table.current()).age, 30)

    def test_mapping_shapes_bound_per_call(self):
        shape = {"who": ("NAME", str)}
        first = self.table.bind(shape)
        self.assertIsNot(self.table.bind(shape), first)
        self.assertEqual(self.table.scan(shape), {"who": "ALICE"})

        shape["age"] = ("AGE", int)
        self.assertEqual(self.table.scan(shape), {"who": "ALICE", "age": 30})
        self.assertEqual(first.populate(self.table.current()), {"who": "ALICE"})

        for _ in range(3):
            self.table.scan({"who": ("NAME", str)})
        self.table.bind(Employee)
        self.assertEqual(list(self.table._shapes), [Employee])

    def test_shape_mismatch(self):
        with self.assertRaises(ShapeMismatchError) as ctx:
            self.table.bind(Unknown)
        self.assertEqual(ctx.exception.column, "MISSING")
        with self.assertRaises(ShapeMismatchError):
            self.table.bind(BadAge)
        with self.assertRaises(ShapeMismatchError):
            self.table.bind(BadDate)
        with self.assertRaises(ShapeMismatchError):
            self.table.bind({"age": "AGE"})
        with self.assertRaises(ShapeMismatchError):
            self.table.bind({"salary": ("SALARY", int)})
        with self.assertRaises(ShapeMismatchError):
            self.table.bind(42)

    def test_compatible_types(self):
        model = self.table.column_model
        self.assertIn(int, compatible_types(model.by_name("AGE")))
        self.assertNotIn(int, compatible_types(model.by_name("SALARY")))
        self.assertEqual(compatible_types(model.by_name("ACTIVE")), (bool,))
        self.assertIn(Decimal, compatible_types(model.by_name("PRICE")))


if __name__ == '__main__':
    unittest.main()
