"""
Mapping of table rows onto caller-declared record shapes.

A shape is either a dataclass, whose fields name their column through
field(metadata={"dbf": "NAME"}) (default: the upper-cased attribute name),
or a mapping {attribute: (column_name, python_type)}. Shapes are checked
against the column model once, at bind time.
"""

import dataclasses
import datetime
import types
import typing
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Tuple

from dbf_columns import ColumnModel, DBFColumn
from dbf_errors import ShapeMismatchError


# Python types each column type can be assigned to
COERCIONS = {
    'C': (str,),
    'V': (str, bytes),
    'L': (bool,),
    'D': (datetime.date,),
    'T': (datetime.datetime, datetime.date),
    'I': (int, float, Decimal),
    'Y': (Decimal, float),
    'B': (float, Decimal),
    'M': (str, bytes),
    'G': (bytes,),
    'P': (bytes,),
    'Q': (bytes,),
}


def compatible_types(column: DBFColumn) -> Tuple[type, ...]:
    """Python types a column can populate."""
    if column.field_type in ('N', 'F'):
        if column.decimals == 0:
            return (int, float, Decimal)
        return (float, Decimal)
    return COERCIONS.get(column.field_type, ())


def _unwrap_optional(target):
    if typing.get_origin(target) in (typing.Union, getattr(types, "UnionType", None)):
        args = [arg for arg in typing.get_args(target) if arg is not type(None)]
        if len(args) == 1:
            return args[0]
    return target


@dataclass(frozen=True)
class Binding:
    attribute: str
    column: DBFColumn
    target: Any


class BoundShape:
    """A shape validated against one table's columns."""

    def __init__(self, shape, bindings: List[Binding]):
        self.shape = shape
        self.bindings = bindings
        self.is_dataclass = dataclasses.is_dataclass(shape)

    def _coerce(self, value: Any, binding: Binding, encoding: str) -> Any:
        target = binding.target
        if value is None or target is Any:
            return value
        if target is bool:
            return bool(value)
        if target is int:
            return int(value)
        if target is float:
            return float(value)
        if target is Decimal:
            return value if isinstance(value, Decimal) else Decimal(str(value))
        if target is datetime.date and isinstance(value, datetime.datetime):
            return value.date()
        if target is str and isinstance(value, bytes):
            return value.decode(encoding)
        if target is bytes and isinstance(value, str):
            return value.encode(encoding)
        return value

    def values(self, row) -> Dict[str, Any]:
        """Coerced values of the bound columns of a row."""
        encoding = row.codec.encoding
        return {
            binding.attribute: self._coerce(row.field_by_name(binding.column.name).get(),
                                            binding, encoding)
            for binding in self.bindings
        }

    def populate(self, row, out=None):
        """
        Fill a shape instance from a row.

        Args:
            row: Source row
            out: Object (or dict, for mapping shapes) to update in place;
                a new instance is built when None

        Returns:
            The populated object
        """
        values = self.values(row)
        if out is None:
            if self.is_dataclass:
                return self.shape(**values)
            return values
        if isinstance(out, dict):
            out.update(values)
        else:
            for name, value in values.items():
                setattr(out, name, value)
        return out


def _check(column: DBFColumn, attribute: str, target) -> None:
    if target is Any:
        return
    if not isinstance(target, type):
        raise ShapeMismatchError(f"attribute {attribute} has unsupported type {target!r}",
                                 column=column.name)
    allowed = compatible_types(column)
    # datetime is a date subclass; a D column only fills plain dates
    if column.field_type == 'D' and target is datetime.datetime:
        allowed = ()
    if target not in allowed:
        raise ShapeMismatchError(
            f"attribute {attribute} of type {target.__name__} cannot hold a "
            f"{column.spec} column", column=column.name)


def bind_shape(columns: ColumnModel, shape) -> BoundShape:
    """
    Validate a shape against a column model.

    Args:
        columns: Column model of the table
        shape: Dataclass type or mapping {attribute: (column_name, python_type)}

    Returns:
        BoundShape ready to populate rows
    """
    specs: List[Tuple[str, str, Any]] = []
    if dataclasses.is_dataclass(shape) and isinstance(shape, type):
        hints = typing.get_type_hints(shape)
        for f in dataclasses.fields(shape):
            if not f.init:
                continue
            specs.append((f.name, f.metadata.get("dbf", f.name.upper()), hints.get(f.name, Any)))
    elif isinstance(shape, Mapping):
        for attribute, spec in shape.items():
            if isinstance(spec, tuple) and len(spec) == 2:
                specs.append((attribute, spec[0], spec[1]))
            else:
                raise ShapeMismatchError(
                    f"shape entry {attribute!r} must be (column_name, python_type)")
    else:
        raise ShapeMismatchError(f"unsupported shape {shape!r}")

    bindings = []
    for attribute, name, target in specs:
        if name not in columns:
            raise ShapeMismatchError(f"attribute {attribute} refers to an unknown column",
                                     column=name)
        column = columns.by_name(name)
        target = _unwrap_optional(target)
        _check(column, attribute, target)
        bindings.append(Binding(attribute, column, target))
    return BoundShape(shape, bindings)


__all__ = ['BoundShape', 'Binding', 'bind_shape', 'compatible_types', 'COERCIONS']
