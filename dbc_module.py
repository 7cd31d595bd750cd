"""
Read-only access to Visual FoxPro database containers (.DBC).

A container is itself a FoxPro table (memos in a .DCT file) whose records
describe the tables, fields, indexes, views, relations and connections of
a database. Index entries are listed by name only.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from dbf_config import DBFConfig
from dbf_errors import DBFError
from dbf_module import DBFTable, dbf_table_open

logger = logging.getLogger("dbf.dbc")


# Constants
DBC_TYPE_DATABASE = 'Database'
DBC_TYPE_TABLE = 'Table'
DBC_TYPE_FIELD = 'Field'
DBC_TYPE_INDEX = 'Index'
DBC_TYPE_VIEW = 'View'
DBC_TYPE_RELATION = 'Relation'
DBC_TYPE_CONNECTION = 'Connection'

DBC_REQUIRED_COLUMNS = ('OBJECTID', 'PARENTID', 'OBJECTTYPE', 'OBJECTNAME')


@dataclass
class DBCObject:
    """One catalog entry of a database container."""
    object_id: int
    parent_id: int
    object_type: str
    name: str
    properties: bytes = field(default=b'', repr=False)  # raw PROPERTY memo
    code: bytes = field(default=b'', repr=False)  # raw CODE memo
    ri_info: str = ''  # referential integrity rules (relations)


class DBCContainer:
    """Catalog of a database container, loaded in full at open."""

    def __init__(self, filename: str, objects: List[DBCObject]):
        self.filename = filename
        self.objects = objects
        self._by_id: Dict[int, DBCObject] = {obj.object_id: obj for obj in objects}

    @classmethod
    def open(cls, filename: str) -> 'DBCContainer':
        """
        Read a container with the table engine.

        Args:
            filename: Path to the .DBC file

        Returns:
            The loaded container
        """
        config = DBFConfig(filename, read_only=True)
        with dbf_table_open(config) as table:
            names = table.column_model
            missing = [name for name in DBC_REQUIRED_COLUMNS if name not in names]
            if missing:
                raise DBFError(f"{filename} is not a database container (missing {', '.join(missing)})")
            objects = [_read_object(table, row) for row in table.rows(skip_deleted=True)]
        logger.debug("loaded %s: %d catalog object(s)", config.filename, len(objects))
        return cls(config.filename, objects)

    def _of_type(self, object_type: str, parent_id: Optional[int] = None) -> List[DBCObject]:
        return [obj for obj in self.objects
                if obj.object_type.lower() == object_type.lower()
                and (parent_id is None or obj.parent_id == parent_id)]

    def _table(self, name: str) -> DBCObject:
        for obj in self._of_type(DBC_TYPE_TABLE):
            if obj.name.lower() == name.lower():
                return obj
        raise KeyError(f"no table named {name!r} in {os.path.basename(self.filename)}")

    def database(self) -> Optional[DBCObject]:
        found = self._of_type(DBC_TYPE_DATABASE)
        return found[0] if found else None

    def parent(self, obj: DBCObject) -> Optional[DBCObject]:
        return self._by_id.get(obj.parent_id)

    def tables(self) -> List[DBCObject]:
        return self._of_type(DBC_TYPE_TABLE)

    def table_names(self) -> List[str]:
        return [obj.name for obj in self.tables()]

    def fields(self, table: str) -> List[DBCObject]:
        """Fields of a table, in catalog order."""
        return self._of_type(DBC_TYPE_FIELD, self._table(table).object_id)

    def indexes(self, table: str) -> List[DBCObject]:
        """Index tags of a table (names only)."""
        return self._of_type(DBC_TYPE_INDEX, self._table(table).object_id)

    def views(self) -> List[DBCObject]:
        return self._of_type(DBC_TYPE_VIEW)

    def relations(self) -> List[DBCObject]:
        return self._of_type(DBC_TYPE_RELATION)

    def connections(self) -> List[DBCObject]:
        return self._of_type(DBC_TYPE_CONNECTION)


def _memo_bytes(table: DBFTable, row, name: str) -> bytes:
    if name not in table.column_model:
        return b''
    block = table.read_memo(row.field_by_name(name).memo_pointer(), row.position, name)
    return block.data if block is not None else b''


def _read_object(table: DBFTable, row) -> DBCObject:
    ri_info = ''
    if 'RIINFO' in table.column_model:
        ri_info = row['RIINFO'] or ''
    return DBCObject(
        object_id=row['OBJECTID'] or 0,
        parent_id=row['PARENTID'] or 0,
        object_type=(row['OBJECTTYPE'] or '').strip(),
        name=(row['OBJECTNAME'] or '').strip(),
        properties=_memo_bytes(table, row, 'PROPERTY'),
        code=_memo_bytes(table, row, 'CODE'),
        ri_info=ri_info.strip(),
    )


def dbc_for_table(table: DBFTable) -> Optional[DBCContainer]:
    """
    Open the container a FoxPro table belongs to, via its header backlink.

    Returns:
        The container, or None for a free table
    """
    backlink = table.backlink.strip()
    if not backlink:
        return None
    path = os.path.join(os.path.dirname(table.filename), backlink.replace('\\', os.sep))
    return DBCContainer.open(path)


__all__ = [
    'DBCContainer', 'DBCObject', 'dbc_for_table',
    'DBC_TYPE_DATABASE', 'DBC_TYPE_TABLE', 'DBC_TYPE_FIELD', 'DBC_TYPE_INDEX',
    'DBC_TYPE_VIEW', 'DBC_TYPE_RELATION', 'DBC_TYPE_CONNECTION',
]
