"""Configuration for opening and creating DBF tables."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Union

from dbf_columns import DBFColumn, DBFDialect, dialect_by_name, parse_column_spec


@dataclass
class DBFConfig:
    """Configuration for DBF open and create."""
    filename: str
    read_only: bool = False
    trim_spaces: bool = True  # strip trailing spaces from C fields on read
    dialect: Optional[Union[DBFDialect, str]] = None  # None = detect on open
    columns: List[Union[DBFColumn, str]] = field(default_factory=list)  # create only
    language_driver: Optional[int] = None  # create only; None = dialect default
    auto_save: bool = False  # save on close
    lock: Optional[bool] = None  # advisory flock while open; None = writers only
    encoding: Optional[str] = None  # None = derived from language driver
    memo_block_size: Optional[int] = None  # create only; None = 512

    def __post_init__(self):
        """Validate and normalize after initialization."""
        path = Path(self.filename)
        if not path.suffix:
            path = path.with_suffix('.DBF')
        self.filename = str(path.resolve())

        if isinstance(self.dialect, str):
            self.dialect = dialect_by_name(self.dialect)
        self.columns = [
            parse_column_spec(column) if isinstance(column, str) else column
            for column in self.columns
        ]
        if self.memo_block_size is not None and self.memo_block_size <= 0:
            raise ValueError(f"memo_block_size must be positive, got {self.memo_block_size}")

    @property
    def base_name(self) -> str:
        """Path without the .DBF suffix."""
        return str(Path(self.filename).with_suffix(''))

    def memo_path(self, extension: str) -> str:
        """
        Get the memo file path for this table.

        The extension follows the case of the table suffix ('.dbf' -> '.fpt');
        a database container (.DBC) keeps its memos in a .DCT file.

        Args:
            extension: Upper-case memo extension ('.DBT' or '.FPT')

        Returns:
            Full path to the memo file
        """
        suffix = Path(self.filename).suffix
        if suffix.upper() == '.DBC' and extension == '.FPT':
            extension = '.DCT'  # database container memo
        if suffix and suffix == suffix.lower():
            extension = extension.lower()
        return self.base_name + extension


__all__ = ['DBFConfig']
