"""Phone workbook importer.

Public entry points::

    from phone_importer import InMemoryPhoneStore, process_workbook

    report = process_workbook(Path("upload.xlsx"), "upload.xlsx", InMemoryPhoneStore())
"""

from .db.store import InMemoryPhoneStore, PostgresPhoneStore, StoreError
from .excel.reader import DecodeError
from .services.column_roles import ColumnRoleCache
from .services.orchestrator import process_workbook, process_workbook_direct

__version__ = "0.1.0"

__all__ = [
    "ColumnRoleCache",
    "DecodeError",
    "InMemoryPhoneStore",
    "PostgresPhoneStore",
    "StoreError",
    "process_workbook",
    "process_workbook_direct",
]
