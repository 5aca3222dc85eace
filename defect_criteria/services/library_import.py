"""
Load library items (U_LIB_LIST) from an Excel workbook.
Uses openpyxl (no pandas dependency).

Expected layout on the active sheet: a header row containing
lib_code, lib_id and lib_desc (any order, case-insensitive),
then one item per row. Rows with a missing value are skipped.
"""
import logging

from openpyxl import load_workbook

from defect_criteria.errors import InputError
from defect_criteria.services.db import get_db
from defect_criteria.utils import utc_now
from defect_criteria.utils.audit import log_audit

logger = logging.getLogger(__name__)

REQUIRED_COLUMNS = ('lib_code', 'lib_id', 'lib_desc')


def get_cell_value(value):
    return str(value).strip() if value is not None else ""


def read_library_rows(path):
    """Yield (lib_code, lib_id, lib_desc) tuples from the workbook."""
    wb = load_workbook(path, read_only=True, data_only=True)
    try:
        ws = wb.active
        rows = ws.iter_rows(values_only=True)
        header = next(rows, None)
        if header is None:
            raise InputError('Workbook is empty')

        columns = {get_cell_value(name).lower(): idx for idx, name in enumerate(header)}
        missing = [c for c in REQUIRED_COLUMNS if c not in columns]
        if missing:
            raise InputError(f'Workbook is missing columns: {", ".join(missing)}')

        for row in rows:
            values = [get_cell_value(row[columns[c]]) if columns[c] < len(row) else ''
                      for c in REQUIRED_COLUMNS]
            if all(values):
                yield tuple(values)
    finally:
        wb.close()


def import_library_workbook(path, user=None):
    """
    Upsert library items by lib_id. Re-importing an item restores it if
    it was soft-deleted. Returns {'added': n, 'updated': n, 'skipped': n}.
    """
    db = get_db()
    counts = {'added': 0, 'updated': 0, 'skipped': 0}
    now = utc_now()

    for lib_code, lib_id, lib_desc in read_library_rows(path):
        existing = db.execute("SELECT lib_code, lib_desc, lib_delete FROM u_lib_list WHERE lib_id = ?",
                              [lib_id]).fetchone()
        if existing is None:
            db.execute("""
                INSERT INTO u_lib_list (lib_id, lib_code, lib_desc, lib_delete, cr_user, created_at)
                VALUES (?, ?, ?, '0', ?, ?)
            """, [lib_id, lib_code, lib_desc, user['id'] if user else 'import', now])
            counts['added'] += 1
        elif (existing['lib_code'], existing['lib_desc'], existing['lib_delete']) == (lib_code, lib_desc, '0'):
            counts['skipped'] += 1
        else:
            db.execute("""
                UPDATE u_lib_list SET lib_code = ?, lib_desc = ?, lib_delete = '0'
                WHERE lib_id = ?
            """, [lib_code, lib_desc, lib_id])
            counts['updated'] += 1

    log_audit(db, 'library_item', '*', 'library_imported',
              new_value=counts,
              user_id=user['id'] if user else None,
              user_name=user['name'] if user else None,
              metadata={'path': str(path)})
    db.commit()
    logger.info("Library import from %s: %s", path, counts)
    return counts
