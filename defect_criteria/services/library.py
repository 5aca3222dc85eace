"""
Reference library service - U_LIB_LIST items and U_LIB_COMBO links.

List codes used by the defect criteria:
    AMLY_TYP  - defect priorities
    AMLY_COD  - defect codes
    AMLY_FND  - defect types (findings)
    COMPGRP   - structure groups
"""
import logging

from defect_criteria.errors import InputError, NotFoundError
from defect_criteria.services.db import get_db, query_db
from defect_criteria.utils import generate_id, utc_now
from defect_criteria.utils.audit import log_audit

logger = logging.getLogger(__name__)

PRIORITY_CODE = 'AMLY_TYP'
DEFECT_CODE = 'AMLY_COD'
DEFECT_TYPE = 'AMLY_FND'
STRUCTURE_GROUP = 'COMPGRP'

CODE_TYPE_COMBO = 'AMLYCODFND'
PRIORITY_COLOR_COMBO = 'ANMLYCLR'

# combo code -> (list code of code_1, list code of code_2)
COMBO_CONFIG = {
    'AMLYCODFND': ('AMLY_COD', 'AMLY_FND'),
    'ANMLYCLR': ('AMLY_TYP', 'COLOR'),
    'ANMTRGINSP': ('AMLY_COD', 'INSPTYPE'),
    'ANMALTDAYS': ('AMLY_TYP', 'ALTDAYS'),
}

# Active = not soft-deleted and not hidden
ACTIVE_ITEM = "(lib_delete IS NULL OR lib_delete = '0') AND (hidden_item IS NULL OR upper(hidden_item) != 'Y')"
ACTIVE_COMBO = "(lib_delete IS NULL OR lib_delete = '0')"


def get_library_items(code):
    """Active items for one list code, ordered by description."""
    rows = query_db(f"""
        SELECT lib_id, lib_code, lib_desc, lib_delete
        FROM u_lib_list
        WHERE lib_code = ? AND {ACTIVE_ITEM}
        ORDER BY lib_desc
    """, [code])
    return [dict(r) for r in rows]


def get_library_item(lib_id):
    """Get library item by ID (deleted items included, for display)."""
    row = query_db("SELECT lib_id, lib_code, lib_desc, lib_delete FROM u_lib_list WHERE lib_id = ?",
                   [lib_id], one=True)
    return dict(row) if row else None


def get_library_labels(lib_ids):
    """Map lib_id -> lib_desc for the given IDs."""
    ids = [i for i in set(lib_ids) if i]
    if not ids:
        return {}
    placeholders = ','.join('?' * len(ids))
    rows = query_db(f"SELECT lib_id, lib_desc FROM u_lib_list WHERE lib_id IN ({placeholders})", ids)
    return {r['lib_id']: r['lib_desc'] for r in rows}


def get_defect_priorities():
    return get_library_items(PRIORITY_CODE)


def get_structure_groups():
    return get_library_items(STRUCTURE_GROUP)


def get_defect_codes(structure_type='platform'):
    """
    Defect codes for a structure type.
    Platform: codes with 'PIPELINE' in the description are excluded.
    """
    if structure_type not in ('platform', 'pipeline'):
        raise InputError("structureType must be 'platform' or 'pipeline'")

    query = f"""
        SELECT lib_id, lib_code, lib_desc, lib_delete
        FROM u_lib_list
        WHERE lib_code = ? AND {ACTIVE_ITEM}
    """
    if structure_type == 'platform':
        query += " AND upper(lib_desc) NOT LIKE '%PIPELINE%'"
    query += " ORDER BY lib_desc"
    return [dict(r) for r in query_db(query, [DEFECT_CODE])]


def get_defect_types(defect_code_id=None):
    """
    Defect types. With a defect code, only the types linked to it
    through AMLYCODFND combos (code_1 = code, code_2 = type).
    """
    if not defect_code_id:
        return get_library_items(DEFECT_TYPE)

    rows = query_db(f"""
        SELECT l.lib_id, l.lib_code, l.lib_desc, l.lib_delete
        FROM u_lib_list l
        JOIN u_lib_combo c ON c.code_2 = l.lib_id
        WHERE c.lib_code = ? AND c.code_1 = ?
          AND (c.lib_delete IS NULL OR c.lib_delete = '0')
          AND l.lib_code = ?
          AND (l.lib_delete IS NULL OR l.lib_delete = '0')
        GROUP BY l.lib_id
        ORDER BY l.lib_desc
    """, [CODE_TYPE_COMBO, defect_code_id, DEFECT_TYPE])
    return [dict(r) for r in rows]


def get_priority_colors():
    """
    {priority label (lowercase): "R,G,B"} from ANMLYCLR combos.
    Priorities without a colour map to an empty string.
    """
    colors = {
        c['code_1']: c['code_2']
        for c in list_combos(PRIORITY_COLOR_COMBO)
        if c['code_1'] and c['code_2']
    }
    result = {}
    for item in get_defect_priorities():
        label = (item['lib_desc'] or '').lower()
        if label:
            result[label] = colors.get(item['lib_id'], '')
    return result


# ---------------------------------------------------------------------------
# Administrative CRUD
# ---------------------------------------------------------------------------

def create_library_item(code, lib_desc, lib_id=None, user=None):
    """Add an item to a list. Returns the new item."""
    lib_desc = lib_desc.strip() if isinstance(lib_desc, str) else ''
    if not code or not lib_desc:
        raise InputError('lib_code and lib_desc are required')

    db = get_db()
    lib_id = lib_id or generate_id()
    if get_library_item(lib_id):
        raise InputError(f'Library item {lib_id} already exists')

    db.execute("""
        INSERT INTO u_lib_list (lib_id, lib_code, lib_desc, lib_delete, cr_user, created_at)
        VALUES (?, ?, ?, '0', ?, ?)
    """, [lib_id, code, lib_desc, _user_id(user), utc_now()])
    log_audit(db, 'library_item', lib_id, 'library_item_created',
              new_value=lib_desc, user_id=_user_id(user), user_name=_user_name(user),
              metadata={'lib_code': code})
    db.commit()
    return get_library_item(lib_id)


def update_library_item(lib_id, lib_desc, user=None):
    item = get_library_item(lib_id)
    if not item:
        raise NotFoundError(f'Library item {lib_id} not found')
    lib_desc = lib_desc.strip() if isinstance(lib_desc, str) else ''
    if not lib_desc:
        raise InputError('lib_desc is required')

    db = get_db()
    db.execute("UPDATE u_lib_list SET lib_desc = ? WHERE lib_id = ?", [lib_desc, lib_id])
    log_audit(db, 'library_item', lib_id, 'library_item_updated',
              old_value=item['lib_desc'], new_value=lib_desc,
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    return get_library_item(lib_id)


def delete_library_item(lib_id, user=None):
    """Soft delete. Rules referencing the item keep resolving its label."""
    item = get_library_item(lib_id)
    if not item:
        raise NotFoundError(f'Library item {lib_id} not found')

    db = get_db()
    db.execute("UPDATE u_lib_list SET lib_delete = '1' WHERE lib_id = ?", [lib_id])
    log_audit(db, 'library_item', lib_id, 'library_item_deleted',
              old_value=item['lib_delete'], new_value='1',
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    return True


def list_combos(combo_code):
    if combo_code not in COMBO_CONFIG:
        raise InputError(f'{combo_code} is not a combo library')
    rows = query_db(f"""
        SELECT id, lib_code, code_1, code_2, lib_com, lib_delete
        FROM u_lib_combo
        WHERE lib_code = ? AND {ACTIVE_COMBO}
        ORDER BY code_1, code_2
    """, [combo_code])
    return [dict(r) for r in rows]


def create_combo(combo_code, code_1, code_2, lib_com=None, user=None):
    if combo_code not in COMBO_CONFIG:
        raise InputError(f'{combo_code} is not a combo library')
    if not code_1 or not code_2:
        raise InputError('code_1 and code_2 are required')

    existing = query_db(f"""
        SELECT id FROM u_lib_combo
        WHERE lib_code = ? AND code_1 = ? AND code_2 = ? AND {ACTIVE_COMBO}
    """, [combo_code, code_1, code_2], one=True)
    if existing:
        raise InputError('Combination already exists')

    db = get_db()
    cur = db.execute("""
        INSERT INTO u_lib_combo (lib_code, code_1, code_2, lib_com, lib_delete, created_at)
        VALUES (?, ?, ?, ?, '0', ?)
    """, [combo_code, code_1, code_2, lib_com, utc_now()])
    combo_id = cur.lastrowid
    log_audit(db, 'library_combo', combo_id, 'library_combo_created',
              new_value=f'{code_1}->{code_2}', user_id=_user_id(user), user_name=_user_name(user),
              metadata={'lib_code': combo_code})
    db.commit()
    return dict(query_db("SELECT * FROM u_lib_combo WHERE id = ?", [combo_id], one=True))


def delete_combo(combo_code, combo_id, user=None):
    row = query_db("SELECT * FROM u_lib_combo WHERE id = ? AND lib_code = ?",
                   [combo_id, combo_code], one=True)
    if not row:
        raise NotFoundError(f'Combination {combo_id} not found')

    db = get_db()
    db.execute("UPDATE u_lib_combo SET lib_delete = '1' WHERE id = ?", [combo_id])
    log_audit(db, 'library_combo', combo_id, 'library_combo_deleted',
              old_value=f"{row['code_1']}->{row['code_2']}",
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    return True


def _user_id(user):
    return user['id'] if user else None


def _user_name(user):
    return user['name'] if user else None
