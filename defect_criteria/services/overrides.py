"""
Override recorder - manual corrections of defect flag verdicts.

Each override is one append-only row in defect_override_audit_log. The
flag row itself is never modified; the current verdict of a flag is its
own outcome with the latest override of each field applied on top.
"""
import json
import logging

from defect_criteria.errors import NotFoundError, OverrideRejectedError
from defect_criteria.services.db import get_db, query_db
from defect_criteria.services.evaluator import VERDICTS
from defect_criteria.services.library import PRIORITY_CODE, get_library_item
from defect_criteria.utils import utc_now

logger = logging.getLogger(__name__)

# field_changed -> column of the flag holding the original value
OVERRIDABLE_FIELDS = {
    'verdict': 'outcome',
    'severity': 'severity_id',
}


def get_flag(flag_id):
    row = query_db("SELECT * FROM inspection_defect_flags WHERE id = ?", [flag_id], one=True)
    if not row:
        return None
    flag = dict(row)
    flag['matched_rule_ids'] = json.loads(flag['matched_rule_ids'] or '[]')
    flag['observation'] = json.loads(flag['observation']) if flag['observation'] else None
    return flag


def get_history(flag_id):
    """Override entries for a flag, oldest first."""
    rows = query_db("""
        SELECT * FROM defect_override_audit_log
        WHERE defect_flag_id = ?
        ORDER BY override_timestamp ASC, id ASC
    """, [flag_id])
    return [dict(r) for r in rows]


def current_values(flag, history):
    """Effective verdict and severity after applying overrides in order."""
    values = {name: flag[column] for name, column in OVERRIDABLE_FIELDS.items()}
    for entry in history:
        if entry['field_changed'] in values:
            values[entry['field_changed']] = entry['new_value']
    return values


def get_effective_flag(flag_id):
    """The stored flag plus its current verdict/severity and override count."""
    flag = get_flag(flag_id)
    if not flag:
        raise NotFoundError(f'Defect flag {flag_id} not found')
    history = get_history(flag_id)
    values = current_values(flag, history)
    flag.update({
        'current_verdict': values['verdict'],
        'current_severity_id': values['severity'],
        'overridden': bool(history),
        'override_count': len(history),
    })
    return flag


def record_override(flag_id, new_value, reason, actor_id, field_changed='verdict',
                    ip_address=None, session_id=None):
    """
    Append an override entry for a defect flag.

    Everything is checked before the insert; a rejected override leaves
    no trace. Returns the new audit entry.
    """
    reason = (reason or '').strip()
    if not reason:
        raise OverrideRejectedError('A reason is required to override a defect flag')

    actor = _get_actor(actor_id)
    if not actor:
        raise OverrideRejectedError('Override must be made by a known, active user')

    if field_changed not in OVERRIDABLE_FIELDS:
        raise OverrideRejectedError(
            f'field must be one of {", ".join(OVERRIDABLE_FIELDS)}')

    new_value = _check_new_value(field_changed, new_value)

    flag = get_flag(flag_id)
    if not flag:
        raise NotFoundError(f'Defect flag {flag_id} not found')

    original_value = current_values(flag, get_history(flag_id))[field_changed]
    if original_value == new_value:
        raise OverrideRejectedError(f'{field_changed} is already {new_value}')

    db = get_db()
    now = utc_now()
    # Single statement: the timestamp never goes below the flag's last entry,
    # so the history stays ordered even if the clock steps back.
    cur = db.execute("""
        INSERT INTO defect_override_audit_log
        (defect_flag_id, user_id, user_name, field_changed, original_value,
         new_value, reason, ip_address, session_id, override_timestamp)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?,
                MAX(?, COALESCE((SELECT MAX(override_timestamp)
                                 FROM defect_override_audit_log
                                 WHERE defect_flag_id = ?), '')))
    """, [flag['id'], actor['id'], actor['name'], field_changed, original_value,
          new_value, reason, ip_address, session_id, now, flag['id']])
    db.commit()
    entry_id = cur.lastrowid

    logger.info("Flag %s %s overridden %s -> %s by %s",
                flag['id'], field_changed, original_value, new_value, actor['id'])
    return dict(query_db("SELECT * FROM defect_override_audit_log WHERE id = ?", [entry_id], one=True))


def _get_actor(actor_id):
    if not actor_id:
        return None
    row = query_db("SELECT id, name, role FROM inspector WHERE id = ? AND active = 1", [actor_id], one=True)
    return dict(row) if row else None


def _check_new_value(field_changed, new_value):
    if new_value is None or str(new_value).strip() == '':
        raise OverrideRejectedError(f'A new {field_changed} is required')
    new_value = str(new_value).strip()

    if field_changed == 'verdict':
        if new_value not in VERDICTS:
            raise OverrideRejectedError(f'verdict must be one of {", ".join(VERDICTS)}')
    else:
        item = get_library_item(new_value)
        if not item or item['lib_code'] != PRIORITY_CODE or item['lib_delete'] == '1':
            raise OverrideRejectedError(f'{new_value} is not an active defect priority')
    return new_value


def entry_to_json(entry):
    return {
        'id': str(entry['id']),
        'defectFlagId': str(entry['defect_flag_id']),
        'userId': entry['user_id'],
        'userName': entry['user_name'],
        'fieldChanged': entry['field_changed'],
        'originalValue': entry['original_value'],
        'newValue': entry['new_value'],
        'reason': entry['reason'],
        'ipAddress': entry['ip_address'],
        'sessionId': entry['session_id'],
        'overrideTimestamp': entry['override_timestamp'],
    }
