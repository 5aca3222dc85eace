"""
Audit Log Helper
Provides log_audit() for recording administrative changes
(procedures, rules, custom parameters, library items).

Overrides of defect flags have their own append-only table, see
services/overrides.py.

Usage:
    from defect_criteria.utils.audit import log_audit

    log_audit(
        db=conn,
        entity_type='rule',
        entity_id=rule_id,
        action='rule_disabled',
        old_value='1',
        new_value='0',
        user_id=current_user['id'],
        user_name=current_user['name']
    )
"""
import json

from defect_criteria.utils import generate_id, utc_now


def log_audit(db, entity_type, entity_id, action,
              old_value=None, new_value=None,
              user_id=None, user_name=None, metadata=None):
    """
    Record an audit trail entry. The caller commits.

    Args:
        db: SQLite connection
        entity_type: 'procedure', 'rule', 'custom_param', 'library_item', 'library_combo'
        entity_id: ID of the entity being changed
        action: What happened (see ACTION_TYPES below)
        old_value: Previous state (optional)
        new_value: New state (optional)
        user_id: Who performed the action
        user_name: Display name (denormalized for quick reads)
        metadata: dict or JSON string with extra context (optional)
    """
    audit_id = generate_id('aud')
    if metadata is not None and not isinstance(metadata, str):
        metadata = json.dumps(metadata, default=str, sort_keys=True)

    db.execute(
        '''INSERT INTO audit_log
           (id, entity_type, entity_id, action,
            old_value, new_value, user_id, user_name, metadata, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)''',
        (audit_id, entity_type, str(entity_id), action,
         _as_text(old_value), _as_text(new_value),
         user_id or 'system', user_name or 'System',
         metadata, utc_now())
    )

    return audit_id


def get_audit_entries(db, entity_type, entity_id):
    """Audit entries for one entity, oldest first."""
    rows = db.execute(
        '''SELECT * FROM audit_log
           WHERE entity_type = ? AND entity_id = ?
           ORDER BY created_at, rowid''',
        (entity_type, str(entity_id))
    ).fetchall()
    return [dict(r) for r in rows]


def _as_text(value):
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str, sort_keys=True)


# --- Standard action types for reference ---
# procedure_created    - New procedure version created (draft)
# procedure_updated    - Procedure fields edited (status changes included)
# procedure_deleted    - Draft procedure removed
# rules_copied         - Rules copied from another procedure on creation
# rule_created         - New rule added to a procedure
# rule_updated         - Rule fields edited
# rule_disabled        - Rule soft-disabled (never physically deleted)
# rule_enabled         - Rule re-enabled
# custom_param_created - Custom parameter definition added
# library_item_created / library_item_updated / library_item_deleted
# library_combo_created / library_combo_deleted
# library_imported     - Bulk workbook import
