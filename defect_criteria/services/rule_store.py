"""
Rule store - defect criteria procedures, their rules and custom parameter
definitions.

Procedures are versioned per procedure number. Rules are never physically
deleted; disabling a rule keeps historic flags pointing at a real row.
"""
import json
import logging
import re
import sqlite3
from datetime import date

from defect_criteria.errors import ConflictError, InputError, NotFoundError
from defect_criteria.services.db import get_db, query_db, read_snapshot
from defect_criteria.services.evaluator import OPERATORS, MalformedRuleError, check_rule, compile_expression
from defect_criteria.utils import utc_now
from defect_criteria.utils.audit import log_audit

logger = logging.getLogger(__name__)

PROCEDURE_STATUSES = ('draft', 'active', 'archived')
PARAMETER_TYPES = ('number', 'text', 'boolean', 'date')

# camelCase (JSON) -> snake_case (DB)
PROCEDURE_FIELDS = {
    'procedureNumber': 'procedure_number',
    'procedureName': 'procedure_name',
    'effectiveDate': 'effective_date',
    'status': 'status',
    'notes': 'notes',
}

RULE_FIELDS = {
    'structureGroup': 'structure_group',
    'priorityId': 'priority_id',
    'defectCodeId': 'defect_code_id',
    'defectTypeId': 'defect_type_id',
    'jobpackType': 'jobpack_type',
    'elevationMin': 'elevation_min',
    'elevationMax': 'elevation_max',
    'nominalThickness': 'nominal_thickness',
    'thresholdValue': 'threshold_value',
    'thresholdText': 'threshold_text',
    'thresholdOperator': 'threshold_operator',
    'customParameters': 'custom_parameters',
    'conditionExpression': 'condition_expression',
    'autoFlag': 'auto_flag',
    'alertMessage': 'alert_message',
    'evaluationPriority': 'evaluation_priority',
}

CUSTOM_PARAM_FIELDS = {
    'parameterName': 'parameter_name',
    'parameterLabel': 'parameter_label',
    'parameterType': 'parameter_type',
    'parameterUnit': 'parameter_unit',
    'validationRules': 'validation_rules',
    'description': 'description',
}

# Columns copied when a procedure is created from another one
COPIED_RULE_COLUMNS = [
    'structure_group', 'priority_id', 'defect_code_id', 'defect_type_id',
    'jobpack_type', 'elevation_min', 'elevation_max', 'nominal_thickness',
    'threshold_value', 'threshold_text', 'threshold_operator',
    'custom_parameters', 'condition_expression', 'auto_flag',
    'alert_message', 'rule_order', 'evaluation_priority',
]

RULE_ORDERING = "ORDER BY evaluation_priority DESC, rule_order ASC, id ASC"


# ---------------------------------------------------------------------------
# Mapping helpers
# ---------------------------------------------------------------------------

def from_camel(body, field_map):
    """Pick known camelCase keys from a request body, mapped to columns."""
    return {column: body[key] for key, column in field_map.items() if key in body}


def procedure_to_json(proc):
    return {
        'id': str(proc['id']),
        'procedureNumber': proc['procedure_number'],
        'procedureName': proc['procedure_name'],
        'version': proc['version'],
        'effectiveDate': proc['effective_date'],
        'createdBy': proc['created_by'],
        'createdAt': proc['created_at'],
        'status': proc['status'],
        'notes': proc['notes'],
    }


def rule_to_json(rule):
    data = {key: rule.get(column) for key, column in RULE_FIELDS.items()}
    data['customParameters'] = _decode_json(rule.get('custom_parameters'))
    data['autoFlag'] = bool(rule.get('auto_flag'))
    data.update({
        'id': str(rule['id']),
        'procedureId': str(rule['procedure_id']),
        'ruleOrder': rule.get('rule_order'),
        'isActive': bool(rule.get('is_active')),
        'createdAt': rule.get('created_at'),
        'updatedAt': rule.get('updated_at'),
    })
    return data


def custom_param_to_json(param):
    data = {key: param.get(column) for key, column in CUSTOM_PARAM_FIELDS.items()}
    data['validationRules'] = _decode_json(param.get('validation_rules'))
    data.update({
        'id': str(param['id']),
        'procedureId': str(param['procedure_id']),
        'isActive': bool(param.get('is_active')),
        'createdAt': param.get('created_at'),
    })
    return data


def _text(value, field):
    """Stripped text, '' for None. Numbers and objects are rejected."""
    if value is None:
        return ''
    if not isinstance(value, str):
        raise InputError(f'{field} must be text')
    return value.strip()


def _decode_json(value):
    if value is None or not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError:
        return value


def parse_date(value, field='date'):
    """ISO date or datetime string -> 'YYYY-MM-DD'."""
    if isinstance(value, date):
        return value.isoformat()[:10]
    try:
        return date.fromisoformat(str(value)[:10]).isoformat()
    except (TypeError, ValueError):
        raise InputError(f'{field} must be an ISO date (YYYY-MM-DD)')


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------

def list_procedures(status=None):
    """All procedures, newest effective date first."""
    query = "SELECT * FROM defect_criteria_procedures"
    params = []
    if status:
        if status not in PROCEDURE_STATUSES:
            raise InputError(f'status must be one of {", ".join(PROCEDURE_STATUSES)}')
        query += " WHERE status = ?"
        params.append(status)
    query += " ORDER BY effective_date DESC, version DESC, id DESC"
    return [dict(r) for r in query_db(query, params)]


def get_procedure(procedure_id):
    row = query_db("SELECT * FROM defect_criteria_procedures WHERE id = ?", [procedure_id], one=True)
    return dict(row) if row else None


def require_procedure(procedure_id):
    proc = get_procedure(procedure_id)
    if not proc:
        raise NotFoundError(f'Procedure {procedure_id} not found')
    return proc


def get_applicable_procedure(inspection_date):
    """
    The most recent active procedure effective on or before the
    inspection date, or None.
    """
    row = query_db("""
        SELECT * FROM defect_criteria_procedures
        WHERE status = 'active' AND effective_date <= ?
        ORDER BY effective_date DESC, version DESC, id DESC
        LIMIT 1
    """, [parse_date(inspection_date, 'inspectionDate')], one=True)
    return dict(row) if row else None


def create_procedure(procedure_number, procedure_name, effective_date,
                     notes=None, copy_from_procedure_id=None, user=None):
    """
    Create a new draft procedure. The version is one above the highest
    existing version for the same procedure number.
    """
    procedure_number = _text(procedure_number, 'procedureNumber')
    procedure_name = _text(procedure_name, 'procedureName')
    if not procedure_number or not procedure_name:
        raise InputError('procedureNumber and procedureName are required')
    effective_date = parse_date(effective_date, 'effectiveDate')

    source = None
    if copy_from_procedure_id:
        source = require_procedure(copy_from_procedure_id)

    db = get_db()
    latest = query_db("""
        SELECT MAX(version) AS version FROM defect_criteria_procedures
        WHERE procedure_number = ?
    """, [procedure_number], one=True)
    next_version = (latest['version'] or 0) + 1
    now = utc_now()

    try:
        cur = db.execute("""
            INSERT INTO defect_criteria_procedures
            (procedure_number, procedure_name, version, effective_date,
             created_by, created_at, status, notes)
            VALUES (?, ?, ?, ?, ?, ?, 'draft', ?)
        """, [procedure_number, procedure_name, next_version, effective_date,
              _user_id(user), now, notes or None])
    except sqlite3.IntegrityError:
        db.rollback()
        raise ConflictError(f'Version {next_version} of {procedure_number} already exists, retry')
    procedure_id = cur.lastrowid

    log_audit(db, 'procedure', procedure_id, 'procedure_created',
              new_value=f'{procedure_number} v{next_version}',
              user_id=_user_id(user), user_name=_user_name(user))

    if source:
        copied = _copy_rules(db, source['id'], procedure_id, now)
        log_audit(db, 'procedure', procedure_id, 'rules_copied',
                  new_value=str(copied), user_id=_user_id(user), user_name=_user_name(user),
                  metadata={'source_procedure_id': source['id']})
        logger.info("Copied %d rules from procedure %s to %s", copied, source['id'], procedure_id)

    db.commit()
    return get_procedure(procedure_id)


def _copy_rules(db, source_id, target_id, now):
    columns = ', '.join(COPIED_RULE_COLUMNS)
    cur = db.execute(f"""
        INSERT INTO defect_criteria_rules (procedure_id, {columns}, is_active, created_at)
        SELECT ?, {columns}, 1, ?
        FROM defect_criteria_rules
        WHERE procedure_id = ? AND is_active = 1
        ORDER BY rule_order, id
    """, [target_id, now, source_id])
    return cur.rowcount


def update_procedure(procedure_id, fields, user=None):
    """Update procedure number, name, effective date, status or notes."""
    proc = require_procedure(procedure_id)
    updates = {k: v for k, v in fields.items() if k in PROCEDURE_FIELDS.values()}
    if not updates:
        raise InputError('No valid update fields found', details={'receivedKeys': sorted(fields)})

    if 'status' in updates and updates['status'] not in PROCEDURE_STATUSES:
        raise InputError(f'status must be one of {", ".join(PROCEDURE_STATUSES)}')
    if 'effective_date' in updates:
        updates['effective_date'] = parse_date(updates['effective_date'], 'effectiveDate')
    for required in ('procedure_number', 'procedure_name'):
        if required in updates:
            updates[required] = _text(updates[required], required)
            if not updates[required]:
                raise InputError(f'{required} cannot be empty')

    db = get_db()
    assignments = ', '.join(f'{column} = ?' for column in updates)
    try:
        db.execute(f"UPDATE defect_criteria_procedures SET {assignments} WHERE id = ?",
                   list(updates.values()) + [procedure_id])
    except sqlite3.IntegrityError as exc:
        db.rollback()
        raise ConflictError(str(exc))

    old = {k: proc[k] for k in updates}
    log_audit(db, 'procedure', procedure_id, 'procedure_updated',
              old_value=old, new_value=updates,
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    logger.info("Procedure %s updated: %s", procedure_id, sorted(updates))
    return get_procedure(procedure_id)


def delete_procedure(procedure_id, user=None):
    """Delete a draft procedure that has never been used for validation."""
    proc = require_procedure(procedure_id)
    if proc['status'] != 'draft':
        raise ConflictError('Only draft procedures can be deleted')

    used = query_db("SELECT COUNT(*) AS n FROM inspection_defect_flags WHERE procedure_id = ?",
                    [procedure_id], one=True)
    if used['n']:
        raise ConflictError('Procedure has recorded defect flags and cannot be deleted')

    db = get_db()
    db.execute("DELETE FROM defect_criteria_procedures WHERE id = ?", [procedure_id])
    log_audit(db, 'procedure', procedure_id, 'procedure_deleted',
              old_value=f"{proc['procedure_number']} v{proc['version']}",
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    return True


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

def list_rules(procedure_id, include_inactive=False):
    """Rules for a procedure ordered by evaluation priority."""
    query = "SELECT * FROM defect_criteria_rules WHERE procedure_id = ?"
    if not include_inactive:
        query += " AND is_active = 1"
    return [dict(r) for r in query_db(f"{query} {RULE_ORDERING}", [procedure_id])]


def get_rule(rule_id):
    row = query_db("SELECT * FROM defect_criteria_rules WHERE id = ?", [rule_id], one=True)
    return dict(row) if row else None


def require_rule(rule_id):
    rule = get_rule(rule_id)
    if not rule:
        raise NotFoundError(f'Rule {rule_id} not found')
    return rule


def get_active_rules(procedure_id):
    """
    (procedure, active rules) read from one snapshot. The procedure is
    None when it does not exist.
    """
    with read_snapshot() as db:
        proc = db.execute("SELECT * FROM defect_criteria_procedures WHERE id = ?",
                          [procedure_id]).fetchone()
        if proc is None:
            return None, []
        rules = db.execute(
            f"SELECT * FROM defect_criteria_rules WHERE procedure_id = ? AND is_active = 1 {RULE_ORDERING}",
            [procedure_id]).fetchall()
        return dict(proc), [dict(r) for r in rules]


def create_rule(procedure_id, fields, user=None):
    """Add a rule at the end of the procedure's rule order."""
    require_procedure(procedure_id)
    values = _clean_rule_fields(fields)
    for required in ('structure_group', 'priority_id'):
        if not values.get(required):
            raise InputError(f'{required} is required')

    db = get_db()
    last = query_db("SELECT MAX(rule_order) AS rule_order FROM defect_criteria_rules WHERE procedure_id = ?",
                    [procedure_id], one=True)
    values['rule_order'] = (last['rule_order'] or 0) + 1
    values.setdefault('evaluation_priority', 0)
    values.setdefault('auto_flag', 0)
    values['procedure_id'] = procedure_id
    values['is_active'] = 1
    values['created_at'] = utc_now()
    _check_rule(values)

    columns = ', '.join(values)
    placeholders = ', '.join('?' * len(values))
    cur = db.execute(f"INSERT INTO defect_criteria_rules ({columns}) VALUES ({placeholders})",
                     list(values.values()))
    rule_id = cur.lastrowid
    log_audit(db, 'rule', rule_id, 'rule_created',
              new_value=_audit_snapshot(values),
              user_id=_user_id(user), user_name=_user_name(user),
              metadata={'procedure_id': procedure_id})
    db.commit()
    return get_rule(rule_id)


def update_rule(rule_id, fields, user=None):
    """Update the given fields only; absent keys are left untouched."""
    rule = require_rule(rule_id)
    updates = _clean_rule_fields(fields)
    if not updates:
        raise InputError('No valid update fields found', details={'receivedKeys': sorted(fields)})

    merged = dict(rule, **updates)
    _check_rule(merged)
    for required in ('structure_group', 'priority_id'):
        if required in updates and not updates[required]:
            raise InputError(f'{required} cannot be empty')

    updates['updated_at'] = utc_now()
    db = get_db()
    assignments = ', '.join(f'{column} = ?' for column in updates)
    db.execute(f"UPDATE defect_criteria_rules SET {assignments} WHERE id = ?",
               list(updates.values()) + [rule_id])
    log_audit(db, 'rule', rule_id, 'rule_updated',
              old_value=_audit_snapshot({k: rule[k] for k in updates if k in rule}),
              new_value=_audit_snapshot(updates),
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    return get_rule(rule_id)


def disable_rule(rule_id, user=None):
    """Soft-disable. Flags already pointing at the rule stay valid."""
    return _set_rule_active(rule_id, False, user)


def enable_rule(rule_id, user=None):
    return _set_rule_active(rule_id, True, user)


def _set_rule_active(rule_id, active, user):
    rule = require_rule(rule_id)
    if bool(rule['is_active']) == active:
        return rule
    db = get_db()
    db.execute("UPDATE defect_criteria_rules SET is_active = ?, updated_at = ? WHERE id = ?",
               [1 if active else 0, utc_now(), rule_id])
    log_audit(db, 'rule', rule_id, 'rule_enabled' if active else 'rule_disabled',
              old_value=str(rule['is_active']), new_value='1' if active else '0',
              user_id=_user_id(user), user_name=_user_name(user))
    db.commit()
    logger.info("Rule %s %s", rule_id, 'enabled' if active else 'disabled')
    return get_rule(rule_id)


def _clean_rule_fields(fields):
    """Validate and normalise rule columns supplied by an admin."""
    values = {k: v for k, v in fields.items() if k in RULE_FIELDS.values()}

    for column in ('jobpack_type', 'threshold_text', 'threshold_operator',
                   'condition_expression', 'defect_code_id', 'defect_type_id'):
        if column in values and values[column] == '':
            values[column] = None

    for column in ('elevation_min', 'elevation_max', 'nominal_thickness', 'threshold_value'):
        if column in values and values[column] not in (None, ''):
            try:
                values[column] = float(values[column])
            except (TypeError, ValueError):
                raise InputError(f'{column} must be a number')
        elif column in values:
            values[column] = None

    if 'evaluation_priority' in values:
        try:
            values['evaluation_priority'] = int(values['evaluation_priority'] or 0)
        except (TypeError, ValueError):
            raise InputError('evaluation_priority must be an integer')

    if 'auto_flag' in values:
        values['auto_flag'] = 1 if values['auto_flag'] else 0

    operator = values.get('threshold_operator')
    if operator is not None and operator not in OPERATORS:
        raise InputError(f'threshold_operator must be one of {" ".join(OPERATORS)}')

    if 'custom_parameters' in values:
        params = values['custom_parameters']
        if isinstance(params, str):
            params = _decode_json(params)
        if params in (None, {}):
            values['custom_parameters'] = None
        elif not isinstance(params, dict):
            raise InputError('custom_parameters must be an object')
        else:
            for key, expected in params.items():
                if isinstance(expected, dict) and expected.get('operator') not in OPERATORS:
                    raise InputError(f'custom parameter {key} has an invalid operator')
            values['custom_parameters'] = json.dumps(params, sort_keys=True)

    if values.get('condition_expression'):
        try:
            compile_expression(values['condition_expression'])
        except MalformedRuleError as exc:
            raise InputError(f'condition_expression: {exc}')

    _check_elevation_range(values)
    return values


def _check_rule(rule):
    """Refuse to save a rule the evaluator would skip as malformed."""
    try:
        check_rule(rule)
    except MalformedRuleError as exc:
        raise InputError(f'Rule cannot be evaluated: {exc}')


def _check_elevation_range(values):
    low, high = values.get('elevation_min'), values.get('elevation_max')
    if low is not None and high is not None and low > high:
        raise InputError('elevation_min cannot be greater than elevation_max')


def _audit_snapshot(values):
    return {k: v for k, v in values.items() if k not in ('created_at', 'updated_at')}


# ---------------------------------------------------------------------------
# Custom parameters
# ---------------------------------------------------------------------------

def list_custom_params(procedure_id, include_inactive=False):
    query = "SELECT * FROM defect_criteria_custom_params WHERE procedure_id = ?"
    if not include_inactive:
        query += " AND is_active = 1"
    query += " ORDER BY parameter_name"
    return [dict(r) for r in query_db(query, [procedure_id])]


def create_custom_param(procedure_id, fields, user=None):
    require_procedure(procedure_id)
    values = {k: v for k, v in fields.items() if k in CUSTOM_PARAM_FIELDS.values()}
    name = _text(values.get('parameter_name'), 'parameter_name')
    if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', name):
        raise InputError('parameter_name must be an identifier (letters, digits, underscore)')
    values['parameter_name'] = name
    values.setdefault('parameter_type', 'number')
    if values['parameter_type'] not in PARAMETER_TYPES:
        raise InputError(f'parameter_type must be one of {", ".join(PARAMETER_TYPES)}')

    rules = values.get('validation_rules')
    if isinstance(rules, str):
        rules = _decode_json(rules)
    if rules is not None and not isinstance(rules, dict):
        raise InputError('validation_rules must be an object')
    if rules and rules.get('regex'):
        try:
            re.compile(rules['regex'])
        except re.error as exc:
            raise InputError(f'validation_rules.regex is invalid: {exc}')
    values['validation_rules'] = json.dumps(rules, sort_keys=True) if rules else None

    values.update({'procedure_id': procedure_id, 'is_active': 1, 'created_at': utc_now()})
    db = get_db()
    columns = ', '.join(values)
    placeholders = ', '.join('?' * len(values))
    try:
        cur = db.execute(f"INSERT INTO defect_criteria_custom_params ({columns}) VALUES ({placeholders})",
                         list(values.values()))
    except sqlite3.IntegrityError:
        db.rollback()
        raise ConflictError(f'Parameter {name} already exists for this procedure')
    param_id = cur.lastrowid
    log_audit(db, 'custom_param', param_id, 'custom_param_created',
              new_value=name, user_id=_user_id(user), user_name=_user_name(user),
              metadata={'procedure_id': procedure_id})
    db.commit()
    return dict(query_db("SELECT * FROM defect_criteria_custom_params WHERE id = ?", [param_id], one=True))


def validate_custom_values(procedure_id, values):
    """
    Check observation custom values against the procedure's parameter
    definitions. Returns a list of problem strings; never raises on bad data.
    """
    values = values or {}
    problems = []
    for param in list_custom_params(procedure_id):
        name = param['parameter_name']
        rules = _decode_json(param['validation_rules']) or {}
        if not isinstance(rules, dict):
            logger.warning("Custom parameter %s has unreadable validation rules", param['id'])
            continue
        if name not in values or values[name] in (None, ''):
            if rules.get('required'):
                problems.append(f'{name} is required')
            continue

        value = values[name]
        kind = param['parameter_type']
        if kind == 'number':
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                problems.append(f'{name} must be a number')
                continue
            if rules.get('min') is not None and value < rules['min']:
                problems.append(f"{name} is below minimum {rules['min']}")
            if rules.get('max') is not None and value > rules['max']:
                problems.append(f"{name} is above maximum {rules['max']}")
        elif kind == 'boolean':
            if not isinstance(value, bool):
                problems.append(f'{name} must be true or false')
        elif kind == 'date':
            try:
                parse_date(value, name)
            except InputError:
                problems.append(f'{name} must be an ISO date')
        else:
            if not isinstance(value, str):
                problems.append(f'{name} must be text')
                continue
            if rules.get('regex'):
                try:
                    if not re.fullmatch(rules['regex'], value):
                        problems.append(f'{name} does not match the expected format')
                except re.error:
                    logger.warning("Custom parameter %s has an invalid regex", param['id'])
    return problems


def _user_id(user):
    return user['id'] if user else None


def _user_name(user):
    return user['name'] if user else None
