"""
Defect criteria admin routes - procedures, rules, custom parameters.
Reads are open to any signed-in user; writes are admin only.
"""
from flask import Blueprint, jsonify, request

from defect_criteria.auth import get_current_user, require_admin, require_auth
from defect_criteria.errors import InputError
from defect_criteria.services import rule_store
from defect_criteria.services.rule_store import (
    CUSTOM_PARAM_FIELDS, PROCEDURE_FIELDS, RULE_FIELDS,
    custom_param_to_json, from_camel, procedure_to_json, rule_to_json,
)

criteria_bp = Blueprint('criteria', __name__, url_prefix='/api/defect-criteria')


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InputError('Request body must be a JSON object')
    return body


def _update_fields(body, field_map):
    fields = from_camel(body, field_map)
    if not fields:
        raise InputError('No valid update fields found', details={'receivedKeys': sorted(body)})
    return fields


def _flag(name):
    return request.args.get(name, '').lower() in ('1', 'true', 'yes')


# ---------------------------------------------------------------------------
# Procedures
# ---------------------------------------------------------------------------

@criteria_bp.route('/procedures')
@require_auth
def list_procedures():
    procedures = rule_store.list_procedures(status=request.args.get('status') or None)
    return jsonify([procedure_to_json(p) for p in procedures])


@criteria_bp.route('/procedures', methods=['POST'])
@require_admin
def create_procedure():
    body = _json_body()
    procedure = rule_store.create_procedure(
        body.get('procedureNumber'),
        body.get('procedureName'),
        body.get('effectiveDate'),
        notes=body.get('notes'),
        copy_from_procedure_id=body.get('copyFromProcedureId'),
        user=get_current_user(),
    )
    return jsonify(procedure_to_json(procedure)), 201


@criteria_bp.route('/procedures/applicable')
@require_auth
def applicable_procedure():
    """Procedure in force on ?date=YYYY-MM-DD (null if none)."""
    inspection_date = request.args.get('date')
    if not inspection_date:
        raise InputError('date is required')
    procedure = rule_store.get_applicable_procedure(inspection_date)
    return jsonify(procedure_to_json(procedure) if procedure else None)


@criteria_bp.route('/procedures/<int:procedure_id>')
@require_auth
def get_procedure(procedure_id):
    """Procedure with its rules."""
    procedure = rule_store.require_procedure(procedure_id)
    data = procedure_to_json(procedure)
    data['rules'] = [rule_to_json(r) for r in
                     rule_store.list_rules(procedure_id, include_inactive=_flag('includeInactive'))]
    return jsonify(data)


@criteria_bp.route('/procedures/<int:procedure_id>', methods=['PATCH'])
@require_admin
def update_procedure(procedure_id):
    body = _json_body()
    procedure = rule_store.update_procedure(procedure_id, _update_fields(body, PROCEDURE_FIELDS),
                                            user=get_current_user())
    return jsonify(procedure_to_json(procedure))


@criteria_bp.route('/procedures/<int:procedure_id>', methods=['DELETE'])
@require_admin
def delete_procedure(procedure_id):
    """Delete a procedure (only if in draft status)."""
    rule_store.delete_procedure(procedure_id, user=get_current_user())
    return jsonify({'success': True})


@criteria_bp.route('/procedures/<int:procedure_id>/custom-params')
@require_auth
def list_custom_params(procedure_id):
    rule_store.require_procedure(procedure_id)
    params = rule_store.list_custom_params(procedure_id, include_inactive=_flag('includeInactive'))
    return jsonify([custom_param_to_json(p) for p in params])


@criteria_bp.route('/procedures/<int:procedure_id>/custom-params', methods=['POST'])
@require_admin
def create_custom_param(procedure_id):
    body = _json_body()
    param = rule_store.create_custom_param(procedure_id, from_camel(body, CUSTOM_PARAM_FIELDS),
                                           user=get_current_user())
    return jsonify(custom_param_to_json(param)), 201


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------

@criteria_bp.route('/rules')
@require_auth
def list_rules():
    """Rules for ?procedureId=, highest evaluation priority first."""
    procedure_id = request.args.get('procedureId')
    if not procedure_id:
        raise InputError('procedureId is required')
    rules = rule_store.list_rules(procedure_id, include_inactive=_flag('includeInactive'))
    return jsonify([rule_to_json(r) for r in rules])


@criteria_bp.route('/rules', methods=['POST'])
@require_admin
def create_rule():
    body = _json_body()
    procedure_id = body.get('procedureId')
    if not procedure_id:
        raise InputError('procedureId is required')
    rule = rule_store.create_rule(procedure_id, from_camel(body, RULE_FIELDS), user=get_current_user())
    return jsonify(rule_to_json(rule)), 201


@criteria_bp.route('/rules/<int:rule_id>')
@require_auth
def get_rule(rule_id):
    return jsonify(rule_to_json(rule_store.require_rule(rule_id)))


@criteria_bp.route('/rules/<int:rule_id>', methods=['PATCH'])
@require_admin
def update_rule(rule_id):
    body = _json_body()
    rule = rule_store.update_rule(rule_id, _update_fields(body, RULE_FIELDS), user=get_current_user())
    return jsonify(rule_to_json(rule))


@criteria_bp.route('/rules/<int:rule_id>', methods=['DELETE'])
@require_admin
def disable_rule(rule_id):
    """Soft-disable a rule; it stays referenced by historic flags."""
    rule = rule_store.disable_rule(rule_id, user=get_current_user())
    return jsonify({'success': True, 'rule': rule_to_json(rule)})


@criteria_bp.route('/rules/<int:rule_id>/enable', methods=['POST'])
@require_admin
def enable_rule(rule_id):
    rule = rule_store.enable_rule(rule_id, user=get_current_user())
    return jsonify(rule_to_json(rule))
