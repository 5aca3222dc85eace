"""
Validation routes - evaluate observations, override flags, read history.
Used by inspection-entry screens.
"""
from flask import Blueprint, jsonify, request, session

from defect_criteria.auth import require_auth
from defect_criteria.errors import InputError
from defect_criteria.services import validation
from defect_criteria.services.evaluator import Observation

validation_bp = Blueprint('validation', __name__)


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InputError('Request body must be a JSON object')
    return body


def _procedure_id(value):
    """Integer id, or None when absent. Anything else is a bad request."""
    if value in (None, '', 'null', 'undefined'):
        return None
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().isdigit():
        return int(value)
    raise InputError('procedureId must be an integer')


@validation_bp.route('/validate', methods=['POST'])
@require_auth
def validate():
    """Evaluate an observation against its procedure's rules and record the flag."""
    body = _json_body()
    try:
        observation = Observation.from_json(body.get('observation') or {})
    except ValueError as exc:
        raise InputError(str(exc))

    result = validation.validate(
        observation,
        procedure_id=_procedure_id(body.get('procedureId')),
        inspection_id=body.get('inspectionId'),
        event_id=body.get('eventId'),
        actor_id=session['user_id'],
    )
    return jsonify(result)


@validation_bp.route('/override', methods=['POST'])
@require_auth
def override():
    """Record a manual override. The acting user comes from the session."""
    body = _json_body()
    flag_id = body.get('flagId') or body.get('defectFlagId')
    if not flag_id:
        raise InputError('flagId is required')

    field_changed = body.get('field') or body.get('fieldChanged') or 'verdict'
    new_value = body.get('newValue')
    if field_changed == 'verdict' and body.get('verdict') is not None:
        new_value = body['verdict']

    entry = validation.override(
        flag_id, new_value, body.get('reason'), session['user_id'],
        field_changed=field_changed,
        ip_address=request.remote_addr,
        session_id=session.get('session_id'),
    )
    return jsonify(entry), 201


@validation_bp.route('/history/<flag_id>')
@require_auth
def history(flag_id):
    """Override trail of a flag, oldest first."""
    return jsonify(validation.history(flag_id))


@validation_bp.route('/flags/<flag_id>')
@require_auth
def get_flag(flag_id):
    """A flag with its current (overridden) verdict."""
    return jsonify(validation.flag(flag_id))
