"""
Library routes - reference lists used by the criteria screens, and
administrative maintenance of U_LIB_LIST / U_LIB_COMBO.
"""
from flask import Blueprint, jsonify, request

from defect_criteria.auth import get_current_user, require_admin, require_auth
from defect_criteria.errors import InputError
from defect_criteria.services import library

library_bp = Blueprint('library', __name__)


def _json_body():
    body = request.get_json(silent=True)
    if not isinstance(body, dict):
        raise InputError('Request body must be a JSON object')
    return body


def _query_arg(name):
    """Query parameter with the front end's 'undefined'/'null' treated as absent."""
    value = request.args.get(name)
    if value in ('', 'undefined', 'null'):
        return None
    return value


# ---------------------------------------------------------------------------
# Criteria lookups
# ---------------------------------------------------------------------------

@library_bp.route('/api/defect-criteria/library/priorities')
@require_auth
def priorities():
    return jsonify(library.get_defect_priorities())


@library_bp.route('/api/defect-criteria/library/codes')
@require_auth
def codes():
    """Defect codes; ?structureType=platform|pipeline (default platform)."""
    return jsonify(library.get_defect_codes(_query_arg('structureType') or 'platform'))


@library_bp.route('/api/defect-criteria/library/types')
@require_auth
def types():
    """Defect types, optionally only those valid for ?defectCodeId=."""
    return jsonify(library.get_defect_types(_query_arg('defectCodeId')))


@library_bp.route('/api/defect-criteria/library/structure-groups')
@require_auth
def structure_groups():
    return jsonify(library.get_structure_groups())


@library_bp.route('/api/defect-criteria/library/priority-colors')
@require_auth
def priority_colors():
    return jsonify(library.get_priority_colors())


# ---------------------------------------------------------------------------
# Library maintenance
# ---------------------------------------------------------------------------

@library_bp.route('/api/library/<lib_code>')
@require_auth
def list_items(lib_code):
    return jsonify({'data': library.get_library_items(lib_code)})


@library_bp.route('/api/library/<lib_code>', methods=['POST'])
@require_admin
def create_item(lib_code):
    body = _json_body()
    item = library.create_library_item(lib_code, body.get('lib_desc'),
                                       lib_id=body.get('lib_id'), user=get_current_user())
    return jsonify({'data': item}), 201


@library_bp.route('/api/library/item/<lib_id>', methods=['PATCH'])
@require_admin
def update_item(lib_id):
    body = _json_body()
    item = library.update_library_item(lib_id, body.get('lib_desc'), user=get_current_user())
    return jsonify({'data': item})


@library_bp.route('/api/library/item/<lib_id>', methods=['DELETE'])
@require_admin
def delete_item(lib_id):
    library.delete_library_item(lib_id, user=get_current_user())
    return jsonify({'success': True})


@library_bp.route('/api/library/combo/<combo_code>')
@require_auth
def list_combos(combo_code):
    return jsonify({'data': library.list_combos(combo_code)})


@library_bp.route('/api/library/combo/<combo_code>', methods=['POST'])
@require_admin
def create_combo(combo_code):
    body = _json_body()
    combo = library.create_combo(combo_code, body.get('code_1'), body.get('code_2'),
                                 lib_com=body.get('lib_com'), user=get_current_user())
    return jsonify({'data': combo}), 201


@library_bp.route('/api/library/combo/<combo_code>/<int:combo_id>', methods=['DELETE'])
@require_admin
def delete_combo(combo_code, combo_id):
    library.delete_combo(combo_code, combo_id, user=get_current_user())
    return jsonify({'success': True})
