"""
PDF routes - override audit trail for a defect flag, criteria report for
a procedure.
"""
from flask import Blueprint, Response, abort, request

from defect_criteria.auth import require_auth, require_supervisor
from defect_criteria.services.overrides import get_flag
from defect_criteria.services.pdf_generator import (
    generate_flag_history_pdf, generate_pdf_filename,
    generate_procedure_report_pdf, generate_report_filename,
)
from defect_criteria.services.rule_store import get_procedure

pdf_bp = Blueprint('pdf', __name__)


def _pdf_response(pdf_bytes, filename):
    disposition = 'inline' if request.args.get('inline') else 'attachment'
    return Response(
        pdf_bytes,
        mimetype='application/pdf',
        headers={
            'Content-Disposition': f'{disposition}; filename="{filename}"'
        }
    )


@pdf_bp.route('/flags/<int:flag_id>/history.pdf')
@require_supervisor
def download_flag_history(flag_id):
    """Download (or ?inline=1 preview) the override history PDF."""
    flag = get_flag(flag_id)
    if not flag:
        abort(404, 'Defect flag not found')

    pdf_bytes = generate_flag_history_pdf(flag_id)
    if not pdf_bytes:
        abort(503, 'PDF generation not available')
    return _pdf_response(pdf_bytes, generate_pdf_filename(flag))


@pdf_bp.route('/api/defect-criteria/procedures/<int:procedure_id>/report.pdf')
@require_auth
def download_procedure_report(procedure_id):
    """Rules of a procedure with their library labels."""
    procedure = get_procedure(procedure_id)
    if not procedure:
        abort(404, 'Procedure not found')

    pdf_bytes = generate_procedure_report_pdf(procedure_id)
    if not pdf_bytes:
        abort(503, 'PDF generation not available')
    return _pdf_response(pdf_bytes, generate_report_filename(procedure))
