"""
PDF Generator Service - override audit trail for a defect flag and the
criteria report for a procedure.
Uses WeasyPrint for HTML to PDF conversion.
"""
import re
from datetime import datetime

from flask import render_template

from defect_criteria.services import overrides, rule_store
from defect_criteria.services.library import get_library_labels


def _get_weasyprint():
    """Lazy import weasyprint (needs system libraries at runtime)."""
    try:
        from weasyprint import HTML
        return HTML
    except (ImportError, OSError):
        return None


def get_flag_report_data(flag_id):
    """
    Collect the flag, the rule that fired and its override trail.
    Returns None if the flag does not exist.
    """
    flag = overrides.get_flag(flag_id)
    if not flag:
        return None

    history = overrides.get_history(flag_id)
    values = overrides.current_values(flag, history)
    rule = rule_store.get_rule(flag['rule_id']) if flag['rule_id'] else None
    procedure = rule_store.get_procedure(flag['procedure_id']) if flag['procedure_id'] else None

    lib_ids = [flag['severity_id'], values['severity']]
    if rule:
        lib_ids += [rule['priority_id'], rule['defect_code_id'], rule['defect_type_id']]
    lib_ids += [e['original_value'] for e in history if e['field_changed'] == 'severity']
    lib_ids += [e['new_value'] for e in history if e['field_changed'] == 'severity']
    labels = get_library_labels(lib_ids)

    return {
        'flag': flag,
        'rule': rule,
        'procedure': procedure,
        'history': history,
        'labels': labels,
        'current_verdict': values['verdict'],
        'current_severity': labels.get(values['severity'], values['severity']),
        'generated_at': datetime.now().strftime('%d.%m.%Y %H:%M'),
    }


def generate_flag_history_pdf(flag_id):
    """Render the audit trail PDF. None if WeasyPrint or the flag is missing."""
    HTML = _get_weasyprint()
    if HTML is None:
        return None

    data = get_flag_report_data(flag_id)
    if not data:
        return None

    html_content = render_template('pdf/override_history.html', **data)
    return HTML(string=html_content).write_pdf()


def generate_pdf_filename(flag):
    """DEFECT_FLAG_000123_20260127.pdf"""
    date_str = (flag['created_at'] or '')[:10].replace('-', '') or datetime.now().strftime('%Y%m%d')
    return 'DEFECT_FLAG_{:06d}_{}.pdf'.format(int(flag['id']), date_str)


# ---------------------------------------------------------------------------
# Procedure criteria report
# ---------------------------------------------------------------------------

def describe_condition(rule):
    """Human-readable rule condition, e.g. '> 5; elevation -20 to -5'."""
    parts = []
    operator = rule.get('threshold_operator')
    if rule.get('threshold_value') is not None:
        parts.append(f"{operator} {rule['threshold_value']:g}")
    if rule.get('threshold_text'):
        text_operator = '==' if rule.get('threshold_value') is not None else (operator or '==')
        parts.append(f"{text_operator} {rule['threshold_text']}")

    low, high = rule.get('elevation_min'), rule.get('elevation_max')
    if low is not None and high is not None:
        parts.append(f'elevation {low:g} to {high:g}')
    elif low is not None:
        parts.append(f'elevation >= {low:g}')
    elif high is not None:
        parts.append(f'elevation <= {high:g}')

    if rule.get('custom_parameters'):
        parts.append(rule['custom_parameters'])
    if rule.get('condition_expression'):
        parts.append(rule['condition_expression'])
    return '; '.join(parts) or 'N/A'


def get_procedure_report_data(procedure_id):
    """
    Active rules of a procedure grouped by defect code, each group
    sorted by priority label with observations last.
    Returns None if the procedure does not exist.
    """
    procedure = rule_store.get_procedure(procedure_id)
    if not procedure:
        return None

    rules = rule_store.list_rules(procedure_id)
    lib_ids = []
    for rule in rules:
        lib_ids += [rule['priority_id'], rule['defect_code_id'], rule['defect_type_id']]
    labels = get_library_labels(lib_ids)

    groups = {}
    for rule in rules:
        code = rule['defect_code_id']
        key = f"{labels.get(code, code)} ({code})" if code else 'Any defect code'
        priority = labels.get(rule['priority_id'], rule['priority_id'] or '-')
        groups.setdefault(key, []).append({
            'order': rule['rule_order'],
            'structure_group': rule['structure_group'],
            'defect_type': (labels.get(rule['defect_type_id'], rule['defect_type_id']) or '-').title(),
            'condition': describe_condition(rule),
            'priority': priority,
            'evaluation_priority': rule['evaluation_priority'],
            'auto_flag': bool(rule['auto_flag']),
            'alert_message': rule['alert_message'],
        })

    for rows in groups.values():
        rows.sort(key=lambda r: ('OBSERVATION' in r['priority'].upper(), r['priority'].casefold()))

    return {
        'procedure': procedure,
        'groups': sorted(groups.items()),
        'rule_count': len(rules),
        'generated_at': datetime.now().strftime('%d.%m.%Y %H:%M'),
    }


def generate_procedure_report_pdf(procedure_id):
    """Render the criteria report PDF. None if WeasyPrint or the procedure is missing."""
    HTML = _get_weasyprint()
    if HTML is None:
        return None

    data = get_procedure_report_data(procedure_id)
    if not data:
        return None

    html_content = render_template('pdf/criteria_report.html', **data)
    return HTML(string=html_content).write_pdf()


def generate_report_filename(procedure):
    """DEFECT_CRITERIA_DC-001_v2.pdf"""
    number = re.sub(r'[^A-Za-z0-9_-]+', '_', procedure['procedure_number'])
    return f"DEFECT_CRITERIA_{number}_v{procedure['version']}.pdf"
