"""
Validation facade - the entry point used by inspection workflows.

validate()  evaluates an observation and records a defect flag
override()  records a manual override of a flag
history()   returns the override trail of a flag
"""
import json
import logging
import sqlite3
from contextlib import contextmanager

from defect_criteria.errors import InputError, NotFoundError, StoreUnavailableError
from defect_criteria.services import overrides, rule_store
from defect_criteria.services.db import get_db
from defect_criteria.services.evaluator import (
    NO_CRITERIA, PROCEDURE_NOT_FOUND, evaluate, unvalidated,
)
from defect_criteria.services.library import get_library_labels
from defect_criteria.utils import utc_now

logger = logging.getLogger(__name__)


@contextmanager
def store_guard(action):
    """Turn an unreachable/locked store into a retryable error."""
    try:
        yield
    except sqlite3.OperationalError as exc:
        logger.error("Store failure during %s: %s", action, exc)
        raise StoreUnavailableError(f'Could not {action}: database unavailable, please retry') from exc


def validate(observation, procedure_id=None, inspection_id=None, event_id=None, actor_id=None):
    """
    Evaluate an observation and record the resulting defect flag.

    Without a procedure_id the procedure effective on the observation's
    inspection date is used.
    """
    with store_guard('validate observation'):
        if procedure_id is None:
            if not observation.inspection_date:
                raise InputError('procedureId or observation.inspectionDate is required')
            procedure = rule_store.get_applicable_procedure(observation.inspection_date)
            if procedure is None:
                result = unvalidated(None, NO_CRITERIA)
            else:
                procedure_id = procedure['id']

        warnings = []
        if procedure_id is not None:
            procedure, rules = rule_store.get_active_rules(procedure_id)
            if procedure is None:
                logger.warning("Validation requested for unknown procedure %s", procedure_id)
                result = unvalidated(procedure_id, PROCEDURE_NOT_FOUND)
            else:
                result = evaluate(observation, procedure['id'], rules)
                warnings = rule_store.validate_custom_values(procedure['id'], observation.custom_parameters)

        flag_id = _record_flag(result, observation, inspection_id, event_id, actor_id)
        payload = _with_labels(result.to_dict())

    payload['flagId'] = str(flag_id)
    payload['warnings'] = warnings
    logger.info("Observation validated: procedure=%s status=%s winner=%s flag=%s",
                payload['procedureId'], payload['status'],
                payload['winningRule']['id'] if payload['winningRule'] else None, flag_id)
    return payload


def _record_flag(result, observation, inspection_id, event_id, actor_id):
    db = get_db()
    cur = db.execute("""
        INSERT INTO inspection_defect_flags
        (inspection_id, event_id, procedure_id, rule_id, matched_rule_ids,
         outcome, severity_id, auto_flagged, alert_message, observation,
         created_by, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """, [
        inspection_id, event_id,
        int(result.procedure_id) if result.procedure_id and result.procedure_id.isdigit() else None,
        result.winning_rule['id'] if result.winning_rule else None,
        json.dumps([r['id'] for r in result.matched_rules]),
        result.status,
        result.severity_id,
        1 if result.should_auto_flag else 0,
        result.alert_message,
        json.dumps(observation.to_json(), sort_keys=True),
        actor_id,
        utc_now(),
    ])
    db.commit()
    return cur.lastrowid


def _with_labels(payload):
    """Add library descriptions for priorities, codes and types."""
    rules = list(payload['matchedRules'])
    ids = []
    for rule in rules:
        ids.extend([rule['priorityId'], rule['defectCodeId'], rule['defectTypeId']])
    labels = get_library_labels(ids)

    def label(lib_id):
        return labels.get(lib_id, 'Unknown') if lib_id else None

    for rule in rules:
        rule['priorityLabel'] = label(rule['priorityId'])
        rule['defectCodeLabel'] = label(rule['defectCodeId'])
        rule['defectTypeLabel'] = label(rule['defectTypeId'])
    if payload['winningRule']:
        payload['winningRule'] = rules[0]
        payload['highestPriorityRule'] = rules[0]
    payload['severityLabel'] = label(payload['severityId'])
    return payload


def override(flag_id, new_value, reason, actor_id, field_changed='verdict',
             ip_address=None, session_id=None):
    with store_guard('record override'):
        entry = overrides.record_override(
            flag_id, new_value, reason, actor_id,
            field_changed=field_changed, ip_address=ip_address, session_id=session_id)
    return overrides.entry_to_json(entry)


def history(flag_id):
    with store_guard('read override history'):
        if overrides.get_flag(flag_id) is None:
            raise NotFoundError(f'Defect flag {flag_id} not found')
        return [overrides.entry_to_json(e) for e in overrides.get_history(flag_id)]


def flag(flag_id):
    with store_guard('read defect flag'):
        return flag_to_json(overrides.get_effective_flag(flag_id))


def flag_to_json(flag):
    return {
        'id': str(flag['id']),
        'inspectionId': flag['inspection_id'],
        'eventId': flag['event_id'],
        'procedureId': str(flag['procedure_id']) if flag['procedure_id'] is not None else None,
        'ruleId': str(flag['rule_id']) if flag['rule_id'] is not None else None,
        'matchedRuleIds': [str(i) for i in flag['matched_rule_ids']],
        'outcome': flag['outcome'],
        'severityId': flag['severity_id'],
        'autoFlagged': bool(flag['auto_flagged']),
        'alertMessage': flag['alert_message'],
        'observation': flag['observation'],
        'createdBy': flag['created_by'],
        'createdAt': flag['created_at'],
        'currentVerdict': flag.get('current_verdict'),
        'currentSeverityId': flag.get('current_severity_id'),
        'overridden': flag.get('overridden', False),
        'overrideCount': flag.get('override_count', 0),
    }
