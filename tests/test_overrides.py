import sqlite3

import pytest

from defect_criteria.errors import InputError, NotFoundError, OverrideRejectedError, StoreUnavailableError
from defect_criteria.services import overrides, rule_store, validation
from defect_criteria.services.evaluator import NO_CRITERIA, PROCEDURE_NOT_FOUND, Observation


@pytest.fixture
def flagged(make_procedure, make_rule):
    """A flag raised by the higher-priority of two matching rules."""
    proc = make_procedure()
    make_rule(proc['id'], threshold_operator='>', threshold_value=10, evaluation_priority=1, priority_id='P3')
    winner = make_rule(proc['id'], threshold_operator='>', threshold_value=5, evaluation_priority=5,
                       priority_id='P1', defect_code_id='C1', auto_flag=True, alert_message='Wall loss over 5%')
    result = validation.validate(
        Observation(structure_group='Primary Member', measurement_value=12),
        procedure_id=proc['id'], inspection_id='INS-1', event_id='EV-9', actor_id='INSP1')
    return {'procedure': proc, 'winner': winner, 'result': result, 'flag_id': int(result['flagId'])}


class TestValidate:

    def test_flag_records_winning_rule(self, flagged):
        result = flagged['result']
        flag = overrides.get_flag(flagged['flag_id'])

        assert result['status'] == 'flagged'
        assert result['winningRule']['id'] == str(flagged['winner']['id'])
        assert result['winningRule']['priorityLabel'] == 'Critical'
        assert result['winningRule']['defectCodeLabel'] == 'CORROSION'
        assert result['winningRule']['defectTypeLabel'] is None
        assert result['severityLabel'] == 'Critical'
        assert result['shouldAutoFlag'] is True
        assert len(result['matchedRules']) == 2

        assert flag['outcome'] == 'flagged'
        assert flag['rule_id'] == flagged['winner']['id']
        assert flag['severity_id'] == 'P1'
        assert flag['inspection_id'] == 'INS-1'
        assert flag['observation']['measurementValue'] == 12
        assert len(flag['matched_rule_ids']) == 2

    def test_pass_is_recorded(self, make_procedure, make_rule):
        proc = make_procedure()
        make_rule(proc['id'], threshold_operator='>', threshold_value=10)

        result = validation.validate(Observation(structure_group='Primary Member', measurement_value=3),
                                     procedure_id=proc['id'])

        assert result['status'] == 'pass'
        assert overrides.get_flag(result['flagId'])['outcome'] == 'pass'

    def test_procedure_without_rules_is_unvalidated(self, make_procedure):
        proc = make_procedure()
        result = validation.validate(Observation(measurement_value=3), procedure_id=proc['id'])

        assert result['status'] == 'unvalidated'
        assert result['reason'] == NO_CRITERIA
        assert result['flagId']

    def test_unknown_procedure_is_unvalidated(self, ctx):
        result = validation.validate(Observation(measurement_value=3), procedure_id=777)
        assert result['status'] == 'unvalidated'
        assert result['reason'] == PROCEDURE_NOT_FOUND

    def test_procedure_chosen_by_inspection_date(self, make_procedure, make_rule):
        old = make_procedure('DC-001', effective_date='2023-01-01')
        new = make_procedure('DC-002', effective_date='2024-01-01')
        make_rule(old['id'], threshold_operator='>', threshold_value=1)
        make_rule(new['id'], threshold_operator='>', threshold_value=100)

        early = validation.validate(Observation(structure_group='Primary Member', measurement_value=50,
                                                inspection_date='2023-06-01'))
        late = validation.validate(Observation(structure_group='Primary Member', measurement_value=50,
                                               inspection_date='2024-06-01'))
        before = validation.validate(Observation(measurement_value=50, inspection_date='2020-01-01'))

        assert (early['procedureId'], early['status']) == (str(old['id']), 'flagged')
        assert (late['procedureId'], late['status']) == (str(new['id']), 'pass')
        assert before['reason'] == NO_CRITERIA

    def test_procedure_or_date_required(self, ctx):
        with pytest.raises(InputError):
            validation.validate(Observation(measurement_value=1))

    def test_custom_value_problems_are_warnings(self, make_procedure, make_rule):
        proc = make_procedure()
        make_rule(proc['id'])
        rule_store.create_custom_param(proc['id'], {'parameter_name': 'cp_reading',
                                                    'validation_rules': {'required': True}})

        result = validation.validate(Observation(structure_group='Primary Member'), procedure_id=proc['id'])

        assert result['status'] == 'flagged'
        assert result['warnings'] == ['cp_reading is required']

    def test_store_failure_is_retryable(self, make_procedure, monkeypatch):
        proc = make_procedure()

        def locked(procedure_id):
            raise sqlite3.OperationalError('database is locked')

        monkeypatch.setattr(rule_store, 'get_active_rules', locked)
        with pytest.raises(StoreUnavailableError) as excinfo:
            validation.validate(Observation(measurement_value=1), procedure_id=proc['id'])
        assert excinfo.value.to_dict()['retryable'] is True

    def test_flags_are_immutable(self, db, flagged):
        with pytest.raises(sqlite3.DatabaseError):
            db.execute("UPDATE inspection_defect_flags SET outcome = 'pass' WHERE id = ?",
                       [flagged['flag_id']])


class TestRecordOverride:

    def test_reason_is_required(self, flagged):
        flag_id = flagged['flag_id']
        for reason in (None, '', '   \n'):
            with pytest.raises(OverrideRejectedError):
                overrides.record_override(flag_id, 'pass', reason, 'INSP1')

        assert overrides.get_history(flag_id) == []
        assert overrides.get_effective_flag(flag_id)['current_verdict'] == 'flagged'

    @pytest.mark.parametrize('actor', [None, '', 'NOBODY', 'GONE'])
    def test_actor_must_be_active_user(self, flagged, actor):
        with pytest.raises(OverrideRejectedError):
            overrides.record_override(flagged['flag_id'], 'pass', 'Reviewed video', actor)
        assert overrides.get_history(flagged['flag_id']) == []

    def test_rejects_unknown_field_and_value(self, flagged):
        flag_id = flagged['flag_id']
        with pytest.raises(OverrideRejectedError):
            overrides.record_override(flag_id, 'pass', 'typo', 'INSP1', field_changed='status')
        with pytest.raises(OverrideRejectedError):
            overrides.record_override(flag_id, 'ok', 'typo', 'INSP1')
        with pytest.raises(OverrideRejectedError):
            overrides.record_override(flag_id, 'flagged', 'no change', 'INSP1')
        assert overrides.get_history(flag_id) == []

    def test_unknown_flag(self, ctx):
        with pytest.raises(NotFoundError):
            overrides.record_override(424242, 'pass', 'Reviewed', 'INSP1')

    def test_override_appends_entry(self, flagged):
        flag_id = flagged['flag_id']
        entry = overrides.record_override(flag_id, 'pass', 'Marine growth, not corrosion', 'INSP1',
                                          ip_address='10.0.0.5', session_id='ses-1')

        assert entry['original_value'] == 'flagged'
        assert entry['new_value'] == 'pass'
        assert entry['user_id'] == 'INSP1'
        assert entry['user_name'] == 'Ira Inspector'
        assert entry['ip_address'] == '10.0.0.5'

        flag = overrides.get_effective_flag(flag_id)
        assert flag['outcome'] == 'flagged'
        assert flag['current_verdict'] == 'pass'
        assert flag['overridden'] is True
        assert flag['override_count'] == 1

    def test_history_is_ordered_and_chained(self, flagged):
        flag_id = flagged['flag_id']
        overrides.record_override(flag_id, 'pass', 'Marine growth', 'INSP1')
        overrides.record_override(flag_id, 'flagged', 'Cleaned and re-measured', 'SUP1')
        overrides.record_override(flag_id, 'P2', 'Depth below critical', 'SUP1', field_changed='severity')

        history = overrides.get_history(flag_id)

        assert [(e['field_changed'], e['original_value'], e['new_value']) for e in history] == [
            ('verdict', 'flagged', 'pass'),
            ('verdict', 'pass', 'flagged'),
            ('severity', 'P1', 'P2'),
        ]
        stamps = [e['override_timestamp'] for e in history]
        assert stamps == sorted(stamps)
        assert overrides.get_effective_flag(flag_id)['current_severity_id'] == 'P2'

    def test_timestamps_never_go_backwards(self, flagged, monkeypatch):
        flag_id = flagged['flag_id']
        monkeypatch.setattr(overrides, 'utc_now', lambda: '2025-05-01T12:00:00.000000Z')
        overrides.record_override(flag_id, 'pass', 'First look', 'INSP1')

        monkeypatch.setattr(overrides, 'utc_now', lambda: '2025-04-30T23:59:59.000000Z')
        second = overrides.record_override(flag_id, 'flagged', 'Second look', 'SUP1')

        assert second['override_timestamp'] == '2025-05-01T12:00:00.000000Z'
        assert [e['reason'] for e in overrides.get_history(flag_id)] == ['First look', 'Second look']

    def test_severity_must_be_active_priority(self, flagged):
        flag_id = flagged['flag_id']
        for value in ('C1', 'P9', 'NOPE'):
            with pytest.raises(OverrideRejectedError):
                overrides.record_override(flag_id, value, 'Reclassified', 'SUP1', field_changed='severity')

    def test_entries_are_append_only(self, db, flagged):
        overrides.record_override(flagged['flag_id'], 'pass', 'Reviewed', 'INSP1')
        with pytest.raises(sqlite3.DatabaseError):
            db.execute("UPDATE defect_override_audit_log SET reason = 'edited'")
        with pytest.raises(sqlite3.DatabaseError):
            db.execute("DELETE FROM defect_override_audit_log")


class TestFacadeHistory:

    def test_history_json(self, flagged):
        validation.override(flagged['flag_id'], 'pass', 'Reviewed', 'INSP1', session_id='ses-x')
        history = validation.history(flagged['flag_id'])

        assert len(history) == 1
        assert history[0]['defectFlagId'] == str(flagged['flag_id'])
        assert history[0]['fieldChanged'] == 'verdict'
        assert history[0]['sessionId'] == 'ses-x'

    def test_history_for_flag_without_overrides(self, flagged):
        assert validation.history(flagged['flag_id']) == []

    def test_history_for_missing_flag(self, ctx):
        with pytest.raises(NotFoundError):
            validation.history(31337)

    def test_flag_json(self, flagged):
        validation.override(flagged['flag_id'], 'pass', 'Reviewed', 'INSP1')
        data = validation.flag(flagged['flag_id'])

        assert data['outcome'] == 'flagged'
        assert data['currentVerdict'] == 'pass'
        assert data['overrideCount'] == 1
        assert data['ruleId'] == str(flagged['winner']['id'])
