import json

import pytest

from defect_criteria.errors import ConflictError, InputError, NotFoundError
from defect_criteria.services import rule_store, validation
from defect_criteria.services.evaluator import Observation
from defect_criteria.utils.audit import get_audit_entries

from conftest import ADMIN


class TestProcedures:

    def test_new_procedure_is_draft_version_one(self, ctx):
        proc = rule_store.create_procedure('DC-100', 'Jacket criteria', '2024-03-01', user=ADMIN)

        assert proc['status'] == 'draft'
        assert proc['version'] == 1
        assert proc['effective_date'] == '2024-03-01'
        assert proc['created_by'] == 'ADMIN1'

    def test_version_increments_per_procedure_number(self, ctx):
        rule_store.create_procedure('DC-100', 'Jacket criteria', '2024-03-01')
        second = rule_store.create_procedure('DC-100', 'Jacket criteria rev', '2024-09-01')
        other = rule_store.create_procedure('DC-200', 'Topside criteria', '2024-09-01')

        assert second['version'] == 2
        assert other['version'] == 1

    def test_effective_date_accepts_datetime_text(self, ctx):
        proc = rule_store.create_procedure('DC-100', 'Jacket', '2024-03-01T08:30:00Z')
        assert proc['effective_date'] == '2024-03-01'

    @pytest.mark.parametrize('number, name, effective', [
        ('', 'Jacket', '2024-01-01'),
        ('DC-1', '   ', '2024-01-01'),
        ('DC-1', 'Jacket', 'yesterday'),
        (5, 'Jacket', '2024-01-01'),
        ('DC-1', ['Jacket'], '2024-01-01'),
    ])
    def test_create_rejects_bad_input(self, ctx, number, name, effective):
        with pytest.raises(InputError):
            rule_store.create_procedure(number, name, effective)

    def test_copy_from_procedure_copies_active_rules_only(self, make_procedure, make_rule):
        source = make_procedure('DC-001')
        kept = make_rule(source['id'], threshold_operator='>', threshold_value=5, evaluation_priority=3)
        dropped = make_rule(source['id'], alert_message='old rule')
        rule_store.disable_rule(dropped['id'], user=ADMIN)

        copy = rule_store.create_procedure('DC-001', 'Revision', '2025-01-01',
                                           copy_from_procedure_id=source['id'], user=ADMIN)
        rules = rule_store.list_rules(copy['id'], include_inactive=True)

        assert copy['version'] == 2
        assert copy['status'] == 'draft'
        assert len(rules) == 1
        assert rules[0]['threshold_value'] == kept['threshold_value']
        assert rules[0]['evaluation_priority'] == 3
        assert rules[0]['id'] != kept['id']
        assert rule_store.list_rules(source['id'], include_inactive=True)[0]['procedure_id'] == source['id']

    def test_copy_from_unknown_procedure(self, ctx):
        with pytest.raises(NotFoundError):
            rule_store.create_procedure('DC-1', 'Jacket', '2024-01-01', copy_from_procedure_id=999)

    def test_update_without_known_fields(self, make_procedure):
        proc = make_procedure(status='draft')
        with pytest.raises(InputError) as excinfo:
            rule_store.update_procedure(proc['id'], {'colour': 'blue'})
        assert excinfo.value.details == {'receivedKeys': ['colour']}

    def test_update_rejects_unknown_status(self, make_procedure):
        proc = make_procedure(status='draft')
        with pytest.raises(InputError):
            rule_store.update_procedure(proc['id'], {'status': 'published'})

    def test_update_is_audited(self, db, make_procedure):
        proc = make_procedure(status='draft')
        rule_store.update_procedure(proc['id'], {'status': 'active', 'notes': 'approved'}, user=ADMIN)

        actions = [e['action'] for e in get_audit_entries(db, 'procedure', proc['id'])]
        assert actions == ['procedure_created', 'procedure_updated']

    def test_only_drafts_can_be_deleted(self, make_procedure):
        active = make_procedure('DC-001', status='active')
        draft = make_procedure('DC-002', status='draft')

        with pytest.raises(ConflictError):
            rule_store.delete_procedure(active['id'])

        assert rule_store.delete_procedure(draft['id'], user=ADMIN) is True
        assert rule_store.get_procedure(draft['id']) is None

    def test_draft_with_flags_cannot_be_deleted(self, make_procedure, make_rule):
        draft = make_procedure(status='draft')
        make_rule(draft['id'])
        validation.validate(Observation(structure_group='Primary Member'), procedure_id=draft['id'])

        with pytest.raises(ConflictError):
            rule_store.delete_procedure(draft['id'])

    def test_applicable_procedure_by_inspection_date(self, make_procedure):
        older = make_procedure('DC-001', effective_date='2023-01-01')
        newer = make_procedure('DC-002', effective_date='2024-06-01')
        make_procedure('DC-003', status='draft', effective_date='2025-01-01')
        make_procedure('DC-004', status='archived', effective_date='2024-12-01')

        assert rule_store.get_applicable_procedure('2024-07-01')['id'] == newer['id']
        assert rule_store.get_applicable_procedure('2024-06-01')['id'] == newer['id']
        assert rule_store.get_applicable_procedure('2023-05-01')['id'] == older['id']
        assert rule_store.get_applicable_procedure('2025-06-01')['id'] == newer['id']
        assert rule_store.get_applicable_procedure('2022-12-31') is None

    def test_list_procedures_filter(self, make_procedure):
        make_procedure('DC-001')
        make_procedure('DC-002', status='draft')

        assert [p['procedure_number'] for p in rule_store.list_procedures('draft')] == ['DC-002']
        assert len(rule_store.list_procedures()) == 2
        with pytest.raises(InputError):
            rule_store.list_procedures('deleted')


class TestRules:

    def test_rules_get_sequential_order(self, make_procedure, make_rule):
        proc = make_procedure()
        first = make_rule(proc['id'])
        second = make_rule(proc['id'])

        assert (first['rule_order'], second['rule_order']) == (1, 2)
        assert first['is_active'] == 1
        assert first['evaluation_priority'] == 0
        assert first['auto_flag'] == 0

    @pytest.mark.parametrize('fields', [
        {'priority_id': None},
        {'structure_group': ''},
        {'threshold_operator': '=>', 'threshold_value': 1},
        {'threshold_value': 'ten', 'threshold_operator': '>'},
        {'evaluation_priority': 'urgent'},
        {'elevation_min': 5, 'elevation_max': -5},
        {'custom_parameters': '[1, 2]'},
        {'custom_parameters': {'cp': {'operator': 'between', 'value': 1}}},
        {'condition_expression': 'open("/etc/passwd")'},
        {'condition_expression': 'measurement_value + 1' + '0' * 400 + ' / 3 > 0'},
        {'threshold_value': 5},
        {'threshold_operator': '>'},
        {'custom_parameters': {'cp': {'operator': '>', 'value': 'abc'}}},
    ])
    def test_invalid_rules_are_rejected(self, make_procedure, make_rule, fields):
        proc = make_procedure()
        with pytest.raises(InputError):
            make_rule(proc['id'], **fields)

    def test_rule_for_unknown_procedure(self, make_rule):
        with pytest.raises(NotFoundError):
            make_rule(12345)

    def test_custom_parameters_stored_as_json(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'], custom_parameters={'pit_depth': {'operator': '>', 'value': 2}})

        assert json.loads(rule['custom_parameters']) == {'pit_depth': {'operator': '>', 'value': 2}}
        assert rule_store.rule_to_json(rule)['customParameters'] == {'pit_depth': {'operator': '>', 'value': 2}}

    def test_update_changes_only_given_fields(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'], threshold_operator='>', threshold_value=10, alert_message='Check CP')

        updated = rule_store.update_rule(rule['id'], {'threshold_value': '12.5'}, user=ADMIN)

        assert updated['threshold_value'] == 12.5
        assert updated['threshold_operator'] == '>'
        assert updated['alert_message'] == 'Check CP'
        assert updated['updated_at'] is not None

    def test_update_checks_merged_elevation_range(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'], elevation_min=-30, elevation_max=-10)
        with pytest.raises(InputError):
            rule_store.update_rule(rule['id'], {'elevation_min': 0})

    def test_update_cannot_leave_threshold_without_operator(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'], threshold_operator='>', threshold_value=10)

        with pytest.raises(InputError) as excinfo:
            rule_store.update_rule(rule['id'], {'threshold_operator': None})

        assert 'cannot be evaluated' in str(excinfo.value)
        assert rule_store.get_rule(rule['id'])['threshold_operator'] == '>'

    def test_update_without_known_fields(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'])
        with pytest.raises(InputError):
            rule_store.update_rule(rule['id'], {'procedure_id': 99})

    def test_disabled_rule_leaves_active_set_but_is_kept(self, db, make_procedure, make_rule):
        proc = make_procedure()
        keep = make_rule(proc['id'])
        gone = make_rule(proc['id'])

        rule_store.disable_rule(gone['id'], user=ADMIN)

        procedure, rules = rule_store.get_active_rules(proc['id'])
        assert procedure['id'] == proc['id']
        assert [r['id'] for r in rules] == [keep['id']]
        assert rule_store.get_rule(gone['id'])['is_active'] == 0
        assert len(rule_store.list_rules(proc['id'], include_inactive=True)) == 2

        actions = [e['action'] for e in get_audit_entries(db, 'rule', gone['id'])]
        assert actions == ['rule_created', 'rule_disabled']

    def test_enable_restores_rule(self, make_procedure, make_rule):
        proc = make_procedure()
        rule = make_rule(proc['id'])
        rule_store.disable_rule(rule['id'])

        assert rule_store.enable_rule(rule['id'])['is_active'] == 1
        assert len(rule_store.get_active_rules(proc['id'])[1]) == 1

    def test_active_rules_for_unknown_procedure(self, ctx):
        assert rule_store.get_active_rules(404) == (None, [])

    def test_active_rules_ordered_by_priority(self, make_procedure, make_rule):
        proc = make_procedure()
        low = make_rule(proc['id'], evaluation_priority=1)
        high = make_rule(proc['id'], evaluation_priority=8)

        _, rules = rule_store.get_active_rules(proc['id'])
        assert [r['id'] for r in rules] == [high['id'], low['id']]


class TestCustomParams:

    def test_create_and_list(self, make_procedure):
        proc = make_procedure()
        rule_store.create_custom_param(proc['id'], {
            'parameter_name': 'cp_reading',
            'parameter_label': 'CP reading',
            'parameter_unit': 'mV',
            'validation_rules': {'min': -1200, 'max': 0, 'required': True},
        }, user=ADMIN)

        params = rule_store.list_custom_params(proc['id'])
        assert [p['parameter_name'] for p in params] == ['cp_reading']
        assert rule_store.custom_param_to_json(params[0])['validationRules']['required'] is True

    def test_duplicate_name_conflicts(self, make_procedure):
        proc = make_procedure()
        rule_store.create_custom_param(proc['id'], {'parameter_name': 'coating'})
        with pytest.raises(ConflictError):
            rule_store.create_custom_param(proc['id'], {'parameter_name': 'coating'})

    @pytest.mark.parametrize('fields', [
        {'parameter_name': 'pit depth'},
        {'parameter_name': '1st'},
        {'parameter_name': 'depth', 'parameter_type': 'float'},
        {'parameter_name': 'depth', 'validation_rules': '[1]'},
        {'parameter_name': 'code', 'parameter_type': 'text', 'validation_rules': {'regex': '(['}},
    ])
    def test_invalid_definitions(self, make_procedure, fields):
        proc = make_procedure()
        with pytest.raises(InputError):
            rule_store.create_custom_param(proc['id'], fields)

    def test_validate_custom_values(self, make_procedure):
        proc = make_procedure()
        rule_store.create_custom_param(proc['id'], {
            'parameter_name': 'cp_reading', 'validation_rules': {'min': -1200, 'max': 0, 'required': True}})
        rule_store.create_custom_param(proc['id'], {
            'parameter_name': 'anode_id', 'parameter_type': 'text', 'validation_rules': {'regex': r'A-\d{3}'}})
        rule_store.create_custom_param(proc['id'], {'parameter_name': 'flooded', 'parameter_type': 'boolean'})
        rule_store.create_custom_param(proc['id'], {'parameter_name': 'last_clean', 'parameter_type': 'date'})

        assert rule_store.validate_custom_values(proc['id'], {
            'cp_reading': -850, 'anode_id': 'A-017', 'flooded': False, 'last_clean': '2024-02-01'}) == []

        problems = rule_store.validate_custom_values(proc['id'], {
            'cp_reading': 50, 'anode_id': 'B-1', 'flooded': 'no', 'last_clean': 'soon'})
        assert problems == [
            'anode_id does not match the expected format',
            'cp_reading is above maximum 0',
            'flooded must be true or false',
            'last_clean must be an ISO date',
        ]

        assert rule_store.validate_custom_values(proc['id'], {}) == ['cp_reading is required']
