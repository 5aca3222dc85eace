"""
Test fixtures: a fresh SQLite database per test, seeded with users and a
small reference library.
"""
import pytest

from defect_criteria import create_app
from defect_criteria.services import rule_store
from defect_criteria.services.db import get_db

ADMIN = {'id': 'ADMIN1', 'name': 'Alex Admin', 'role': 'admin'}
SUPERVISOR = {'id': 'SUP1', 'name': 'Sam Supervisor', 'role': 'supervisor'}
INSPECTOR = {'id': 'INSP1', 'name': 'Ira Inspector', 'role': 'inspector'}

USERS = [
    (ADMIN['id'], ADMIN['name'], ADMIN['role'], 1),
    (SUPERVISOR['id'], SUPERVISOR['name'], SUPERVISOR['role'], 1),
    (INSPECTOR['id'], INSPECTOR['name'], INSPECTOR['role'], 1),
    ('GONE', 'Former Inspector', 'inspector', 0),
]

LIBRARY = [
    ('P1', 'AMLY_TYP', 'Critical', '0'),
    ('P2', 'AMLY_TYP', 'Major', '0'),
    ('P3', 'AMLY_TYP', 'Minor', '0'),
    ('P9', 'AMLY_TYP', 'Obsolete', '1'),
    ('C1', 'AMLY_COD', 'CORROSION', '0'),
    ('C2', 'AMLY_COD', 'PIPELINE FREE SPAN', '0'),
    ('C3', 'AMLY_COD', 'PHYSICAL DAMAGE', '0'),
    ('T1', 'AMLY_FND', 'Pitting', '0'),
    ('T2', 'AMLY_FND', 'General wall loss', '0'),
    ('T3', 'AMLY_FND', 'Dent', '0'),
    ('G1', 'COMPGRP', 'Primary Member', '0'),
    ('G2', 'COMPGRP', 'Secondary Member', '0'),
]

COMBOS = [
    ('AMLYCODFND', 'C1', 'T1'),
    ('AMLYCODFND', 'C1', 'T2'),
    ('AMLYCODFND', 'C3', 'T3'),
    ('ANMLYCLR', 'P1', '192,0,0'),
]


@pytest.fixture
def app(tmp_path):
    app = create_app({
        'TESTING': True,
        'SECRET_KEY': 'test-secret',
        'DATABASE_PATH': str(tmp_path / 'criteria.db'),
    })
    with app.app_context():
        db = get_db()
        db.executemany("INSERT INTO inspector (id, name, role, active) VALUES (?, ?, ?, ?)", USERS)
        db.executemany("INSERT INTO u_lib_list (lib_id, lib_code, lib_desc, lib_delete) VALUES (?, ?, ?, ?)",
                       LIBRARY)
        db.executemany("INSERT INTO u_lib_combo (lib_code, code_1, code_2) VALUES (?, ?, ?)", COMBOS)
        db.commit()
    yield app


@pytest.fixture
def ctx(app):
    """Run service-level code inside an application context."""
    with app.app_context():
        yield app


@pytest.fixture
def db(ctx):
    return get_db()


def login(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user['id']
        sess['user_name'] = user['name']
        sess['role'] = user['role']
        sess['session_id'] = f"ses-{user['id'].lower()}"
    return client


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin_client(app):
    return login(app.test_client(), ADMIN)


@pytest.fixture
def supervisor_client(app):
    return login(app.test_client(), SUPERVISOR)


@pytest.fixture
def inspector_client(app):
    return login(app.test_client(), INSPECTOR)


@pytest.fixture
def make_procedure(ctx):
    def _make(number='DC-001', status='active', effective_date='2024-01-01', name='Baseline Inspection Criteria'):
        procedure = rule_store.create_procedure(number, name, effective_date, user=ADMIN)
        if status != 'draft':
            procedure = rule_store.update_procedure(procedure['id'], {'status': status}, user=ADMIN)
        return procedure
    return _make


@pytest.fixture
def make_rule(ctx):
    def _make(procedure_id, **fields):
        values = {'structure_group': 'Primary Member', 'priority_id': 'P2'}
        values.update(fields)
        return rule_store.create_rule(procedure_id, values, user=ADMIN)
    return _make
