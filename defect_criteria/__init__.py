"""
Defect Criteria Service - Flask Application Factory
Rule-driven defect validation for offshore asset inspections
"""
import logging
import os
from datetime import timedelta

import click
from flask import Flask, jsonify, request, session


def create_app(test_config=None):
    app = Flask(__name__)

    # Configuration
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'dev-secret-change-in-prod')
    app.config['DATABASE_PATH'] = os.environ.get('DATABASE_PATH', 'data/defect_criteria.db')
    app.config['DATABASE_TIMEOUT'] = float(os.environ.get('DATABASE_TIMEOUT', '5'))
    app.config['LOG_LEVEL'] = os.environ.get('LOG_LEVEL', 'INFO')
    if test_config:
        app.config.update(test_config)

    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    app.permanent_session_lifetime = timedelta(days=30)

    @app.before_request
    def make_session_permanent():
        session.permanent = True

    # Initialize database
    from defect_criteria.services.db import init_db
    with app.app_context():
        init_db(app)

    from defect_criteria.errors import register_error_handlers
    register_error_handlers(app)

    # Register blueprints
    from defect_criteria.routes.validation import validation_bp
    from defect_criteria.routes.criteria import criteria_bp
    from defect_criteria.routes.library import library_bp

    app.register_blueprint(validation_bp)
    app.register_blueprint(criteria_bp)
    app.register_blueprint(library_bp)

    # PDF reports answer 503 when weasyprint or its system libs are missing
    from defect_criteria.routes.pdf import pdf_bp
    app.register_blueprint(pdf_bp)

    @app.route('/')
    def home():
        """Service status and current user."""
        from defect_criteria.auth import get_current_user
        return jsonify({'service': 'defect-criteria', 'status': 'ok', 'user': get_current_user()})

    # Simple auth (login code)
    @app.route('/login', methods=['GET', 'POST'])
    def login():
        """Login via ?u=<code> or a JSON/form body with 'code'."""
        if request.method == 'POST':
            body = request.get_json(silent=True) or request.form
            user_code = (body.get('code') or '').strip()
        else:
            user_code = request.args.get('u')

        if not user_code:
            return jsonify({'error': 'Login code required'}), 400

        from defect_criteria.services.db import query_db
        from defect_criteria.utils import generate_id
        user = query_db(
            "SELECT * FROM inspector WHERE id = ? AND active = 1",
            [user_code], one=True
        )
        if not user:
            return jsonify({'error': 'Invalid login code. Please try again.'}), 401

        session.clear()
        session['user_id'] = user['id']
        session['user_name'] = user['name']
        session['role'] = user['role']
        session['session_id'] = generate_id('ses')
        return jsonify({'id': user['id'], 'name': user['name'], 'role': user['role']})

    @app.route('/logout', methods=['GET', 'POST'])
    def logout():
        """Clear session."""
        session.clear()
        return jsonify({'success': True})

    register_commands(app)
    return app


def register_commands(app):
    """flask init-db / add-user / import-library"""

    @app.cli.command('init-db')
    def init_db_command():
        """Create the schema (existing tables are kept)."""
        from defect_criteria.services.db import create_schema
        create_schema(app.config['DATABASE_PATH'])
        click.echo(f"Schema applied to {app.config['DATABASE_PATH']}")

    @app.cli.command('add-user')
    @click.argument('code')
    @click.argument('name')
    @click.option('--role', type=click.Choice(['inspector', 'supervisor', 'admin']), default='inspector')
    def add_user_command(code, name, role):
        """Add or reactivate a user with a login code."""
        from defect_criteria.services.db import get_db
        from defect_criteria.utils import utc_now
        db = get_db()
        db.execute("""
            INSERT INTO inspector (id, name, role, active, created_at) VALUES (?, ?, ?, 1, ?)
            ON CONFLICT(id) DO UPDATE SET name = excluded.name, role = excluded.role, active = 1
        """, [code, name, role, utc_now()])
        db.commit()
        click.echo(f'User {code} ({role}) ready')

    @app.cli.command('import-library')
    @click.argument('path', type=click.Path(exists=True, dir_okay=False))
    def import_library_command(path):
        """Load U_LIB_LIST items from an .xlsx workbook."""
        from defect_criteria.services.library_import import import_library_workbook
        counts = import_library_workbook(path)
        click.echo(f"Added: {counts['added']}  Updated: {counts['updated']}  Unchanged: {counts['skipped']}")


# For direct execution
if __name__ == '__main__':
    app = create_app()
    app.run(debug=True, host='0.0.0.0', port=5000)
