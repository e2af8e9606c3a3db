import logging
import os

from flask import Flask, flash, jsonify, redirect, request, url_for
from sqlalchemy.exc import SQLAlchemyError

import rules
from api import api
from config import Config
from errors import FinanceError, Internal, Unauthenticated
from models import db, login_manager, User
from views import views

log = logging.getLogger(__name__)


def _wants_json():
    return request.blueprint == 'api' or request.is_json


def handle_finance_error(error):
    if error.status_code >= 500:
        log.error('%s %s failed: %s', request.method, request.path, error.message)
    if _wants_json():
        return jsonify(error.to_dict()), error.status_code
    flash(error.message, 'error')
    return redirect(request.referrer or url_for('views.dashboard'))


def handle_storage_error(error):
    db.session.rollback()
    log.exception('Database error on %s %s', request.method, request.path)
    return handle_finance_error(Internal())


def unauthorized():
    if _wants_json():
        return jsonify(Unauthenticated().to_dict()), 401
    flash('Please log in to access this page.', 'error')
    return redirect(url_for('views.login', next=request.path))


def create_app(config_object=Config) -> Flask:
    app = Flask(__name__)
    app.config.from_object(config_object)

    logging.basicConfig(level=app.config['LOG_LEVEL'],
                        format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    app.logger.setLevel(app.config['LOG_LEVEL'])

    # Init
    db.init_app(app)
    login_manager.init_app(app)
    login_manager.login_view = 'views.login'
    login_manager.unauthorized_handler(unauthorized)

    app.register_blueprint(views)
    app.register_blueprint(api)
    app.register_error_handler(FinanceError, handle_finance_error)
    app.register_error_handler(SQLAlchemyError, handle_storage_error)

    # CLI helper to create DB first run
    @app.cli.command('initdb')
    def initdb():
        db.create_all()
        print('Database initialized.')

    # Close finished budgeting periods, for a daily cron
    @app.cli.command('reset-periods')
    def reset_periods():
        closed = 0
        for user in User.query.filter_by(auto_reset_enabled=True).all():
            if rules.reset_period(db.session, user.id) is not None:
                closed += 1
        print(f'Closed {closed} periods.')

    return app


if __name__ == '__main__':
    app = create_app()
    # Create DB if not exists
    if not os.path.exists(os.path.join(app.instance_path, 'finance.db')):
        with app.app_context():
            db.create_all()
    app.run(debug=True)
