import logging
import os

from flask import Flask, jsonify

from .config import config
from .errors import ArenaError
from .models import db
from .lifecycle import TournamentLifecycle
from .admission import RegistrationService
from .matches import MatchService
from .payment_gateway import PaymentGatewayClient
from .payments import PaymentService
from .sweep import TournamentSweeper
from shared.pubsub import EventPublisher

logger = logging.getLogger(__name__)


def create_app(config_name: str = None, overrides: dict = None) -> Flask:
    """Application factory for the tournament service.

    ``overrides`` is applied on top of the selected config class.
    """
    if config_name is None:
        config_name = os.getenv('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s %(name)s: %(message)s'
    )

    # Initialize extensions
    db.init_app(app)

    # Initialize services
    if app.config['EVENTS_ENABLED']:
        events = EventPublisher.from_url(app.config['REDIS_URL'])
    else:
        events = EventPublisher()

    lifecycle = TournamentLifecycle(
        events=events,
        default_duration_hours=app.config['TOURNAMENT_DEFAULT_DURATION_HOURS']
    )

    # Store services on app for access in routes
    app.events = events
    app.lifecycle = lifecycle
    app.admission = RegistrationService(lifecycle)
    app.matches = MatchService(lifecycle)
    app.payments = PaymentService(
        PaymentGatewayClient.from_config(app.config),
        events=events,
        redirect_url=app.config['PAYMENT_REDIRECT_URL'],
        callback_url=app.config['PAYMENT_CALLBACK_URL'],
        require_response_signature=app.config['PAYMENT_REQUIRE_RESPONSE_SIGNATURE']
    )
    app.sweeper = TournamentSweeper(app, lifecycle, cron=app.config['SWEEP_CRON'])

    # Create tables
    with app.app_context():
        db.create_all()

    register_error_handlers(app)

    from .routes import tournaments, payments, matches
    app.register_blueprint(tournaments.bp)
    app.register_blueprint(payments.bp)
    app.register_blueprint(matches.bp)

    register_health_check(app)

    if app.config['SWEEP_ENABLED']:
        app.sweeper.start()

    return app


def register_error_handlers(app: Flask):

    @app.errorhandler(ArenaError)
    def handle_arena_error(e: ArenaError):
        if e.status_code >= 500:
            logger.error("%s: %s", e.code, e.message)
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(404)
    def handle_not_found(e):
        return jsonify({'error': 'Not found', 'code': 'not_found'}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(e):
        return jsonify({'error': 'Method not allowed', 'code': 'method_not_allowed'}), 405


def register_health_check(app: Flask):

    @app.route('/health')
    def health_check():
        """Health check endpoint."""
        try:
            db.session.execute(db.text('SELECT 1'))
            db_ok = True
        except Exception:
            logger.exception("Database health check failed")
            db_ok = False

        if app.events.enabled:
            redis_state = 'connected' if app.events.ping() else 'disconnected'
        else:
            redis_state = 'disabled'

        status = 'healthy' if db_ok else 'unhealthy'
        code = 200 if db_ok else 503

        return jsonify({
            'status': status,
            'database': 'connected' if db_ok else 'disconnected',
            'redis': redis_state,
            'sweep': 'running' if app.sweeper.running else 'stopped'
        }), code
