"""
Pytest configuration and fixtures for tournament service tests.
"""
import os
import sys
from datetime import datetime, timedelta

import pytest

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

# Set testing environment before importing app
os.environ['FLASK_ENV'] = 'testing'

from arena.app import create_app
from arena.models import db, Team, PaymentTransaction
from shared.state_machine import TransactionState, PaymentStatus


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app('testing')

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create database session for testing."""
    with app.app_context():
        # Clear all tables before each test
        db.session.remove()

        for table in reversed(db.metadata.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture
def lifecycle(app):
    return app.lifecycle


@pytest.fixture
def admission(app):
    return app.admission


@pytest.fixture
def payments(app):
    return app.payments


@pytest.fixture
def matches(app):
    return app.matches


@pytest.fixture
def make_tournament(app, db_session):
    """Factory for tournaments; publishes unless ``publish=False``."""

    def _make(publish=True, **overrides):
        now = datetime.utcnow()
        fields = {
            'game': 'Valorant',
            'max_teams': 4,
            'team_size': 'duo',
            'entry_fee': 0,
            'start_date': now + timedelta(days=2),
            'registration_deadline': now + timedelta(days=1),
        }
        fields.update(overrides)
        name = fields.pop('name', 'Test Cup')
        tournament = app.lifecycle.create_tournament(name, organizer_id='org-1', **fields)
        if publish:
            app.lifecycle.publish_tournament(tournament.tournament_id)
        return tournament.tournament_id

    return _make


@pytest.fixture
def open_tournament(make_tournament):
    """Free duo tournament with four slots."""
    return make_tournament()


@pytest.fixture
def paid_tournament(make_tournament):
    """Duo tournament with a 100.00 entry fee."""
    return make_tournament(entry_fee=100)


@pytest.fixture
def paid_team(app, paid_tournament):
    team = app.admission.register_team(paid_tournament, 'cap-1', ['p-1'], team_name='Payers')
    return team.team_id


@pytest.fixture
def fake_response(mocker):
    """Builds stand-ins for ``requests.Response`` objects returned by the gateway."""

    def _response(body=None, status_code=200, headers=None):
        resp = mocker.MagicMock()
        resp.status_code = status_code
        resp.ok = status_code < 400
        resp.headers = headers or {}
        resp.json.return_value = body if body is not None else {}
        return resp

    return _response


@pytest.fixture
def gateway(app, mocker):
    """Patch the gateway client's HTTP session; returns the (post, get) mocks."""
    session = app.payments.gateway.session
    post = mocker.patch.object(session, 'post')
    get = mocker.patch.object(session, 'get')
    return post, get


@pytest.fixture
def pay_accepted():
    def _body(url='https://gateway.test/checkout/abc'):
        return {
            'success': True,
            'code': 'PAYMENT_INITIATED',
            'data': {'instrumentResponse': {'type': 'PAY_PAGE',
                                            'redirectInfo': {'url': url, 'method': 'GET'}}}
        }
    return _body


@pytest.fixture
def status_body():
    """Gateway status payload for a transaction."""

    def _body(transaction_id, code='PAYMENT_SUCCESS', success=True, state='COMPLETED'):
        return {
            'success': success,
            'code': code,
            'data': {
                'merchantId': 'MERCHANTTEST',
                'merchantTransactionId': transaction_id,
                'state': state,
                'responseCode': 'SUCCESS' if code == 'PAYMENT_SUCCESS' else code,
                'amount': 10000,
            }
        }

    return _body


@pytest.fixture
def pending_transaction(app, gateway, fake_response, pay_accepted, paid_team):
    """A team's entry fee checkout accepted by the gateway and awaiting settlement."""
    post, _ = gateway
    post.return_value = fake_response(pay_accepted())
    result = app.payments.initiate_payment(paid_team, 100, {'mobile_number': '9999999999'})
    post.reset_mock()
    return result['transaction_id']


@pytest.fixture
def settled_transaction(app, db_session, pending_transaction):
    """A transaction already marked successful in the store."""
    txn = PaymentTransaction.query.filter_by(transaction_id=pending_transaction).first()
    PaymentTransaction.query.filter_by(id=txn.id).update(
        {PaymentTransaction.status: TransactionState.SUCCESS}, synchronize_session=False
    )
    Team.query.filter_by(id=txn.team_id).update(
        {Team.payment_status: PaymentStatus.COMPLETED}, synchronize_session=False
    )
    db.session.commit()
    return pending_transaction
