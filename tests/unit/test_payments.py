"""
Unit tests for PaymentService.
Tests initiation, reconciliation, webhooks and refunds against a mocked gateway.
"""
import pytest

from arena.app import create_app
from arena.errors import (
    ValidationError, ConflictError, InvalidStateError, IntegrityError, NotFoundError,
    ExternalServiceError
)
from arena.models import PaymentTransaction, Team
from shared.events import EventType
from shared.state_machine import TransactionState, PaymentStatus


def transaction(txn_id):
    return (PaymentTransaction.query
            .execution_options(populate_existing=True)
            .filter_by(transaction_id=txn_id)
            .first())


def team_of(txn_id):
    team_pk = transaction(txn_id).team_id
    return Team.query.execution_options(populate_existing=True).filter_by(id=team_pk).first()


class TestInitiatePayment:
    """Tests for starting a checkout."""

    def test_initiate_records_pending_transaction(self, payments, gateway, fake_response,
                                                  pay_accepted, paid_team):
        post, _ = gateway
        post.return_value = fake_response(pay_accepted('https://gateway.test/checkout/xyz'))

        result = payments.initiate_payment(paid_team, 100, {'mobile_number': '9999999999',
                                                            'name': 'Alice'})

        assert result['redirect_url'] == 'https://gateway.test/checkout/xyz'
        txn = transaction(result['transaction_id'])
        assert txn.status == TransactionState.PENDING
        assert txn.amount == 100
        assert txn.team.payment_transaction_id == result['transaction_id']

        sent = payments.gateway.signer.decode(post.call_args[1]['json']['request'])
        assert sent['amount'] == 10000
        assert sent['merchantTransactionId'] == result['transaction_id']
        assert sent['merchantUserId'] == 'Alice'
        assert sent['redirectUrl'].endswith(f"?id={result['transaction_id']}")

    def test_mobile_number_required(self, payments, gateway, paid_team):
        post, _ = gateway
        with pytest.raises(ValidationError):
            payments.initiate_payment(paid_team, 100, {})
        post.assert_not_called()

    @pytest.mark.parametrize('amount', [0, -5, 'abc', None])
    def test_amount_must_be_positive(self, payments, gateway, paid_team, amount):
        with pytest.raises(ValidationError):
            payments.initiate_payment(paid_team, amount, {'mobile_number': '1'})

    def test_unknown_team(self, payments, gateway, db_session):
        with pytest.raises(NotFoundError):
            payments.initiate_payment('team_missing', 100, {'mobile_number': '1'})

    def test_already_paid_team(self, payments, gateway, settled_transaction):
        team_id = team_of(settled_transaction).team_id
        with pytest.raises(ConflictError):
            payments.initiate_payment(team_id, 100, {'mobile_number': '1'})

    def test_gateway_rejection_writes_nothing(self, payments, gateway, fake_response, paid_team):
        """Nothing is stored when the gateway refuses the checkout."""
        post, _ = gateway
        post.return_value = fake_response({'success': False, 'code': 'BAD_REQUEST'})

        with pytest.raises(ExternalServiceError):
            payments.initiate_payment(paid_team, 100, {'mobile_number': '1'})
        assert PaymentTransaction.query.count() == 0

    def test_missing_redirect_url(self, payments, gateway, fake_response, paid_team):
        post, _ = gateway
        post.return_value = fake_response({'success': True, 'data': {}})
        with pytest.raises(ExternalServiceError):
            payments.initiate_payment(paid_team, 100, {'mobile_number': '1'})
        assert PaymentTransaction.query.count() == 0

    @pytest.mark.parametrize('amount', [0.01, 99.99, 150])
    def test_amount_must_match_entry_fee(self, payments, gateway, paid_team, amount):
        """Checkout is only started for the exact entry fee."""
        post, _ = gateway
        with pytest.raises(ValidationError) as exc:
            payments.initiate_payment(paid_team, amount, {'mobile_number': '1'})

        assert exc.value.details['entry_fee'] == 100
        post.assert_not_called()
        assert PaymentTransaction.query.count() == 0

    def test_fee_given_as_string(self, payments, gateway, fake_response, pay_accepted, paid_team):
        post, _ = gateway
        post.return_value = fake_response(pay_accepted())
        result = payments.initiate_payment(paid_team, '100.00', {'mobile_number': '1'})
        assert transaction(result['transaction_id']).amount == 100


class TestVerifyPayment:
    """Tests for converging a transaction on the gateway's verdict."""

    def test_poll_success(self, payments, gateway, fake_response, status_body, pending_transaction):
        _, get = gateway
        get.return_value = fake_response(status_body(pending_transaction))

        assert payments.verify_payment(pending_transaction) == TransactionState.SUCCESS
        assert transaction(pending_transaction).status == TransactionState.SUCCESS
        assert team_of(pending_transaction).payment_status == PaymentStatus.COMPLETED

    def test_poll_failure(self, payments, gateway, fake_response, status_body, pending_transaction):
        _, get = gateway
        get.return_value = fake_response(
            status_body(pending_transaction, code='PAYMENT_ERROR', success=False, state='FAILED')
        )

        assert payments.verify_payment(pending_transaction) == TransactionState.FAILED
        assert team_of(pending_transaction).payment_status == PaymentStatus.FAILED

    def test_poll_pending_changes_nothing(self, payments, gateway, fake_response, status_body,
                                          pending_transaction):
        _, get = gateway
        get.return_value = fake_response(
            status_body(pending_transaction, code='PAYMENT_PENDING', state='PENDING')
        )
        assert payments.verify_payment(pending_transaction) == TransactionState.PENDING

    def test_duplicate_confirmation_is_a_no_op(self, payments, gateway, fake_response, status_body,
                                               pending_transaction, mocker):
        """Repeated success confirmations leave the transaction as it was."""
        _, get = gateway
        get.return_value = fake_response(status_body(pending_transaction))
        payments.verify_payment(pending_transaction)
        publish = mocker.spy(payments.events, 'publish_tournament_event')

        assert payments.verify_payment(pending_transaction) == TransactionState.SUCCESS
        assert transaction(pending_transaction).status == TransactionState.SUCCESS
        publish.assert_not_called()

    def test_late_failure_after_success_is_an_anomaly(self, payments, gateway, fake_response,
                                                      status_body, settled_transaction, mocker):
        """A settled transaction is never overwritten by a contradicting report."""
        _, get = gateway
        get.return_value = fake_response(
            status_body(settled_transaction, code='PAYMENT_ERROR', success=False, state='FAILED')
        )
        publish = mocker.spy(payments.events, 'publish_tournament_event')

        with pytest.raises(ConflictError):
            payments.verify_payment(settled_transaction)

        assert transaction(settled_transaction).status == TransactionState.SUCCESS
        assert publish.call_args[0][1].type == EventType.PAYMENT_ANOMALY

    def test_response_signature_checked_when_present(self, payments, gateway, fake_response,
                                                     status_body, pending_transaction):
        _, get = gateway
        get.return_value = fake_response(status_body(pending_transaction),
                                         headers={'X-VERIFY': 'forged###1'})

        with pytest.raises(IntegrityError):
            payments.verify_payment(pending_transaction)
        assert transaction(pending_transaction).status == TransactionState.PENDING

    def test_correct_response_signature(self, payments, gateway, fake_response, status_body,
                                        pending_transaction):
        _, get = gateway
        sig = payments.gateway.transaction_checksum(pending_transaction)
        get.return_value = fake_response(status_body(pending_transaction), headers={'X-VERIFY': sig})
        assert payments.verify_payment(pending_transaction) == TransactionState.SUCCESS

    def test_unsigned_response_refused_when_signature_required(self, payments, gateway,
                                                               fake_response, status_body,
                                                               pending_transaction, mocker):
        _, get = gateway
        get.return_value = fake_response(status_body(pending_transaction))
        mocker.patch.object(payments, 'require_response_signature', True)

        with pytest.raises(IntegrityError):
            payments.verify_payment(pending_transaction)
        assert transaction(pending_transaction).status == TransactionState.PENDING

    def test_signed_response_accepted_when_signature_required(self, payments, gateway,
                                                              fake_response, status_body,
                                                              pending_transaction, mocker):
        _, get = gateway
        sig = payments.gateway.transaction_checksum(pending_transaction)
        get.return_value = fake_response(status_body(pending_transaction), headers={'X-VERIFY': sig})
        mocker.patch.object(payments, 'require_response_signature', True)

        assert payments.verify_payment(pending_transaction) == TransactionState.SUCCESS

    def test_signature_requirement_comes_from_config(self, payments):
        assert payments.require_response_signature is False
        strict = create_app('testing', overrides={'PAYMENT_REQUIRE_RESPONSE_SIGNATURE': True})
        assert strict.payments.require_response_signature is True

    def test_supplied_response_requires_signature(self, payments, gateway, status_body,
                                                  pending_transaction):
        """Pushed results are rejected unless signed."""
        with pytest.raises(IntegrityError):
            payments.verify_payment(pending_transaction, signature='bad',
                                    response=status_body(pending_transaction))
        assert transaction(pending_transaction).status == TransactionState.PENDING

    def test_payload_for_other_transaction(self, payments, gateway, status_body, pending_transaction):
        sig = payments.gateway.transaction_checksum(pending_transaction)
        with pytest.raises(IntegrityError):
            payments.verify_payment(pending_transaction, signature=sig,
                                    response=status_body('someone-else'))

    def test_unknown_transaction(self, payments, gateway, db_session):
        with pytest.raises(NotFoundError):
            payments.verify_payment('nope')

    def test_gateway_down_leaves_pending(self, payments, gateway, fake_response, pending_transaction):
        _, get = gateway
        get.return_value = fake_response({}, status_code=503)
        with pytest.raises(ExternalServiceError):
            payments.verify_payment(pending_transaction)
        assert transaction(pending_transaction).status == TransactionState.PENDING


class TestWebhook:
    """Tests for gateway notifications."""

    def test_signed_envelope_settles_payment(self, payments, status_body, pending_transaction):
        signer = payments.gateway.signer
        encoded = signer.encode(status_body(pending_transaction))
        headers = {'X-VERIFY': signer.checksum('', encoded)}

        assert payments.handle_webhook(headers, {'response': encoded}) == {'success': True}
        assert transaction(pending_transaction).status == TransactionState.SUCCESS

    def test_plain_body_signed_with_transaction_checksum(self, payments, status_body,
                                                          pending_transaction):
        headers = {'x-verify': payments.gateway.transaction_checksum(pending_transaction)}
        payments.handle_webhook(headers, status_body(pending_transaction))
        assert transaction(pending_transaction).status == TransactionState.SUCCESS

    def test_bad_signature_acknowledged_but_ignored(self, payments, status_body, pending_transaction):
        """Unverified notifications are acknowledged and change nothing."""
        encoded = payments.gateway.signer.encode(status_body(pending_transaction))
        result = payments.handle_webhook({'X-VERIFY': 'forged###1'}, {'response': encoded})

        assert result == {'success': True}
        assert transaction(pending_transaction).status == TransactionState.PENDING

    @pytest.mark.parametrize('body', [None, [], {}, {'response': 'not-base64!!'}])
    def test_malformed_bodies_acknowledged(self, payments, db_session, body):
        assert payments.handle_webhook({}, body) == {'success': True}

    def test_internal_failure_acknowledged(self, payments, status_body, pending_transaction, mocker):
        mocker.patch.object(payments, '_reconcile', side_effect=RuntimeError('boom'))
        signer = payments.gateway.signer
        encoded = signer.encode(status_body(pending_transaction))

        result = payments.handle_webhook({'X-VERIFY': signer.checksum('', encoded)},
                                         {'response': encoded})
        assert result == {'success': True}

    def test_redelivery_is_idempotent(self, payments, status_body, pending_transaction):
        signer = payments.gateway.signer
        encoded = signer.encode(status_body(pending_transaction))
        headers = {'X-VERIFY': signer.checksum('', encoded)}

        payments.handle_webhook(headers, {'response': encoded})
        payments.handle_webhook(headers, {'response': encoded})
        assert transaction(pending_transaction).status == TransactionState.SUCCESS


class TestRefunds:
    """Tests for refunding settled payments."""

    def test_refund_success(self, payments, gateway, fake_response, settled_transaction):
        post, _ = gateway
        post.return_value = fake_response({'success': True, 'code': 'PAYMENT_SUCCESS', 'data': {}})

        refund_id = payments.refund_payment(settled_transaction, 100, 'Event cancelled')

        txn = transaction(settled_transaction)
        assert txn.status == TransactionState.REFUNDED
        assert txn.refund_id == refund_id
        assert txn.refund_amount == 100
        assert txn.refund_reason == 'Event cancelled'
        assert team_of(settled_transaction).payment_status == PaymentStatus.REFUNDED

        sent = payments.gateway.signer.decode(post.call_args[1]['json']['request'])
        assert sent['merchantRefundId'] == refund_id
        assert sent['amount'] == 10000

    def test_refund_pending_rejected(self, payments, gateway, pending_transaction):
        """Only successful transactions can be refunded."""
        post, _ = gateway
        with pytest.raises(InvalidStateError):
            payments.refund_payment(pending_transaction, 100)
        post.assert_not_called()

    def test_refund_twice_rejected(self, payments, gateway, fake_response, settled_transaction):
        post, _ = gateway
        post.return_value = fake_response({'success': True, 'data': {}})
        payments.refund_payment(settled_transaction, 100)

        with pytest.raises(InvalidStateError):
            payments.refund_payment(settled_transaction, 100)
        assert post.call_count == 1

    def test_refund_more_than_paid(self, payments, gateway, settled_transaction):
        with pytest.raises(ValidationError):
            payments.refund_payment(settled_transaction, 150)

    def test_gateway_refusal_keeps_success(self, payments, gateway, fake_response, settled_transaction):
        post, _ = gateway
        post.return_value = fake_response({'success': False, 'code': 'REFUND_FAILED'})
        with pytest.raises(ExternalServiceError):
            payments.refund_payment(settled_transaction, 100)
        assert transaction(settled_transaction).status == TransactionState.SUCCESS

    def test_success_report_after_refund_is_ignored(self, payments, gateway, fake_response,
                                                    status_body, settled_transaction):
        post, get = gateway
        post.return_value = fake_response({'success': True, 'data': {}})
        payments.refund_payment(settled_transaction, 100)

        get.return_value = fake_response(status_body(settled_transaction))
        assert payments.verify_payment(settled_transaction) == TransactionState.REFUNDED

    def test_refund_status(self, payments, gateway, fake_response, settled_transaction):
        post, get = gateway
        post.return_value = fake_response({'success': True, 'data': {}})
        refund_id = payments.refund_payment(settled_transaction, 50)

        get.return_value = fake_response({'success': True, 'data': {'state': 'COMPLETED'}})
        result = payments.check_refund_status(settled_transaction)

        assert result['refund_id'] == refund_id
        assert result['state'] == 'COMPLETED'
        assert get.call_args[0][0].endswith(f'/pg/v1/refund/MERCHANTTEST/{settled_transaction}/{refund_id}')

    def test_refund_status_without_refund(self, payments, gateway, settled_transaction):
        with pytest.raises(InvalidStateError):
            payments.check_refund_status(settled_transaction)


class TestRetriedCheckout:
    """Tests for teams that started more than one checkout."""

    @pytest.fixture
    def two_attempts(self, payments, gateway, fake_response, pay_accepted, paid_team):
        post, _ = gateway
        post.return_value = fake_response(pay_accepted())
        first = payments.initiate_payment(paid_team, 100, {'mobile_number': '1'})['transaction_id']
        second = payments.initiate_payment(paid_team, 100, {'mobile_number': '1'})['transaction_id']
        return first, second

    @staticmethod
    def _push(payments, body):
        signer = payments.gateway.signer
        encoded = signer.encode(body)
        payments.handle_webhook({'X-VERIFY': signer.checksum('', encoded)}, {'response': encoded})

    def test_paying_the_earlier_attempt_settles_the_team(self, payments, status_body, two_attempts):
        first, second = two_attempts
        assert team_of(first).payment_transaction_id == second

        self._push(payments, status_body(first))

        team = team_of(first)
        assert transaction(first).status == TransactionState.SUCCESS
        assert team.payment_status == PaymentStatus.COMPLETED
        assert team.payment_transaction_id == first

    def test_later_failure_does_not_unsettle_the_team(self, payments, status_body, two_attempts):
        first, second = two_attempts
        self._push(payments, status_body(first))
        self._push(payments, status_body(second, code='PAYMENT_ERROR', success=False, state='FAILED'))

        assert transaction(second).status == TransactionState.FAILED
        assert team_of(first).payment_status == PaymentStatus.COMPLETED

    def test_failure_of_superseded_attempt_is_ignored(self, payments, status_body, two_attempts):
        first, second = two_attempts
        self._push(payments, status_body(first, code='PAYMENT_ERROR', success=False, state='FAILED'))

        team = team_of(first)
        assert team.payment_status == PaymentStatus.PENDING
        assert team.payment_transaction_id == second

    def test_second_success_leaves_first_settlement(self, payments, status_body, two_attempts, caplog):
        """Both attempts paid: the team keeps the first one and the second is flagged."""
        first, second = two_attempts
        self._push(payments, status_body(first))
        self._push(payments, status_body(second))

        assert transaction(second).status == TransactionState.SUCCESS
        assert team_of(first).payment_transaction_id == first
        assert 'manual refund' in caplog.text
