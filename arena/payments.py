import json
import logging
import uuid
from typing import Optional, Dict, Any

from sqlalchemy.exc import SQLAlchemyError

from .errors import (
    ArenaError, ValidationError, NotFoundError, ConflictError, InvalidStateError,
    IntegrityError, ExternalServiceError
)
from .models import db, Team, PaymentTransaction
from .payment_gateway import PaymentGatewayClient, transaction_id_of, outcome_of
from shared.state_machine import (
    TournamentState, TransactionState, TransactionStateMachine, PaymentStatus,
    TransitionError, TEAM_PAYMENT_FOR_TRANSACTION
)
from shared.events import payment_event, payment_anomaly_event
from shared.pubsub import EventPublisher

logger = logging.getLogger(__name__)

PAYABLE_TOURNAMENT_STATES = (TournamentState.OPEN, TournamentState.FULL)


def _positive_amount(value, field: str = 'amount') -> float:
    try:
        amount = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number", field=field)
    if amount <= 0:
        raise ValidationError(f"{field} must be greater than zero", field=field)
    return amount


def _minor_units(amount: float) -> int:
    return int(round(amount * 100))


def _header(headers, name: str) -> Optional[str]:
    if headers is None:
        return None
    return headers.get(name) or headers.get(name.lower())


class PaymentService:
    """
    Drives entry-fee transactions through the gateway.

    Gateway calls always happen before any local write; the local write is a
    conditional UPDATE on the transaction status, which makes polling and
    webhook deliveries converge on one result however often they arrive.
    """

    def __init__(
        self,
        gateway: PaymentGatewayClient,
        events: EventPublisher = None,
        redirect_url: str = None,
        callback_url: str = None,
        require_response_signature: bool = False
    ):
        self.gateway = gateway
        self.events = events or EventPublisher()
        self.redirect_url = redirect_url
        self.callback_url = callback_url
        self.require_response_signature = require_response_signature

    def gateway_status(self) -> Dict[str, Any]:
        return {
            'status': 'active',
            'provider': 'PhonePe',
            'merchant_id': self.gateway.merchant_id,
        }

    def get_transaction(self, transaction_id: str) -> PaymentTransaction:
        txn = (PaymentTransaction.query
               .execution_options(populate_existing=True)
               .filter_by(transaction_id=transaction_id)
               .first())
        if txn is None:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return txn

    # ==================== Initiation ====================

    def initiate_payment(self, team_id: str, amount, payer_info: dict = None) -> Dict[str, str]:
        """Start a gateway checkout for a team's entry fee."""
        team = Team.query.filter_by(team_id=team_id).first()
        if team is None:
            raise NotFoundError(f"Team {team_id} not found")

        amount = _positive_amount(amount)
        payer_info = payer_info or {}
        mobile_number = payer_info.get('mobile_number')
        if not mobile_number:
            raise ValidationError("Mobile number is required", field='mobile_number')

        if team.payment_status not in (PaymentStatus.PENDING, PaymentStatus.FAILED):
            raise ConflictError(
                f"Team {team_id} has no outstanding payment",
                payment_status=team.payment_status.value
            )
        if team.tournament.status not in PAYABLE_TOURNAMENT_STATES:
            raise InvalidStateError("Tournament is no longer accepting entry fees",
                                    status=team.tournament.status.value)
        entry_fee = team.tournament.entry_fee or 0
        if _minor_units(amount) != _minor_units(entry_fee):
            raise ValidationError("amount must equal the tournament entry fee",
                                  field='amount', entry_fee=entry_fee, amount=amount)

        # Fresh id per attempt; it is the gateway's idempotency key
        transaction_id = str(uuid.uuid4())
        payload = {
            'merchantId': self.gateway.merchant_id,
            'merchantTransactionId': transaction_id,
            'merchantUserId': payer_info.get('name') or team.captain,
            'amount': _minor_units(amount),
            'redirectUrl': f"{self.redirect_url}?id={transaction_id}",
            'redirectMode': 'POST',
            'callbackUrl': self.callback_url,
            'mobileNumber': mobile_number,
            'paymentInstrument': {'type': 'PAY_PAGE'},
        }
        if payer_info.get('description'):
            payload['paymentInstrument']['description'] = payer_info['description']

        body = self.gateway.pay(payload)
        try:
            redirect_url = body['data']['instrumentResponse']['redirectInfo']['url']
        except (KeyError, TypeError):
            logger.error("Gateway accepted %s without a redirect url: %s", transaction_id, body)
            raise ExternalServiceError("Payment gateway response did not include a checkout url")

        txn = PaymentTransaction(
            transaction_id=transaction_id,
            team_id=team.id,
            amount=amount,
            status=TransactionState.PENDING,
            raw_gateway_payload=json.dumps(body),
        )
        db.session.add(txn)
        team.payment_transaction_id = transaction_id
        try:
            db.session.commit()
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Gateway accepted %s but it could not be recorded", transaction_id)
            raise

        logger.info("Initiated payment %s for team %s (%.2f)", transaction_id, team_id, amount)
        self._announce(txn, TransactionState.PENDING)
        return {'redirect_url': redirect_url, 'transaction_id': transaction_id}

    # ==================== Verification ====================

    def verify_payment(self, transaction_id: str, signature: str = None,
                       response: dict = None) -> TransactionState:
        """
        Converge a transaction on the gateway's verdict.

        Without ``response`` the gateway is polled; with it (webhook path) the
        caller's ``signature`` must match the transaction checksum.
        """
        txn = self.get_transaction(transaction_id)

        if response is None:
            result = self.gateway.status(transaction_id)
            body = result.body
            if result.signature is None:
                if self.require_response_signature:
                    raise IntegrityError(f"Gateway response for {transaction_id} is not signed")
                logger.debug("Unsigned status response for %s accepted", transaction_id)
            elif not self.gateway.verify_transaction_signature(result.signature, transaction_id):
                raise IntegrityError(f"Gateway response signature mismatch for {transaction_id}")
        else:
            body = response
            if not self.gateway.verify_transaction_signature(signature, transaction_id):
                raise IntegrityError(f"Signature mismatch for {transaction_id}")

        reported = transaction_id_of(body)
        if reported and reported != transaction_id:
            raise IntegrityError(
                f"Gateway payload is for {reported}, not {transaction_id}"
            )
        return self._reconcile(txn, body)

    def _reconcile(self, txn: PaymentTransaction, body: dict) -> TransactionState:
        outcome = outcome_of(body)
        if outcome is None:
            logger.info("Transaction %s is still pending at the gateway", txn.transaction_id)
            return txn.status

        sm = TransactionStateMachine(TransactionState.PENDING)
        sm.transition('succeed' if outcome == TransactionState.SUCCESS else 'fail')

        updated = PaymentTransaction.query.filter(
            PaymentTransaction.id == txn.id,
            PaymentTransaction.status == TransactionState.PENDING
        ).update({
            PaymentTransaction.status: sm.state,
            PaymentTransaction.raw_gateway_payload: json.dumps(body),
        }, synchronize_session=False)

        if updated:
            self._mirror_on_team(txn, sm.state)
            db.session.commit()
            db.session.refresh(txn)
            logger.info("Transaction %s settled as %s", txn.transaction_id, sm.state.value)
            self._announce(txn, sm.state)
            return sm.state

        db.session.rollback()
        db.session.refresh(txn)
        current = txn.status
        if current == outcome or (outcome == TransactionState.SUCCESS and current == TransactionState.REFUNDED):
            logger.debug("Duplicate %s confirmation for %s ignored", outcome.value, txn.transaction_id)
            return current

        logger.warning(
            "Payment anomaly: %s reported %s but is already %s; left unchanged",
            txn.transaction_id, outcome.value, current.value
        )
        self.events.publish_tournament_event(
            txn.team.tournament.tournament_id,
            payment_anomaly_event(txn.team.tournament.tournament_id, txn.transaction_id,
                                  current.value, outcome.value)
        )
        raise ConflictError(
            f"Transaction {txn.transaction_id} is already {current.value}",
            status=current.value,
            reported=outcome.value
        )

    # ==================== Refunds ====================

    def refund_payment(self, transaction_id: str, amount, reason: str = None) -> str:
        """Refund a settled payment; only successful transactions can be refunded."""
        txn = self.get_transaction(transaction_id)
        sm = TransactionStateMachine.from_state_string(txn.status)
        try:
            sm.transition('refund')
        except TransitionError:
            raise InvalidStateError(
                f"Cannot refund a {txn.status.value} transaction", status=txn.status.value
            )

        amount = _positive_amount(amount)
        if amount > txn.amount:
            raise ValidationError("Refund amount exceeds the amount paid",
                                  paid=txn.amount, requested=amount)

        refund_id = str(uuid.uuid4())
        payload = {
            'merchantId': self.gateway.merchant_id,
            'merchantTransactionId': transaction_id,
            'merchantRefundId': refund_id,
            'amount': _minor_units(amount),
            'callbackUrl': f"{self.callback_url}?refund={refund_id}",
        }
        if reason:
            payload['reason'] = reason

        body = self.gateway.refund(payload)

        updated = PaymentTransaction.query.filter(
            PaymentTransaction.id == txn.id,
            PaymentTransaction.status == TransactionState.SUCCESS
        ).update({
            PaymentTransaction.status: sm.state,
            PaymentTransaction.refund_id: refund_id,
            PaymentTransaction.refund_amount: amount,
            PaymentTransaction.refund_reason: reason,
            PaymentTransaction.raw_gateway_payload: json.dumps(body),
        }, synchronize_session=False)
        if not updated:
            db.session.rollback()
            logger.warning("Refund %s confirmed by gateway but %s is no longer successful",
                           refund_id, transaction_id)
            raise InvalidStateError(f"Transaction {transaction_id} changed state during refund")

        self._mirror_on_team(txn, sm.state)
        db.session.commit()
        db.session.refresh(txn)

        logger.info("Refunded %.2f on %s (refund %s)", amount, transaction_id, refund_id)
        self._announce(txn, sm.state)
        return refund_id

    def check_refund_status(self, transaction_id: str) -> Dict[str, Any]:
        txn = self.get_transaction(transaction_id)
        if not txn.refund_id:
            raise InvalidStateError(f"Transaction {transaction_id} has not been refunded")
        body = self.gateway.refund_status(transaction_id, txn.refund_id)
        data = body.get('data') or {}
        return {
            'transaction_id': transaction_id,
            'refund_id': txn.refund_id,
            'state': data.get('state'),
            'details': data,
        }

    # ==================== Webhook ====================

    def handle_webhook(self, headers, body) -> Dict[str, Any]:
        """
        Apply a gateway notification.

        Always acknowledges: the gateway re-sends anything not acknowledged,
        so failures are logged for manual reconciliation instead.
        """
        try:
            self._process_webhook(headers, body)
        except ArenaError as e:
            db.session.rollback()
            logger.warning("Webhook not applied (%s): %s", e.code, e.message)
        except Exception:
            db.session.rollback()
            logger.exception("Webhook processing failed; manual reconciliation required")
        return {'success': True}

    def _process_webhook(self, headers, body) -> TransactionState:
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be a JSON object")
        signature = _header(headers, 'X-VERIFY')

        encoded = body.get('response')
        if isinstance(encoded, str):
            if not self.gateway.verify_callback_signature(signature, encoded):
                raise IntegrityError("Webhook signature mismatch")
            try:
                decoded = self.gateway.signer.decode(encoded)
            except ValueError as e:
                raise ValidationError(str(e))
            transaction_id = transaction_id_of(decoded)
            if not transaction_id:
                raise ValidationError("Webhook payload has no transaction id")
            return self._reconcile(self.get_transaction(transaction_id), decoded)

        transaction_id = transaction_id_of(body)
        if not transaction_id:
            raise ValidationError("Webhook payload has no transaction id")
        return self.verify_payment(transaction_id, signature=signature, response=body)

    # ==================== Internals ====================

    @staticmethod
    def _mirror_on_team(txn: PaymentTransaction, status: TransactionState) -> None:
        if status == TransactionState.SUCCESS:
            # Any attempt that took the money settles the team
            settled = Team.query.filter(
                Team.id == txn.team_id,
                Team.payment_status.notin_((PaymentStatus.COMPLETED, PaymentStatus.REFUNDED))
            ).update({
                Team.payment_status: PaymentStatus.COMPLETED,
                Team.payment_transaction_id: txn.transaction_id,
            }, synchronize_session=False)
            if not settled:
                logger.warning("Team already settled; %s needs a manual refund", txn.transaction_id)
            return

        # Failures and refunds only touch the team through the attempt it points at
        Team.query.filter(
            Team.id == txn.team_id,
            Team.payment_transaction_id == txn.transaction_id
        ).update({Team.payment_status: TEAM_PAYMENT_FOR_TRANSACTION[status]},
                 synchronize_session=False)

    def _announce(self, txn: PaymentTransaction, status: TransactionState) -> None:
        tournament_id = txn.team.tournament.tournament_id
        self.events.publish_tournament_event(
            tournament_id,
            payment_event(tournament_id, txn.team.team_id, txn.transaction_id,
                          status.value, txn.amount)
        )
