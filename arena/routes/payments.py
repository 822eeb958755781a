import logging

from flask import Blueprint, request, jsonify, redirect, current_app

from ..errors import ArenaError, ValidationError
from shared.state_machine import TransactionState

logger = logging.getLogger(__name__)

bp = Blueprint('payments', __name__, url_prefix='/api/v1/payments')


@bp.route('/status', methods=['GET'])
def gateway_status():
    return jsonify(current_app.payments.gateway_status())


@bp.route('/initiate', methods=['POST'])
def initiate_payment():
    data = request.json or {}
    team_id = data.get('team_id')
    if not team_id:
        raise ValidationError("team_id is required", field='team_id')

    result = current_app.payments.initiate_payment(
        team_id,
        data.get('amount'),
        payer_info={
            'name': data.get('name'),
            'mobile_number': data.get('mobile_number'),
            'description': data.get('description'),
        }
    )
    return jsonify(result)


@bp.route('/callback', methods=['POST', 'GET'])
def payment_callback():
    """Browser lands here after checkout; poll the gateway and redirect."""
    transaction_id = request.args.get('id') or request.form.get('transactionId')
    success_url = current_app.config['PAYMENT_SUCCESS_URL']
    failure_url = current_app.config['PAYMENT_FAILURE_URL']
    if not transaction_id:
        return redirect(failure_url)

    try:
        status = current_app.payments.verify_payment(transaction_id)
    except ArenaError as e:
        logger.warning("Payment callback for %s failed: %s", transaction_id, e.message)
        return redirect(failure_url)

    if status in (TransactionState.SUCCESS, TransactionState.PENDING):
        return redirect(f"{success_url}?id={transaction_id}&status={status.value}")
    return redirect(f"{failure_url}?id={transaction_id}")


@bp.route('/status/<transaction_id>', methods=['GET'])
def check_payment_status(transaction_id: str):
    status = current_app.payments.verify_payment(transaction_id)
    txn = current_app.payments.get_transaction(transaction_id)
    return jsonify({
        'status': status.value,
        'transaction': txn.to_dict()
    })


@bp.route('/refund', methods=['POST'])
def refund_payment():
    data = request.json or {}
    transaction_id = data.get('transaction_id')
    if not transaction_id:
        raise ValidationError("transaction_id is required", field='transaction_id')

    refund_id = current_app.payments.refund_payment(
        transaction_id, data.get('amount'), data.get('reason')
    )
    return jsonify({
        'status': TransactionState.REFUNDED.value,
        'refund_id': refund_id,
        'transaction_id': transaction_id
    })


@bp.route('/refund/<transaction_id>', methods=['GET'])
def check_refund_status(transaction_id: str):
    return jsonify(current_app.payments.check_refund_status(transaction_id))


@bp.route('/webhook', methods=['POST'])
def payment_webhook():
    """Gateway notifications; always acknowledged with 200."""
    body = request.get_json(silent=True)
    return jsonify(current_app.payments.handle_webhook(request.headers, body)), 200
