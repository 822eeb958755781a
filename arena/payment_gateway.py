"""
Client for the PhonePe-style payment gateway.

Every request body is ``{"request": base64(json)}`` and carries an
``X-VERIFY`` header of ``sha256hex(base64 + path + salt) + "###" + index``.
GET endpoints are signed over the path alone. The same signer checks the
signatures the gateway presents on webhooks and responses.
"""
import base64
import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Optional

import requests

from .errors import ExternalServiceError
from shared.state_machine import TransactionState

logger = logging.getLogger(__name__)

PAY_PATH = '/pg/v1/pay'
STATUS_PATH = '/pg/v1/status/{merchant_id}/{transaction_id}'
REFUND_PATH = '/pg/v1/refund'
REFUND_STATUS_PATH = '/pg/v1/refund/{merchant_id}/{transaction_id}/{refund_id}'

SUCCESS_CODES = {'SUCCESS', 'PAYMENT_SUCCESS'}
PENDING_CODES = {'PAYMENT_PENDING', 'PENDING'}


class GatewaySigner:
    """Builds and checks gateway checksums."""

    DELIMITER = '###'

    def __init__(self, salt_key: str, salt_index: int = 1):
        if not salt_key:
            raise ValueError("A salt key is required to sign gateway requests")
        self.salt_key = salt_key
        self.salt_index = salt_index

    @staticmethod
    def encode(payload: dict) -> str:
        raw = json.dumps(payload, separators=(',', ':')).encode('utf-8')
        return base64.b64encode(raw).decode('ascii')

    @staticmethod
    def decode(encoded: str) -> dict:
        try:
            return json.loads(base64.b64decode(encoded, validate=True).decode('utf-8'))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Undecodable gateway payload: {e}")

    def checksum(self, path: str, encoded: str = '') -> str:
        digest = hashlib.sha256((encoded + path + self.salt_key).encode('utf-8')).hexdigest()
        return f"{digest}{self.DELIMITER}{self.salt_index}"

    def verify(self, signature: Optional[str], path: str, encoded: str = '') -> bool:
        if not signature:
            return False
        expected = self.checksum(path, encoded)
        return hmac.compare_digest(expected.encode('utf-8'), signature.strip().encode('utf-8'))


@dataclass
class GatewayResponse:
    body: dict
    signature: Optional[str] = None


def transaction_id_of(body: dict) -> Optional[str]:
    data = body.get('data') or {}
    return data.get('merchantTransactionId') or body.get('merchantTransactionId')


def outcome_of(body: dict) -> Optional[TransactionState]:
    """
    Map a gateway status body to a transaction outcome.

    Returns None while the gateway still reports the payment as pending.
    """
    data = body.get('data') or {}
    code = body.get('code')
    response_code = data.get('responseCode')
    state = data.get('state')

    if code in PENDING_CODES or state in PENDING_CODES:
        return None
    if body.get('success') is False:
        return TransactionState.FAILED
    if response_code in SUCCESS_CODES or code in SUCCESS_CODES or state == 'COMPLETED':
        return TransactionState.SUCCESS
    return TransactionState.FAILED


class PaymentGatewayClient:
    """
    Thin HTTP client for the gateway.

    POST calls (pay, refund) are sent exactly once; a retry could charge or
    refund twice. Status GETs are retried on transport errors and 5xx.
    """

    def __init__(
        self,
        base_url: str,
        merchant_id: str,
        signer: GatewaySigner,
        timeout: float = 10,
        status_retries: int = 3,
        retry_backoff: float = 0.5,
        session: requests.Session = None
    ):
        self.base_url = base_url.rstrip('/')
        self.merchant_id = merchant_id
        self.signer = signer
        self.timeout = timeout
        self.status_retries = max(0, status_retries)
        self.retry_backoff = retry_backoff
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config) -> "PaymentGatewayClient":
        signer = GatewaySigner(config['PAYMENT_SALT_KEY'], config.get('PAYMENT_SALT_INDEX', 1))
        return cls(
            base_url=config['PAYMENT_GATEWAY_BASE_URL'],
            merchant_id=config['PAYMENT_MERCHANT_ID'],
            signer=signer,
            timeout=config.get('PAYMENT_GATEWAY_TIMEOUT', 10),
            status_retries=config.get('PAYMENT_STATUS_RETRIES', 3),
            retry_backoff=0 if config.get('TESTING') else 0.5,
        )

    # ==================== Paths & signatures ====================

    def status_path(self, transaction_id: str) -> str:
        return STATUS_PATH.format(merchant_id=self.merchant_id, transaction_id=transaction_id)

    def refund_status_path(self, transaction_id: str, refund_id: str) -> str:
        return REFUND_STATUS_PATH.format(
            merchant_id=self.merchant_id, transaction_id=transaction_id, refund_id=refund_id
        )

    def transaction_checksum(self, transaction_id: str) -> str:
        return self.signer.checksum(self.status_path(transaction_id))

    def verify_transaction_signature(self, signature: Optional[str], transaction_id: str) -> bool:
        return self.signer.verify(signature, self.status_path(transaction_id))

    def verify_callback_signature(self, signature: Optional[str], encoded_response: str) -> bool:
        return self.signer.verify(signature, '', encoded_response)

    # ==================== Endpoints ====================

    def pay(self, payload: dict) -> dict:
        return self._post(PAY_PATH, payload)

    def refund(self, payload: dict) -> dict:
        return self._post(REFUND_PATH, payload)

    def status(self, transaction_id: str) -> GatewayResponse:
        return self._get(self.status_path(transaction_id))

    def refund_status(self, transaction_id: str, refund_id: str) -> dict:
        return self._get(self.refund_status_path(transaction_id, refund_id)).body

    # ==================== Transport ====================

    def _post(self, path: str, payload: dict) -> dict:
        encoded = self.signer.encode(payload)
        headers = {
            'accept': 'application/json',
            'Content-Type': 'application/json',
            'X-VERIFY': self.signer.checksum(path, encoded),
        }
        try:
            resp = self.session.post(
                f"{self.base_url}{path}",
                json={'request': encoded},
                headers=headers,
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error("Gateway POST %s failed: %s", path, e)
            raise ExternalServiceError(f"Payment gateway unreachable: {e}")

        body = self._parse(resp, path)
        if body.get('success') is not True:
            raise ExternalServiceError(
                body.get('message') or "Payment gateway rejected the request",
                gateway_code=body.get('code')
            )
        return body

    def _get(self, path: str) -> GatewayResponse:
        headers = {
            'accept': 'application/json',
            'Content-Type': 'application/json',
            'X-VERIFY': self.signer.checksum(path),
            'X-MERCHANT-ID': self.merchant_id,
        }
        url = f"{self.base_url}{path}"
        last_error = None

        for attempt in range(self.status_retries + 1):
            if attempt:
                time.sleep(self.retry_backoff * attempt)
            try:
                resp = self.session.get(url, headers=headers, timeout=self.timeout)
            except requests.exceptions.RequestException as e:
                last_error = f"Payment gateway unreachable: {e}"
                logger.warning("Gateway GET %s attempt %d failed: %s", path, attempt + 1, e)
                continue

            if resp.status_code >= 500:
                last_error = f"Payment gateway returned HTTP {resp.status_code}"
                logger.warning("Gateway GET %s attempt %d: HTTP %d", path, attempt + 1, resp.status_code)
                continue

            return GatewayResponse(body=self._parse(resp, path), signature=resp.headers.get('X-VERIFY'))

        raise ExternalServiceError(last_error or "Payment gateway unavailable")

    @staticmethod
    def _parse(resp: requests.Response, path: str) -> dict:
        if not resp.ok:
            logger.error("Gateway %s returned HTTP %d", path, resp.status_code)
            raise ExternalServiceError(
                f"Payment gateway returned HTTP {resp.status_code}", http_status=resp.status_code
            )
        try:
            body = resp.json()
        except ValueError:
            raise ExternalServiceError("Payment gateway returned a non-JSON response")
        if not isinstance(body, dict):
            raise ExternalServiceError("Payment gateway returned an unexpected response")
        return body
