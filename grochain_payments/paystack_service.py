import hashlib
import hmac
import logging
import os
from pathlib import Path

import requests
from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"


class PaystackError(Exception):
    """Base error for calls to the Paystack API."""


class PaystackUnavailable(PaystackError):
    """Paystack could not be reached or answered with a server error."""


class PaystackRejected(PaystackError):
    """Paystack answered but refused the request."""


def _base_url():
    return os.getenv("PAYSTACK_BASE_URL", DEFAULT_BASE_URL).rstrip("/")


def _timeout():
    return float(os.getenv("PAYSTACK_TIMEOUT", "10"))


def _headers():
    return {
        "Authorization": f"Bearer {os.getenv('PAYSTACK_SECRET_KEY', '')}",
        "Content-Type": "application/json",
        "Accept": "application/json",
    }


def _request(method: str, path: str, **kwargs):
    url = f"{_base_url()}{path}"
    try:
        res = requests.request(method, url, headers=_headers(), timeout=_timeout(), **kwargs)
    except requests.RequestException as exc:
        logger.error("Paystack %s %s failed: %s", method, path, exc)
        raise PaystackUnavailable(str(exc)) from exc

    if res.status_code >= 500:
        raise PaystackUnavailable(f"Paystack returned HTTP {res.status_code}")

    try:
        body = res.json()
    except ValueError as exc:
        raise PaystackUnavailable("Paystack returned an invalid response") from exc

    if res.status_code >= 400 or not body.get("status"):
        message = body.get("message") or f"Paystack returned HTTP {res.status_code}"
        logger.warning("Paystack rejected %s %s: %s", method, path, message)
        raise PaystackRejected(message)

    return body.get("data") or {}


def initialize_transaction(email: str, amount: int, reference: str, callback_url: str = None, metadata: dict = None):
    payload = {
        "email": email,
        "amount": amount,
        "reference": reference,
        "currency": "NGN",
        "metadata": metadata or {},
    }
    if callback_url:
        payload["callback_url"] = callback_url
    return _request("POST", "/transaction/initialize", json=payload)


def verify_transaction(reference: str):
    return _request("GET", f"/transaction/verify/{reference}")


def create_refund(reference: str, amount: int = None):
    payload = {"transaction": reference}
    if amount is not None:
        payload["amount"] = amount
    return _request("POST", "/refund", json=payload)


def verify_signature(payload: bytes, signature: str) -> bool:
    secret = os.getenv("PAYSTACK_WEBHOOK_SECRET") or os.getenv("PAYSTACK_SECRET_KEY")
    if not secret or not signature:
        return False
    expected = hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()
    return hmac.compare_digest(expected, signature)
