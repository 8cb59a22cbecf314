import hashlib
import hmac
import json
import os

from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Must be set before grochain_payments.database is imported
SQLALCHEMY_DATABASE_URL = "sqlite:///./test_temp.db"
os.environ["DATABASE_URL"] = SQLALCHEMY_DATABASE_URL

from grochain_payments.models import Order, OrderItem, Transaction  # noqa: E402

JWT_SECRET = "test-jwt-secret"
PAYSTACK_SECRET = "sk_test_secret"

engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def auth_headers(user_id="buyer-1", role="buyer", email="buyer1@example.com"):
    token = jwt.encode({"sub": user_id, "role": role, "email": email}, JWT_SECRET, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def sign(body: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def webhook_request(event: str, data: dict, secret: str = PAYSTACK_SECRET):
    body = json.dumps({"event": event, "data": data}).encode()
    return body, {"x-paystack-signature": sign(body, secret), "Content-Type": "application/json"}


def make_order(buyer_id="buyer-1", email="buyer1@example.com", total=500000, **fields):
    db = TestingSessionLocal()
    order = Order(
        buyer_id=buyer_id,
        buyer_email=email,
        shipping_address={"street": "1 Farm Road", "city": "Ibadan", "state": "Oyo",
                          "postal_code": "200001", "country": "Nigeria"},
        total=total,
        items=[OrderItem(listing_id="listing-1", quantity=2, price=total // 2, unit="bag")],
        **fields,
    )
    db.add(order)
    db.commit()
    order_id = order.id
    db.close()
    return order_id


def make_transaction(order_id, reference, amount=500000, status="pending", type="payment", user_id="buyer-1"):
    db = TestingSessionLocal()
    db.add(Transaction(
        type=type,
        status=status,
        amount=amount,
        currency="NGN",
        reference=reference,
        order_id=order_id,
        user_id=user_id,
        payment_provider="paystack",
        payment_provider_reference=reference,
    ))
    db.commit()
    db.close()


def verification(reference, amount=500000, status="success", currency="NGN"):
    return {
        "status": status,
        "amount": amount,
        "currency": currency,
        "reference": reference,
        "paid_at": "2026-10-19T10:00:00.000Z",
        "channel": "card",
        "gateway_response": "Successful",
    }
