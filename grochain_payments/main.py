import logging
import os
from pathlib import Path
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from grochain_payments import paystack_service, reconciliation
from grochain_payments.routes import router, orders_router
from grochain_payments.database import Base, engine

BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Grochain Payments")

app.include_router(router)
app.include_router(orders_router)

Base.metadata.create_all(bind=engine)


def error_response(status_code: int, message: str, **extra):
    return JSONResponse(status_code=status_code, content={"status": "error", "message": message, **extra})


def jsonable_errors(errors):
    return [{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors]


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, exc.detail if isinstance(exc.detail, str) else str(exc.detail))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = errors[0].get("msg", "Invalid request") if errors else "Invalid request"
    return error_response(422, message, errors=jsonable_errors(errors))


@app.exception_handler(reconciliation.OrderNotFound)
async def order_not_found_handler(request: Request, exc: reconciliation.OrderNotFound):
    return error_response(404, "Order not found")


@app.exception_handler(reconciliation.TransactionNotFound)
async def transaction_not_found_handler(request: Request, exc: reconciliation.TransactionNotFound):
    return error_response(404, "Transaction not found")


@app.exception_handler(reconciliation.InvalidOrderState)
async def invalid_order_state_handler(request: Request, exc: reconciliation.InvalidOrderState):
    return error_response(400, str(exc))


@app.exception_handler(paystack_service.PaystackRejected)
async def paystack_rejected_handler(request: Request, exc: paystack_service.PaystackRejected):
    return error_response(502, f"Payment provider rejected the request: {exc}")


@app.exception_handler(paystack_service.PaystackUnavailable)
async def paystack_unavailable_handler(request: Request, exc: paystack_service.PaystackUnavailable):
    return error_response(503, "Payment provider unavailable, try again later")


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Server error")
