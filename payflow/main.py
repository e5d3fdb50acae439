import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from payflow.config import get_settings
from payflow.database import Base, engine, get_db
from payflow.errors import PaymentServiceError
from payflow.providers import build_provider
from payflow.routes import get_payment_service, router
from payflow.service import PaymentService

logger = logging.getLogger(__name__)

settings = get_settings()
logging.basicConfig(
    level=settings.log_level,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Built once per process; tests may preinstall their own service.
    if getattr(app.state, "payment_service", None) is None:
        provider = build_provider(settings)
        app.state.payment_service = PaymentService(provider, settings)
        logger.info("payments.startup provider=%s", provider.name)
    yield
    close = getattr(app.state.payment_service.provider, "close", None)
    if callable(close):
        close()


app = FastAPI(title="Payment Preference & Reconciliation Service", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Authorization", "Content-Type"],
)

app.include_router(router)

Base.metadata.create_all(bind=engine)


@app.exception_handler(PaymentServiceError)
async def payment_error_handler(request: Request, exc: PaymentServiceError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "error": exc.public_message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    fields = sorted({".".join(str(p) for p in err["loc"] if p not in ("body", "query")) for err in exc.errors()})
    message = "Invalid request: " + ", ".join(f for f in fields if f) if any(fields) else "Invalid request"
    return JSONResponse(status_code=400, content={"success": False, "error": message})


@app.post("/payments/webhook")
async def payment_webhook(
    request: Request,
    db: Session = Depends(get_db),
    service: PaymentService = Depends(get_payment_service),
):
    payload = await request.body()

    # Always acknowledge; failures are only logged.
    try:
        service.handle_webhook(db, payload, request.headers, request.query_params)
    except Exception:
        logger.exception("payments.webhook processing failed")

    return {"ok": True}


@app.get("/health")
def health():
    return {"status": "ok"}
