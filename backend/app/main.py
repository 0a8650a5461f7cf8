import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.settings import settings, validate_settings
from app.db.session import engine
from app.models import Base
from app.routers.billing import router as billing_router
from app.routers.bonos import router as bonos_router
from app.routers.invoices import router as invoices_router
from app.routers.sessions import router as sessions_router
from app.services.errors import BillingError

app = FastAPI(title="dygo API", version="0.1.0")
logger = logging.getLogger("dygo.startup")


@app.exception_handler(BillingError)
async def billing_error_handler(request: Request, exc: BillingError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    request_id = request.headers.get("x-request-id")
    logger.exception("Unhandled server error", extra={"request_id": request_id})
    payload = {"detail": "Internal server error"}
    if request_id:
        payload["request_id"] = request_id
    return JSONResponse(status_code=500, content=payload)


@app.on_event("startup")
def startup():
    validate_settings(settings)
    Base.metadata.create_all(bind=engine)
    logger.info("Schema ensured (%s tables).", len(Base.metadata.tables))


@app.get("/health")
def health():
    return {"status": "ok"}


app.include_router(invoices_router, prefix="/api")
app.include_router(sessions_router, prefix="/api")
app.include_router(bonos_router, prefix="/api")
app.include_router(billing_router, prefix="/api")
