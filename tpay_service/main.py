import time

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from .routers import children, invoices, payments, tpay
from .db import init_db
from .config import settings
from .log import configure_logging

configure_logging(settings.log_level, settings.log_json, cache=settings.log_cache_loggers)
logger = structlog.get_logger(component="app")

app = FastAPI(title="TPay Payments Service")

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    response = await call_next(request)
    duration_ms = round((time.time() - start) * 1000, 1)
    logger.info("request", method=request.method, path=request.url.path,
                status=response.status_code, duration_ms=duration_ms)
    return response


app.include_router(payments.router)
app.include_router(invoices.router)
app.include_router(tpay.router)
app.include_router(children.router)


@app.get("/health", tags=["health"])
async def health():
    return {"status": "ok", "env": settings.env, "tpayConfigured": bool(settings.tpay_merchant_id and settings.tpay_secret)}


@app.on_event("startup")
async def on_startup():
    await init_db()
    logger.info("service started", env=settings.env, tpay_env=settings.tpay_env)

if __name__ == "__main__":
    uvicorn.run("tpay_service.main:app", host=settings.app_host, port=settings.app_port, reload=(settings.env != "production"))
