"""
carebird: Bird SMS webhook + monthly broadcast service
- Inbound keyword webhook (LOVE / UNSUB / STOP)
- CRON-triggered monthly message delivery
- Masked env summary and uncaught-exception logging at import time
"""

from __future__ import annotations

from fastapi import FastAPI

from carebird import __version__
from carebird.config import settings
from carebird.inbound_webhook import router as inbound_router
from carebird.monthly_broadcast import router as broadcast_router
from carebird.runtime import configure_logging, install_global_exception_hook, iso_now, log_core_env

configure_logging()
install_global_exception_hook()
log_core_env(settings())

app = FastAPI(title="carebird", version=__version__)
app.include_router(inbound_router)
app.include_router(broadcast_router)


@app.get("/health")
async def health():
    return {"ok": True, "timestamp": iso_now(), "version": __version__}
