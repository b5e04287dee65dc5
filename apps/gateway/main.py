from __future__ import annotations

import logging
import os

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from apps.common.errors import MeteringError
from apps.common.metrics import REG
from apps.config.settings import settings
from apps.gateway.routers import utilities

logging.basicConfig(level=settings.LOG_LEVEL)
log = logging.getLogger(__name__)

# error kind -> HTTP status
STATUS_BY_KIND = {
    "validation_error": 422,
    "not_found": 404,
    "no_rate_plan_found": 404,
    "duplicate_active_meter": 409,
    "out_of_order_read": 409,
    "rate_plan_inactive": 409,
    "insufficient_read_history": 409,
    "concurrency_conflict": 503,
}


app = FastAPI(title="Campground Utility Metering", version="v0.1.0")


@app.exception_handler(MeteringError)
async def metering_error_handler(request: Request, exc: MeteringError):
    status = STATUS_BY_KIND.get(exc.kind, 400)
    if status >= 500:
        log.warning("request_failed", extra={"path": request.url.path, "kind": exc.kind})
    return JSONResponse(status_code=status, content={"error": exc.to_dict()})


# routers
app.include_router(utilities.router)


@app.get("/healthz")
async def healthz():
    return {"ok": True}


@app.get("/metrics")
async def metrics():
    return PlainTextResponse(REG.render_text(), media_type="text/plain; version=0.0.4")


if __name__ == "__main__":
    import uvicorn  # type: ignore

    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("GATEWAY_PORT", "8080")))
