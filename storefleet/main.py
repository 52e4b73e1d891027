from __future__ import annotations

import uvicorn
from fastapi import FastAPI
from fastapi.responses import RedirectResponse

from storefleet.api import stores
from storefleet.api.utils import register_exception_handlers
from storefleet.logging_config import configure_logging

configure_logging()

app = FastAPI(
    title="Storefleet",
    description="Read-only status API for provisioned e-commerce stores",
    version="0.1.0",
)


@app.get("/", include_in_schema=False)
def root() -> RedirectResponse:
    """Redirect root URL to Swagger UI docs."""
    return RedirectResponse(url="/docs")


@app.get("/healthz")
def healthz() -> dict[str, str]:
    return {"status": "ok"}


app.include_router(stores.router)

register_exception_handlers(app)

if __name__ == "__main__":
    uvicorn.run("storefleet.main:app", host="0.0.0.0", port=8001, log_level="info")
