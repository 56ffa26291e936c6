from fastapi import FastAPI

from api.router import api_router
from core.logging import setup_logging

APP_TITLE = "Trading Academy Billing"

setup_logging()

app = FastAPI(title=APP_TITLE)

app.include_router(api_router, prefix="/api")


@app.get("/health")
def health():
    return {"status": "ok"}
