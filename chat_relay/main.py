import logging

from fastapi import FastAPI

from .api.routes import line
from .config import settings

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

app = FastAPI(
    title=settings.app_name,
    version=settings.app_version,
)

app.include_router(line.router)


@app.get("/healthz")
def healthz():
    return {"ok": True, "version": settings.app_version}
