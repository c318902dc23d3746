import logging
import os

from fastapi import FastAPI

from app.api.routes import router

app = FastAPI(title="wolfroom", version="0.1.0")
app.include_router(router)
# Configure logging
logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)


@app.get("/info")
async def info() -> dict[str, str]:
    return {"name": "wolfroom", "version": "0.1.0"}
