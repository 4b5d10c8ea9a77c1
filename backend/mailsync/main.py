"""FastAPI application entrypoint."""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .database import init_db
from .routers import jobs, sync

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(
    title="Mailbox Sync Engine API",
    description="Chunked, resumable mailbox synchronization jobs",
    lifespan=lifespan,
)

app.include_router(sync.router)
app.include_router(jobs.router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
