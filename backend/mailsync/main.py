"""FastAPI application entrypoint."""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .config import settings
from .database import init_db
from .routers import sync
from .runtime import build_runtime, start_runtime, stop_runtime


@asynccontextmanager
async def lifespan(app: FastAPI):
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    init_db()
    runtime = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = build_runtime(settings)
        app.state.runtime = runtime
    start_runtime(runtime)
    try:
        yield
    finally:
        stop_runtime(runtime)


app = FastAPI(
    title="Mail Sync API",
    description="Resumable Gmail metadata sync with a background job queue",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(sync.router)


@app.get("/api/health")
def health():
    return {"status": "ok"}
