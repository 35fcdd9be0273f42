from contextlib import asynccontextmanager
from fastapi import FastAPI
from .logging import setup_logging
from .config import settings
from .db import get_conn, migrate
from .api.routes import router as api_router

setup_logging()

@asynccontextmanager
async def lifespan(_app: FastAPI):
    conn = get_conn(settings.db_path)
    migrate(conn)
    conn.close()
    sched = None
    if settings.scheduler_enabled:
        from .signals.scheduler import schedule_jobs
        sched = schedule_jobs()
    yield
    if sched is not None:
        sched.shutdown(wait=False)

app = FastAPI(title="rebalancer-service", lifespan=lifespan)
app.include_router(api_router)
