from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .cache import TTLCache
from .config import settings
from .db import init_db
from .errors import register_error_handlers
from .logger import get_logger
from .routers import router

logger = get_logger(__name__)

@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.create_tables:
        init_db()
        logger.info("Database tables ensured")
    yield

app = FastAPI(title="DocQuiz API", lifespan=lifespan)
# Allow local Next.js dev server
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
# Memoised document samples, shared by every request of this process
app.state.cache = TTLCache(max_entries=settings.cache_max_entries, ttl_seconds=settings.cache_ttl_seconds)
register_error_handlers(app)
app.include_router(router)

# Optional root
@app.get("/")
def root():
    return {"name": "DocQuiz API", "status": "running"}
