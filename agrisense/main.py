import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from agrisense import config
from agrisense.database import create_db_and_tables
from agrisense.errors import register_error_handlers
from agrisense.scheduler import AnalyticsScheduler
from agrisense.routers.auth import router as auth_router
from agrisense.routers.users import router as users_router
from agrisense.routers.analytics import router as analytics_router
from agrisense.routers.voice import router as voice_router
from agrisense.routers.admin import router as admin_router
from agrisense.routers.devices import router as devices_router
from agrisense.routers.weather import router as weather_router
from agrisense.routers.ai import router as ai_router

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting up and creating database tables...")
    create_db_and_tables()
    if config.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    yield
    logger.info("Shutting down...")
    await app.state.scheduler.stop()

app = FastAPI(title="AgriSense API", lifespan=lifespan)
app.state.scheduler = AnalyticsScheduler()

app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

register_error_handlers(app)

app.include_router(auth_router, prefix="/api/auth")
app.include_router(users_router, prefix="/api")
app.include_router(analytics_router, prefix="/api")
app.include_router(voice_router, prefix="/api")
app.include_router(admin_router, prefix="/api")
app.include_router(devices_router, prefix="/api")
app.include_router(weather_router, prefix="/api")
app.include_router(ai_router, prefix="/api")


@app.get("/api/health")
def health_check():
    return {
        "message": "AgriSense backend is running",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "environment": config.ENVIRONMENT,
    }
