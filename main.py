import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from dotenv import load_dotenv

load_dotenv()

from app.config import APP_NAME, CORS_ORIGINS, DEBUG
from app.errors import register_error_handlers
from app.tasks import start_scheduler, stop_scheduler

logging.basicConfig(
    level=logging.DEBUG if DEBUG else logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

from app.routers import health, auth, webhooks
from app.routers.cms import router as cms_router
from app.routers.member import router as member_router
from app.routers.trainer import router as trainer_router

API_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting %s v%s", APP_NAME, API_VERSION)
    start_scheduler()
    yield
    stop_scheduler()
    logger.info("%s stopped", APP_NAME)


app = FastAPI(
    title=APP_NAME,
    description="Class booking with waitlists, QR check-in and Stripe subscription billing for Club Gym",
    version=API_VERSION,
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

# The Stripe webhook is server to server and is not affected by CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_origin_regex=r"https?://(localhost|127\.0\.0\.1)(:\d+)?",
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE"],
    allow_headers=["Authorization", "Content-Type"],
)

register_error_handlers(app)


@app.get("/")
def root():
    return {
        "name": APP_NAME,
        "version": API_VERSION,
        "docs": "/docs",
    }


for router in (health.router, auth.router, webhooks.router, member_router, trainer_router, cms_router):
    app.include_router(router)


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=8002, reload=DEBUG)
