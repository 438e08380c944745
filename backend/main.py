# backend/main.py
import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from learnstack.apis.routes_stack import router as stack_router
from learnstack.database.connection import init_models

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)

logger = logging.getLogger(__name__)

SERVICE_NAME = "learnstack"
SERVICE_VERSION = "1.0.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    if os.getenv("LEARNSTACK_SKIP_DB_INIT", "false").lower() != "true":
        await init_models()
        logger.info("Database tables ready")
    yield


app = FastAPI(title="learnstack API", version=SERVICE_VERSION, lifespan=lifespan)

# CORS middleware for frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(stack_router)


@app.get("/")
async def health():
    return {"service": SERVICE_NAME, "version": SERVICE_VERSION, "status": "ok"}


# ============================================
# RUN SERVER
# ============================================

if __name__ == "__main__":
    print("🚀 Starting learnstack API Server...")
    print("📍 Server running at: http://localhost:8000")
    print("📖 API docs at: http://localhost:8000/docs")

    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=True  # Auto-reload on code changes (development only)
    )
