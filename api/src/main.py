from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from api.src.config import get_settings
from api.src.db.database import init_db
from api.src.routes import health_router, pipelines_router, webhooks_router, promotions_router

settings = get_settings()

@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    print("🚀 Starting Rollgate API")
    await init_db()
    yield
    # Shutdown
    print("👋 Shutting down Rollgate API")

app = FastAPI(
    title="Rollgate",
    description="Gated build and promotion pipelines for dev, qa, staging and prod",
    version="0.1.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health_router)
app.include_router(pipelines_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(promotions_router, prefix="/api")

@app.get("/")
async def root():
    return {
        "name": "Rollgate",
        "version": "0.1.0",
        "docs": "/docs"
    }
