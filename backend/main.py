from fastapi import FastAPI
import uvicorn
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from core.logging_config import configure_logging
from db.database import create_db_and_tables, engine
from db.migrations import run_migrations
from routers.deliveries import router as deliveries_router
from routers.deployments import router as deployments_router
from routers.health import router as health_router
from routers.inventory import router as inventory_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_logging()
    await create_db_and_tables()
    await run_migrations(engine)
    yield


app = FastAPI(
    title="POS Inventory Deduction API",
    description="Recipe-to-inventory deduction, deliveries, recipe deployment and inventory health",
    version="0.1.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


app.include_router(inventory_router, prefix="/inventory", tags=["inventory"])
app.include_router(deliveries_router, prefix="/deliveries", tags=["deliveries"])
app.include_router(deployments_router, prefix="/deployments", tags=["deployments"])
app.include_router(health_router, prefix="/health", tags=["health"])

if __name__ == "__main__":
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=True)
