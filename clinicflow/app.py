"""
ClinicFlow Server — Application Factory
"""

import os
import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("clinicflow-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="ClinicFlow Scheduling & Billing Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from clinicflow.routers import (
    health,
    patients,
    scheduling,
    billing,
)

app.include_router(health.router)
app.include_router(patients.router)
app.include_router(scheduling.router)
app.include_router(billing.router)


# ── 4. Startup event ──
@app.on_event("startup")
async def startup_event():
    """Log startup information and wire the engine"""
    port = os.environ.get("PORT", "8080")
    logger.info("=" * 60)
    logger.info("ClinicFlow Server Starting")
    logger.info(f"Listening on port: {port}")

    # Engine (blocking, needed before serving requests)
    try:
        from clinicflow import settings
        from clinicflow.dependencies import get_gcs
        from clinicflow.engine.setup import get_engine, initialize_engine
        if get_engine() is None:
            initialize_engine(get_gcs() if settings.USE_GCS else None)
        logger.info("ClinicFlow engine initialized")
    except Exception as e:
        logger.warning(f"Engine failed to start — will retry on first request: {e}")

    logger.info(f"Total init time: {time.time() - _startup_time:.2f}s")
    logger.info("=" * 60)
