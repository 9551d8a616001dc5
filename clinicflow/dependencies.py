"""
Lazy-init shared dependencies used across multiple routers.
"""

import logging

from clinicflow import settings

logger = logging.getLogger("clinicflow-server")

# Global singletons - initialized lazily
gcs = None


def get_gcs():
    """Lazy initialization of GCS Bucket Manager"""
    global gcs
    if gcs is None:
        try:
            from clinicflow.infrastructure.gcs import GCSBucketManager
            logger.info("Initializing GCS Bucket Manager (lazy)...")
            gcs = GCSBucketManager(bucket_name=settings.GCS_BUCKET_NAME)
            logger.info("GCS Bucket Manager initialized successfully")
        except Exception as e:
            logger.error(f"GCS Bucket Manager initialization failed: {e}")
    return gcs


def get_engine():
    """The engine singleton; built on first use if startup did not build it."""
    from clinicflow.engine.setup import get_engine as _get_engine, initialize_engine

    engine = _get_engine()
    if engine is None:
        try:
            engine = initialize_engine(get_gcs() if settings.USE_GCS else None)
        except Exception as e:
            logger.error(f"Engine initialization failed: {e}")
            return None
    return engine
