"""
Pipeline Pulse — Entry Point
=============================

Starts the attribution API with uvicorn. Syncs are triggered through
POST /api/sync/* or from the command line with scripts/sync_all.py.

Run: python main.py
"""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

logging.basicConfig(
    level=getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO),
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger("pipeline-pulse")

PORT = int(os.getenv("DASHBOARD_PORT", "8001"))

SOURCE_KEYS = {
    "Close": "CLOSE_API_KEY",
    "Calendly": "CALENDLY_API_KEY",
    "Typeform": "TYPEFORM_API_KEY",
    "Notion": "NOTION_INTEGRATION_SECRET",
}


def log_banner():
    logger.info("=" * 60)
    logger.info("  PIPELINE PULSE — Sales & Marketing Attribution")
    logger.info("=" * 60)
    logger.info("  Environment : %s", os.getenv("ENVIRONMENT", "development"))
    logger.info("  Server      : http://0.0.0.0:%d", PORT)
    logger.info("  Dashboard   : http://localhost:%d/api/enhanced-dashboard", PORT)
    logger.info("  API Docs    : http://localhost:%d/docs", PORT)
    logger.info("  Sync status : http://localhost:%d/api/sync/status", PORT)
    for source, env_var in SOURCE_KEYS.items():
        state = "configured" if os.getenv(env_var) else "missing " + env_var
        logger.info("  %-11s : %s", source, state)
    if not os.getenv("SUPABASE_URL"):
        logger.warning("  SUPABASE_URL is not set; data endpoints will fail")
    logger.info("=" * 60)


if __name__ == "__main__":
    import uvicorn

    log_banner()
    uvicorn.run(
        "dashboard.api.main:app",
        host="0.0.0.0",
        port=PORT,
        reload=os.getenv("DEBUG", "false").lower() == "true",
    )
