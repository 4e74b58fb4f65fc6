"""
SafeWork Push - Main entry point for deployment.
This file imports and runs the FastAPI application from the safework package.
"""
import logging
import os
import subprocess

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("safework")

# Run migrations before starting the server
logger.info("Running database migrations...")
try:
    subprocess.run(["alembic", "upgrade", "head"], check=True)
    logger.info("Migrations complete.")
except (subprocess.CalledProcessError, FileNotFoundError) as e:
    logger.warning(f"Migration failed: {e}")
    # Continue anyway - migrations might already be applied

# Import and run the app
import uvicorn
from safework.main import app

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
