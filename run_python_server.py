#!/usr/bin/env python3
"""
Standalone script to run the bundle discount sync backend
"""
import logging
import os
import sys
from pathlib import Path

# Add current directory to Python path
current_dir = Path(__file__).parent
sys.path.insert(0, str(current_dir))

logger = logging.getLogger("run_python_server")

if __name__ == "__main__":
    import uvicorn

    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 5000))
    reload = os.getenv("NODE_ENV", "development") == "development"

    logging.basicConfig(level=logging.INFO)
    logger.info(
        "Starting bundle discount sync on %s:%s (env=%s, reload=%s, docs=http://%s:%s/api/docs)",
        host, port, os.getenv("NODE_ENV", "development"), reload, host, port,
    )

    uvicorn.run(
        "main:app",
        host=host,
        port=port,
        reload=reload,
        log_level="debug" if reload else "info",
    )
