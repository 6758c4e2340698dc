"""
Matching API Server - Startup Script
Starts the NicheLink matching API (port from PORT, default 5001)
"""
import os
import logging

import uvicorn

logger = logging.getLogger(__name__)


def main():
    host = os.environ.get('HOST', '0.0.0.0')
    port = int(os.environ.get('PORT', 5001))

    logger.info(f"Starting NicheLink matching API on http://{host}:{port} (docs at /docs)")

    uvicorn.run(
        "api.server:app",
        host=host,
        port=port,
        reload=False,
        log_level=os.environ.get('LOG_LEVEL', 'info').lower(),
    )


if __name__ == "__main__":
    main()
