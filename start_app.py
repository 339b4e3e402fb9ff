#!/usr/bin/env python
"""Start the FastAPI application with the port taken from the environment."""
import os

import uvicorn

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 8000))

    print(f"Starting application on port {port}")

    uvicorn.run(
        "pricedrop.main:app",
        host="0.0.0.0",
        port=port,
        log_level="info"
    )
