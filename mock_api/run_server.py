#!/usr/bin/env python3
"""
Startup script for the mock Aggregate server.
"""

import uvicorn
from mock_api.server import app

if __name__ == "__main__":
    print("Starting Mock Aggregate Server...")
    print("Seeded table: default/census (250 rows, data version 1)")
    print("\nServer will be available at: http://localhost:8001")
    print("API docs available at: http://localhost:8001/docs")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=8001,
        log_level="info"
    )
