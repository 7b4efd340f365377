#!/usr/bin/env python3
"""
Serve the discovery HTTP API with uvicorn.
"""

import os
import sys
from pathlib import Path

import dotenv
dotenv.load_dotenv()

sys.path.insert(0, str(Path(__file__).parent.parent))

import uvicorn


def main():
    host = os.getenv("API_HOST", "127.0.0.1")
    port = int(os.getenv("API_PORT", "8000"))
    uvicorn.run("discovery.api.main:app", host=host, port=port, log_level="info")


if __name__ == "__main__":
    main()
