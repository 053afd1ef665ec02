#!/usr/bin/env python3
"""
Installment Financing Engine Entry Point

Starts the FastAPI server with settings taken from INSTALLMENT_* environment
variables (or a .env file).
"""

import sys

from installment_engine.api import run_server
from installment_engine.config import get_config


if __name__ == "__main__":
    config = get_config()
    print("Starting Installment Financing Engine...")
    print(f"Storage: {config.database_url}")
    print(f"API available at: http://localhost:{config.api_port}")
    print(f"Documentation at: http://localhost:{config.api_port}/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Installment Financing Engine...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
