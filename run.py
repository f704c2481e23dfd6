#!/usr/bin/env python3
"""
Microlend Entry Point

Starts the FastAPI server with the lending engine. Host, port, storage and
logging come from MICROLEND_* environment variables.
"""

import sys
from pathlib import Path

# Add the project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from microlend.api import run_server


if __name__ == "__main__":
    print("Starting Microlend lending engine...")
    print("Documentation at: http://localhost:8090/docs")
    print()

    try:
        run_server(debug=False)
    except KeyboardInterrupt:
        print("\nShutting down Microlend...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)
