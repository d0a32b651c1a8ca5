#!/usr/bin/env python3
"""
Local development server for the visit tracker.
Serves a demo host app with the tracking middleware installed.
"""

import os
import sys
from pathlib import Path

# Load environment variables from .env file
from dotenv import load_dotenv
load_dotenv()

# Add src to Python path
current_dir = Path(__file__).parent
src_dir = current_dir / "src"
sys.path.insert(0, str(src_dir))

os.environ.setdefault('ENVIRONMENT', 'development')
# Create tables on first start against the local sqlite file
os.environ.setdefault('MIGRATE_ON_START', 'true')

if __name__ == "__main__":
    import uvicorn

    print("Starting visit tracker dev server")
    print("Health check: http://localhost:8000/health")
    print("Press Ctrl+C to stop\n")

    uvicorn.run(
        "visit_tracker.api.main:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=True,
        log_level="info"
    )
