"""
MSSP Service Launcher

Starts the MSSP business-management API from the mssp/ package.

This service provides:
- Client, contract and service-scope search
- Dynamic scope variables
- Dashboards, widgets and card data
- Custom query execution and external plugins
- License/hardware availability checks
- Role-based access control and audit trail

Usage:
    python scripts/run_mssp_service.py --host 0.0.0.0 --port 8010

Environment Variables:
    MSSP_API_PORT: API port (default: 8010)
    MSSP_BIND_HOST: Bind address (default: 0.0.0.0)
    MSSP_DB_URL: SQLAlchemy database URL (default: sqlite file under mssp/data/)
"""
import argparse
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

import uvicorn


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the MSSP business-management service")
    parser.add_argument("--host", default=os.getenv("MSSP_BIND_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("MSSP_API_PORT", "8010")))
    parser.add_argument("--reload", action="store_true", help="Auto-reload on code changes (development)")
    args = parser.parse_args()

    print("=" * 60)
    print("MSSP Business Manager")
    print("=" * 60)
    print(f"API Address: {args.host}:{args.port}")
    print(f"Database: {os.getenv('MSSP_DB_URL', 'mssp/data/mssp.db')}")
    print(f"Package: mssp/")
    print("=" * 60)

    os.environ["MSSP_API_PORT"] = str(args.port)
    os.environ["MSSP_BIND_HOST"] = args.host

    uvicorn.run("mssp.service:app", host=args.host, port=args.port, reload=args.reload)


if __name__ == "__main__":
    main()
