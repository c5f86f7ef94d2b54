#!/usr/bin/env python3
"""Run the consent workflow JSON API.

Usage:
    python run_api.py                 # Start on default port 5000
    python run_api.py --port 8080     # Start on custom port
    python run_api.py --db data/dev.db
"""

import argparse
import logging


def main():
    parser = argparse.ArgumentParser(description="Consent Workflow Engine - JSON API")
    parser.add_argument("--port", type=int, default=5000, help="Port to run on (default: 5000)")
    parser.add_argument("--host", type=str, default="0.0.0.0", help="Host to bind to (default: 0.0.0.0)")
    parser.add_argument("--db", type=str, default=None, help="SQLite database path (default: CONSENTFLOW_DB_PATH)")
    parser.add_argument("--debug", action="store_true", help="Run Flask in debug mode")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)-8s | %(message)s",
        datefmt="%H:%M:%S",
    )

    from consentflow.ui import app as api

    db_path = args.db or api.DB_PATH

    print(f"""
Consent Workflow Engine API
  Base URL: http://localhost:{args.port}/api
  Database: {db_path}

  Requests must carry an X-User-Id header.
  Press Ctrl+C to stop the server
""")

    api.run_server(host=args.host, port=args.port, debug=args.debug, db_path=db_path)


if __name__ == "__main__":
    main()
