"""
chainsign launcher.

Usage:
    python run.py
    python run.py --port 8000
    python run.py --reload
"""
import argparse

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="chainsign API server")
    parser.add_argument("--host", default="0.0.0.0", help="Bind host (default: 0.0.0.0)")
    parser.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")
    args = parser.parse_args()

    uvicorn.run("chainsign.main:app", host=args.host, port=args.port, reload=args.reload, log_level="info")


if __name__ == "__main__":
    main()
