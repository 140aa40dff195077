"""CYOA Engine - dev launcher. Starts the API server under uvicorn."""

import argparse
import logging
import os
from pathlib import Path

import uvicorn
from dotenv import load_dotenv

ROOT = Path(__file__).parent
load_dotenv(ROOT / ".env")

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "13013"))


def main():
    parser = argparse.ArgumentParser(description="CYOA Engine dev launcher")
    parser.add_argument("--data-dir", type=Path, default=None,
                        help="Saved-session directory (default: ./data)")
    parser.add_argument("--reload", action="store_true",
                        help="Restart the server when source files change")
    parser.add_argument("--log-level", default="info",
                        choices=["debug", "info", "warning", "error"])
    args = parser.parse_args()

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    # the app reads its data dir from the environment at import time
    if args.data_dir:
        os.environ["CYOA_DATA_DIR"] = str(args.data_dir.resolve())

    print(f"Starting CYOA Engine on http://localhost:{PORT} ...")
    uvicorn.run("cyoa_engine.app:app", host=HOST, port=PORT,
                reload=args.reload, log_level=args.log_level)


if __name__ == "__main__":
    main()
