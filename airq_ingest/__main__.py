from __future__ import annotations

import argparse
import logging
import os

import uvicorn

from .main import create_app


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
    )

    p = argparse.ArgumentParser(description="Air quality ingest API")
    p.add_argument("--host", default=os.getenv("API_HOST", "0.0.0.0"))
    p.add_argument("--port", type=int, default=int(os.getenv("API_PORT", "8000")))
    args = p.parse_args()

    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    main()
