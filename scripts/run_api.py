from __future__ import annotations

import argparse

import uvicorn

from ragrelay.apps.api.main import create_app


def main() -> None:
    parser = argparse.ArgumentParser(description="Run the ragrelay API")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    # Env-driven settings; the retry sweep starts with the app unless RETRY_SCHEDULER_ENABLED=false.
    uvicorn.run(create_app(), host=args.host, port=args.port)


if __name__ == "__main__":
    main()
