from __future__ import annotations

import argparse

import uvicorn

from cantodam.apps.api.main import create_app
from cantodam.core.config import get_settings


def main() -> None:
    # Serve the webhook receiver and OAuth finish endpoint with env-driven settings.
    parser = argparse.ArgumentParser(description="Run the Canto connector HTTP endpoints")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    args = parser.parse_args()
    app = create_app(get_settings())
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
