"""Command-line entrypoint for running the gateway."""

from __future__ import annotations

import uvicorn

from ..common.settings import GatewaySettings
from .app import create_app


def main() -> None:
    settings = GatewaySettings()
    app = create_app(settings)
    uvicorn.run(app, host=settings.bind_host, port=settings.bind_port, log_config=None)


if __name__ == "__main__":
    main()
