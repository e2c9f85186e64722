import logging

import uvicorn

from agent_sandbox.host.app import create_app
from agent_sandbox.host.config import HostSettings


def main() -> None:
    """Run the execution host with uvicorn."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    settings = HostSettings()
    uvicorn.run(create_app(settings), host=settings.host, port=settings.api_port)
