"""
Backend Launcher
================

Starts the Agent Mafia API server with uvicorn, using the host and port
from the environment or the saved config.

Usage:
    python run_backend.py

Set AGENTMAFIA_BACKEND_RELOAD=0 to turn off auto-reload.
"""

import os

import uvicorn

from agentmafia.config import AgentMafiaConfig
from agentmafia.output import print_info, print_muted, setup_rich_logging


def main() -> None:
    setup_rich_logging()
    config = AgentMafiaConfig.load()
    reload = os.environ.get("AGENTMAFIA_BACKEND_RELOAD", "1") == "1"

    print_info(f"Starting Agent Mafia backend on http://{config.host}:{config.port}")
    if reload:
        print_muted("Auto-reload enabled (AGENTMAFIA_BACKEND_RELOAD=0 to disable)")

    try:
        uvicorn.run(
            "agentmafia.web.main:app",
            host=config.host,
            port=config.port,
            reload=reload,
            log_config=None,
        )
    except KeyboardInterrupt:
        print_muted("Stopping server...")


if __name__ == "__main__":
    main()
