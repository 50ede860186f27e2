"""
Entry point for running agentmafia as a module.

Usage:
    python -m agentmafia run "Add a /health endpoint"
    python -m agentmafia agents
    python -m agentmafia serve

This is equivalent to:
    python -m agentmafia.cli.main [args]
"""

import sys

from agentmafia.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
