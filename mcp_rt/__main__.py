"""Entry point for ``python -m mcp_rt``."""

from .server import main

if __name__ == "__main__":
    main()
