from __future__ import annotations

import os
import sys

import uvicorn

from gateway.app import create_app
from gateway.config import load_config


def main(argv: list[str] | None = None) -> None:
    args = sys.argv[1:] if argv is None else argv
    config = load_config(args[0] if args else None, os.environ)
    # Single worker process; requests run concurrently on its event loop.
    uvicorn.run(create_app(config), host="0.0.0.0", port=config.port)


if __name__ == "__main__":
    main()
