"""
Run the gate:

    python -m pathgate

Configuration comes from environment variables; a .env file in
the working directory is loaded first.
"""
from __future__ import annotations

import logging
import sys

import uvicorn
from dotenv import load_dotenv

from .app import create_app
from .config import load_settings
from .errors import ConfigurationError

logger = logging.getLogger("pathgate")


def main() -> int:
    load_dotenv()
    try:
        settings = load_settings()
    except ConfigurationError as exc:
        logging.basicConfig(level=logging.INFO)
        logger.error("%s", exc)
        return 1

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    app = create_app(settings)
    # client address handling is ours (CF-Connecting-IP, X-Forwarded-For, ...),
    # so uvicorn must hand us the raw peer
    uvicorn.run(
        app,
        host=settings.listen_host,
        port=settings.listen_port,
        proxy_headers=False,
        log_level=settings.log_level.lower(),
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
