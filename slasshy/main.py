import argparse
import logging

import uvicorn

from slasshy.api.server import create_app
from slasshy.config import API_HOST, API_PORT
from slasshy.utils.logger import setup_logging

logger = logging.getLogger("Slasshy")


def main(argv=None):
    parser = argparse.ArgumentParser(description="Slasshy media library service")
    parser.add_argument("--host", default=API_HOST)
    parser.add_argument("--port", type=int, default=API_PORT)
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    args = parser.parse_args(argv)

    setup_logging(level=logging.DEBUG if args.debug else logging.INFO)
    logger.info(f"Starting Slasshy on http://{args.host}:{args.port}")

    # Keep our logging setup instead of uvicorn's
    uvicorn.run(create_app(), host=args.host, port=args.port, log_config=None)


if __name__ == "__main__":
    try:
        main()
    except KeyboardInterrupt:
        pass
