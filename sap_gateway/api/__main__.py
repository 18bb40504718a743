"""
Serve the gateway with uvicorn.

Usage: python -m sap_gateway.api [--host HOST] [--port PORT] [--reload] [--log-level LEVEL]

Defaults come from ODATA_HOST, ODATA_PORT, ODATA_RELOAD and ODATA_LOG_LEVEL.
"""

import argparse
import logging
import os

import uvicorn

from sap_gateway.api import load_env

LOG_LEVELS = ("critical", "error", "warning", "info", "debug")


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="python -m sap_gateway.api", description="SAP Gateway OData REST API")
    parser.add_argument("--host", default=os.environ.get("ODATA_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.environ.get("ODATA_PORT", "5050")))
    parser.add_argument(
        "--reload",
        action="store_true",
        default=os.environ.get("ODATA_RELOAD", "false").lower() == "true",
    )
    parser.add_argument(
        "--log-level",
        type=str.lower,
        choices=LOG_LEVELS,
        default=os.environ.get("ODATA_LOG_LEVEL", "info").lower(),
    )
    return parser.parse_args(argv)


def main(argv=None) -> None:
    """Run the API gateway server."""
    load_env()
    args = parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("sap_gateway.api").info("Starting SAP Gateway OData API on %s:%s", args.host, args.port)

    uvicorn.run(
        "sap_gateway.api:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
