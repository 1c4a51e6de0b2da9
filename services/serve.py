"""Run one of the services under uvicorn.

Usage::

    python -m services.serve inventory
    python -m services.serve payments --port 9102

Defaults come from ``PORT``, ``UVICORN_WORKERS`` and ``LOG_LEVEL``.
"""

import argparse
import os

import uvicorn

APPS = {
    "inventory": ("services.inventory.main:app", 9001),
    "payments": ("services.payments.main:app", 9002),
}


def uvicorn_options(service: str, port=None, workers=None) -> dict:
    app, default_port = APPS[service]
    return {
        "app": app,
        "host": os.getenv("HOST", "0.0.0.0"),
        "port": port or int(os.getenv("PORT", str(default_port))),
        "workers": workers or int(os.getenv("UVICORN_WORKERS", str(max(2, os.cpu_count() or 1)))),
        # uvloop ships with uvicorn[standard]
        "loop": "uvloop",
        "http": "h11",
        "log_level": os.getenv("LOG_LEVEL", "info").lower(),
    }


def main(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("service", choices=sorted(APPS))
    parser.add_argument("--port", type=int)
    parser.add_argument("--workers", type=int)
    args = parser.parse_args(argv)
    uvicorn.run(**uvicorn_options(args.service, args.port, args.workers))


if __name__ == "__main__":
    main()
