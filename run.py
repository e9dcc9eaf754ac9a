#!/usr/bin/env python3
"""
AVR donations launcher.

  Local dev:       ./run.py --env development
  Live gateway:    HELCIM_LIVE_TESTING=true ./run.py --env development
  Gunicorn export: gunicorn "run:app"  (exports `app` when imported)
"""

from __future__ import annotations

import argparse
import os

from avr import create_app
from avr.config import CONFIG_BY_NAME

_ENVS = ("development", "production", "testing")


def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Run the AVR donations app.")
    p.add_argument("--env", choices=_ENVS, default=os.getenv("ENV", "development"))
    p.add_argument("--host", default=os.getenv("HOST", "127.0.0.1"))
    p.add_argument("--port", type=int, default=int(os.getenv("PORT", "5000")))
    p.add_argument("--no-reload", action="store_true", help="disable the reloader")
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = _parse_args(argv)
    application = create_app(CONFIG_BY_NAME[args.env])
    debug = args.env == "development"
    application.run(host=args.host, port=args.port, debug=debug, use_reloader=debug and not args.no_reload)


if __name__ == "__main__":
    main()
else:
    app = create_app()
