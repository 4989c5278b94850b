"""
Payment Core — Uvicorn Launcher
Run this file to start the development server.

Usage:
    python run.py
    python run.py --port 8000
    python run.py --reload
"""
import argparse
from typing import List, Optional

import uvicorn

from paycore.config import Settings, get_settings

WEBHOOK_CREDENTIALS = {
    "stripe": "STRIPE_WEBHOOK_SECRET",
    "paypal": "PAYPAL_WEBHOOK_ID",
    "stp": "STP_WEBHOOK_SECRET",
}


def build_parser(settings: Settings) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=f"{settings.APP_NAME} server")
    parser.add_argument("--host", default=settings.HOST, help=f"Bind host (default: {settings.HOST})")
    parser.add_argument("--port", type=int, default=settings.PORT, help=f"Bind port (default: {settings.PORT})")
    parser.add_argument("--reload", action="store_true", help="Enable hot reload for development")
    parser.add_argument("--workers", type=int, default=1, help="Number of workers, ignored with --reload")
    parser.add_argument("--log-level", default=settings.LOG_LEVEL.lower(),
                        choices=["critical", "error", "warning", "info", "debug"])
    return parser


def unsigned_providers(settings: Settings) -> List[str]:
    """Providers whose webhooks will be rejected because no verification credential is set."""
    return [name for name, key in WEBHOOK_CREDENTIALS.items() if not getattr(settings, key)]


def main(argv: Optional[List[str]] = None):
    settings = get_settings()
    args = build_parser(settings).parse_args(argv)
    missing = unsigned_providers(settings)

    print(f"""
    ========================================================
      {settings.APP_NAME} v{settings.APP_VERSION}
      API:      http://{args.host}:{args.port}/api/payments
      Docs:     http://localhost:{args.port}/docs
      Webhooks: http://localhost:{args.port}/api/webhooks/{{{'|'.join(WEBHOOK_CREDENTIALS)}}}
      Unsigned: {', '.join(missing) or 'none'}
    ========================================================
    """)

    uvicorn.run(
        "paycore.main:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        workers=1 if args.reload else args.workers,
        log_level=args.log_level,
    )


if __name__ == "__main__":
    main()
