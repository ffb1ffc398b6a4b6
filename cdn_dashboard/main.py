# main.py
import argparse
import asyncio
import logging
import sys
import traceback

from aiohttp import web

from .api_server import create_app
from .config import Settings, setup_logging
from .context import AppContext
from .formatters import format_snapshot_summary

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Multi-provider CDN analytics dashboard backend')
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument('--once', action='store_true',
                      help='Run a single refresh cycle, print a summary and exit')
    mode.add_argument('--validate', action='store_true',
                      help='Validate the credentials of every configured account and exit')
    parser.add_argument('--host', help='Override HOST')
    parser.add_argument('--port', type=int, help='Override PORT')
    return parser.parse_args(argv)


async def run_once(settings: Settings) -> int:
    context = AppContext(settings)
    await context.start()
    try:
        result = await context.scheduler.trigger('cli')
        snapshot = context.snapshot_store.load()
        print("\nRefresh Summary:")
        print("================")
        if snapshot is not None:
            print(format_snapshot_summary(snapshot))
        if result is None or not result.success:
            reason = result.reason if result else 'not started'
            logger.error(f"Refresh failed: {reason}")
            return 1
        print(f"\n{result.zones} zone(s), {result.errors} with errors")
        return 0
    finally:
        await context.close()


async def run_validation(settings: Settings) -> int:
    context = AppContext(settings)
    await context.start()
    failures = 0
    try:
        if not context.accounts:
            logger.warning("No accounts configured")
        for account in context.accounts:
            adapter = context.adapters.get(account.provider)
            if adapter is None:
                logger.error(f"No adapter for {account.name} [{account.provider}]")
                failures += 1
                continue
            result = await adapter.validate_account(account)
            status = 'valid' if result.get('valid') else f"invalid: {result.get('error')}"
            print(f"{account.name} [{account.provider}]: {status}")
            if not result.get('valid'):
                failures += 1
    finally:
        await context.close()
    return 1 if failures else 0


def serve(settings: Settings) -> None:
    app = create_app(AppContext(settings))
    logger.info(f"Serving on http://{settings.host}:{settings.port}")
    web.run_app(app, host=settings.host, port=settings.port, print=None)


def main(argv=None):
    """Main execution function."""
    args = parse_args(argv)
    settings = Settings()
    if args.host:
        settings.host = args.host
    if args.port:
        settings.port = args.port
    setup_logging(settings.log_level, settings.log_dir)
    logger.info(f"Starting with {settings!r}")

    try:
        if args.once:
            sys.exit(asyncio.run(run_once(settings)))
        if args.validate:
            sys.exit(asyncio.run(run_validation(settings)))
        serve(settings)
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error in main execution: {str(e)}")
        logger.error(traceback.format_exc())
        sys.exit(1)


if __name__ == "__main__":
    main()
