"""Main entry point with CLI."""
import argparse
import asyncio
import logging
import mimetypes
import sys
from pathlib import Path

import aiofiles
import orjson

from receipt_pipeline.auth.session import UserSession
from receipt_pipeline.config import Config, config
from receipt_pipeline.fetch.functions import FunctionInvoker
from receipt_pipeline.fetch.gemini import GeminiClient
from receipt_pipeline.gateway.ingestion import IngestionGateway
from receipt_pipeline.gateway.subscriptions import ReceiptSubscriptions
from receipt_pipeline.jobs.enrichment import PriceComparer
from receipt_pipeline.jobs.extraction import ExtractionWorker
from receipt_pipeline.jobs.reaper import reap_stale_receipts
from receipt_pipeline.logging_conf import setup_logging
from receipt_pipeline.parse.comparisons import comparisons_to_row
from receipt_pipeline.parse.models import Receipt
from receipt_pipeline.store.client import create_realtime_client, create_supabase_client
from receipt_pipeline.store.images import ImageStorage
from receipt_pipeline.store.receipts import ReceiptStore

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description="Receipt extraction pipeline")
    parser.add_argument("--log-level", default=None, help=f"Log level (default: {config.LOG_LEVEL})")
    commands = parser.add_subparsers(dest="command", required=True)

    submit = commands.add_parser("submit", help="Upload a receipt image and start extraction")
    submit.add_argument("image", type=Path, help="Path to the receipt image")
    submit.add_argument("--user-id", default=None, help="Authenticated user id")
    submit.add_argument("--access-token", default=None, help="Access token to resolve the user from")
    submit.add_argument(
        "--watch",
        action="store_true",
        help="Follow the receipt through the change feed until it reaches a terminal status",
    )
    submit.add_argument(
        "--wait-seconds",
        type=float,
        default=180,
        help="Give up watching after N seconds (default: 180)",
    )

    process = commands.add_parser("process", help="Run extraction for a receipt in this process")
    process.add_argument("receipt_id")
    process.add_argument(
        "--no-enrich",
        action="store_true",
        help="Do not dispatch price comparison after a successful extraction",
    )

    compare = commands.add_parser("compare", help="Find cheaper alternatives for a completed receipt")
    compare.add_argument("receipt_id")
    compare.add_argument(
        "--api-key",
        default=None,
        help="Run per-item with this key (default: one batched request with the stored key)",
    )

    reap = commands.add_parser("reap", help="Move receipts stuck in processing to error")
    reap.add_argument(
        "--older-than-minutes",
        type=int,
        default=None,
        help=f"Staleness window (default: {config.STALE_AFTER_MINUTES})",
    )

    serve = commands.add_parser("serve", help="Serve the pipeline functions over HTTP")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)

    return parser.parse_args(argv)


def _print_json(data) -> None:
    print(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


async def run_submit(args: argparse.Namespace) -> int:
    async with aiofiles.open(args.image, "rb") as f:
        image = await f.read()
    content_type = mimetypes.guess_type(str(args.image))[0] or "image/jpeg"

    client = create_supabase_client(service_role=False)
    session = UserSession(user_id=args.user_id, access_token=args.access_token, client=client)
    invoker = FunctionInvoker()
    subscriptions = None
    if args.watch:
        subscriptions = ReceiptSubscriptions(await create_realtime_client())

    gateway = IngestionGateway(
        session=session,
        store=ReceiptStore(client=client),
        images=ImageStorage(client=client),
        invoker=invoker,
        subscriptions=subscriptions,
    )

    finished = asyncio.Event()
    outcome: dict = {}

    def on_update(receipt: Receipt) -> None:
        logger.info(f"Receipt {receipt.id} is {receipt.status.value}")
        if receipt.status.is_terminal:
            outcome["receipt"] = receipt
            finished.set()

    try:
        receipt_id = await gateway.submit(
            image,
            on_update=on_update if args.watch else None,
            content_type=content_type,
        )
        print(receipt_id)
        if not args.watch:
            return 0

        # The change feed only reports updates; the job may already be done
        current = await gateway.get_receipt(receipt_id)
        if current is not None and current.status.is_terminal:
            outcome["receipt"] = current
            finished.set()

        try:
            await asyncio.wait_for(finished.wait(), timeout=args.wait_seconds)
        except asyncio.TimeoutError:
            logger.warning(f"Receipt {receipt_id} still processing after {args.wait_seconds}s")
            return 2

        receipt = outcome["receipt"]
        _print_json(receipt.model_dump(mode="json"))
        return 0 if receipt.status.value == "completed" else 1
    finally:
        await gateway.unsubscribe_all()
        await invoker.aclose()


async def run_process(args: argparse.Namespace) -> int:
    store = ReceiptStore()
    invoker = None if args.no_enrich else FunctionInvoker()
    async with GeminiClient() as gemini:
        worker = ExtractionWorker(store, ImageStorage(client=store.client), gemini, invoker)
        try:
            result = await worker.process(args.receipt_id)
        finally:
            if invoker is not None:
                await invoker.aclose()
    _print_json(result.model_dump())
    return 0


async def run_compare(args: argparse.Namespace) -> int:
    store = ReceiptStore()
    async with GeminiClient() as gemini:
        comparer = PriceComparer(store, gemini)
        if args.api_key:
            comparisons = await comparer.compare_items(args.receipt_id, args.api_key)
        else:
            comparisons = await comparer.compare_receipt(args.receipt_id)
    _print_json(comparisons_to_row(comparisons))
    return 0


async def run_reap(args: argparse.Namespace) -> int:
    reaped = await reap_stale_receipts(ReceiptStore(), args.older_than_minutes)
    _print_json({"reaped": reaped, "count": len(reaped)})
    return 0


def main(argv=None) -> None:
    """Main entry point."""
    args = parse_args(argv)
    setup_logging(args.log_level)

    if args.command == "serve":
        import uvicorn
        from receipt_pipeline.api.main import app

        try:
            Config.validate()
        except ValueError as e:
            logger.error(f"Configuration error: {e}")
            sys.exit(1)
        uvicorn.run(app, host=args.host, port=args.port)
        return

    try:
        Config.validate(require_functions=args.command in ("submit", "process"))
    except ValueError as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    runners = {
        "submit": run_submit,
        "process": run_process,
        "compare": run_compare,
        "reap": run_reap,
    }
    try:
        sys.exit(asyncio.run(runners[args.command](args)))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(1)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
