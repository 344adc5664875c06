# mailgate: Command-line entry point
#
#   mailgate worker                        run the fleet scheduler (every instance)
#   mailgate run-job digest|reconciliation run one job now (still lock-guarded)
#   mailgate status                        print today's quota status as JSON
#   mailgate api [--host H] [--port P]     serve the status API

import argparse
import asyncio
import json
import logging
import signal
import sys

from . import __version__


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


async def _run_worker() -> int:
    from .engine import get_engine
    from .store.redis_client import close_redis_client

    logger = logging.getLogger("mailgate.worker")
    engine = get_engine()

    try:
        healed = await engine.reconciliation.heal_on_boot()
        if healed is not None:
            logger.info("Boot reconciliation: %s", healed.to_dict())
    except Exception as exc:
        logger.error("Email usage reconciliation on boot failed: %s", exc)

    engine.register_jobs()
    engine.scheduler.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # Windows
            signal.signal(sig, lambda *_: stop.set())

    logger.info("Worker started. Press Ctrl+C to stop.")
    await stop.wait()

    logger.info("Shutting down worker...")
    engine.scheduler.stop()
    await close_redis_client()
    return 0


async def _run_job(name: str) -> int:
    from .engine import get_engine
    from .store.redis_client import close_redis_client

    engine = get_engine()
    engine.register_jobs()
    try:
        run = await engine.scheduler.run_guarded(name)
    finally:
        engine.scheduler.stop()
        await close_redis_client()
    print(json.dumps(run.to_dict(), indent=2, default=str))
    return 0 if run.error is None else 1


async def _print_status() -> int:
    from .engine import get_engine
    from .store.redis_client import close_redis_client

    engine = get_engine()
    try:
        current = await engine.quota.status()
    finally:
        await close_redis_client()
    print(json.dumps(current, indent=2))
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="mailgate",
        description="mailgate - email quota & digest coordination engine",
    )
    parser.add_argument("--version", action="version", version=f"mailgate v{__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("worker", help="Run the scheduled digest/reconciliation jobs")
    job = sub.add_parser("run-job", help="Run one scheduled job immediately")
    job.add_argument("name", choices=["digest", "reconciliation"])
    sub.add_parser("status", help="Print today's quota status")
    api = sub.add_parser("api", help="Serve the status API")
    api.add_argument("--host", default="127.0.0.1", help="Bind host (default: 127.0.0.1)")
    api.add_argument("--port", type=int, default=8000, help="Bind port (default: 8000)")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if args.command == "worker":
        return asyncio.run(_run_worker())
    if args.command == "run-job":
        return asyncio.run(_run_job(args.name))
    if args.command == "status":
        return asyncio.run(_print_status())

    import uvicorn

    uvicorn.run("mailgate.api.main:app", host=args.host, port=args.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
