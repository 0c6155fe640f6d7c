from __future__ import annotations

import argparse
import asyncio
import logging

import uvicorn

from .config import ConfigError, load_config
from .fsinit import set_umask_from_env
from .orchestrator import build_context
from .services.credentials import CredentialRotator
from .storage import init_db, list_jobs
from .telegram import TelegramClient
from .utils import configure_logging, log_event, mask_secret


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    from .app import create_app

    try:
        config = load_config(args.config)
        context = build_context(config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    set_umask_from_env()
    app = create_app(context)
    host = args.host or config.app.host
    port = args.port or config.app.port
    log_event(logger, logging.INFO, "serve_starting", host=host, port=port)
    uvicorn.run(app, host=host, port=port, log_config=None)
    return 0


def _cmd_set_webhook(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    if not config.telegram.bot_token:
        log_event(logger, logging.ERROR, "config_error", error="telegram.bot_token is not set")
        return 1
    webhook_url = args.base_url.rstrip("/") + "/webhook"

    async def _register() -> dict:
        client = TelegramClient(config.telegram)
        try:
            return await client.set_webhook(webhook_url, config.telegram.webhook_secret or None)
        finally:
            await client.aclose()

    result = asyncio.run(_register())
    ok = bool(result.get("ok"))
    log_event(
        logger,
        logging.INFO if ok else logging.ERROR,
        "webhook_registered" if ok else "webhook_register_failed",
        url=webhook_url,
        description=result.get("description"),
    )
    return 0 if ok else 1


def _cmd_jobs(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    for job in list_jobs(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            message_id=job.message_id,
            url=job.url,
            status=job.status,
            created_at=job.created_at,
            updated_at=job.updated_at,
        )
    return 0


def _cmd_credentials(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        config = load_config(args.config)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1

    conn = init_db(config.paths.state_db)
    rotator = CredentialRotator(conn, logger=logger)
    rotator.register(config.analysis.api_keys)
    for credential in rotator.list_credentials():
        log_event(
            logger,
            logging.INFO,
            "credential",
            credential_id=credential.id,
            key=mask_secret(credential.key),
            usage_count=credential.usage_count,
            last_used=credential.last_used,
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vidlens", description="vidlens webhook service")
    parser.add_argument(
        "--config",
        dest="config",
        default=None,
        help="Path to a YAML config file (defaults to VL_CONFIG)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    serve_parser = subparsers.add_parser("serve", help="Run the webhook HTTP server")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Bind port")
    serve_parser.set_defaults(func=_cmd_serve)

    webhook_parser = subparsers.add_parser("set-webhook", help="Register the webhook with Telegram")
    webhook_parser.add_argument("base_url", help="Public base URL, /webhook is appended")
    webhook_parser.set_defaults(func=_cmd_set_webhook)

    jobs_parser = subparsers.add_parser("jobs", help="List recent jobs")
    jobs_parser.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_parser.set_defaults(func=_cmd_jobs)

    credentials_parser = subparsers.add_parser("credentials", help="List analysis credentials and usage")
    credentials_parser.set_defaults(func=_cmd_credentials)

    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    logger = configure_logging("vidlens")
    return args.func(args, logger)


if __name__ == "__main__":
    raise SystemExit(main())
