import logging

from vidlens.cli import build_parser
from vidlens.storage import create_job, init_db


def test_parser_commands():
    parser = build_parser()
    args = parser.parse_args(["set-webhook", "https://bot.example.com/"])
    assert args.base_url == "https://bot.example.com/"
    args = parser.parse_args(["jobs", "--limit", "3"])
    assert args.limit == 3
    args = parser.parse_args(["serve", "--port", "9000"])
    assert args.port == 9000


def test_jobs_command_lists_jobs(config, caplog):
    conn = init_db(config.paths.state_db)
    create_job(conn, 42, "https://example.com/v/1", "42.mp4")

    args = build_parser().parse_args(["jobs"])
    logger = logging.getLogger("vidlens.test_cli")
    with caplog.at_level(logging.INFO, logger="vidlens.test_cli"):
        assert args.func(args, logger) == 0
    assert "event=job" in caplog.text
    assert "message_id=42" in caplog.text


def test_credentials_command_masks_keys(config, caplog):
    args = build_parser().parse_args(["credentials"])
    logger = logging.getLogger("vidlens.test_cli")
    with caplog.at_level(logging.INFO, logger="vidlens.test_cli"):
        assert args.func(args, logger) == 0
    assert "key=****aaaa" in caplog.text
    assert "key-aaaa" not in caplog.text


def test_set_webhook_requires_token(config, monkeypatch, caplog):
    monkeypatch.delenv("TELEGRAM_BOT_TOKEN")
    args = build_parser().parse_args(["set-webhook", "https://bot.example.com"])
    logger = logging.getLogger("vidlens.test_cli")
    with caplog.at_level(logging.ERROR, logger="vidlens.test_cli"):
        assert args.func(args, logger) == 1


def test_serve_refuses_without_target_chat(config, monkeypatch, caplog):
    monkeypatch.delenv("TARGET_CHAT_ID")
    args = build_parser().parse_args(["serve"])
    logger = logging.getLogger("vidlens.test_cli")
    with caplog.at_level(logging.ERROR, logger="vidlens.test_cli"):
        assert args.func(args, logger) == 1
    assert "event=config_error" in caplog.text
    assert "target_chat_id" in caplog.text
