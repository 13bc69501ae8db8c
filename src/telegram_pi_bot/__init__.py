"""
Telegram pi bot

A Telegram bot that bridges private chats and forum topics to long-lived `pi` agent processes.
"""

from __future__ import annotations

import argparse
import logging
import os
from importlib import metadata
from pathlib import Path

from dotenv import load_dotenv

from telegram_pi_bot.pi_app.agent_pool import AgentPool
from telegram_pi_bot.pi_app.agent_runtime import PiRuntimeFactory
from telegram_pi_bot.storage.session_paths import SessionPathManager
from telegram_pi_bot.telegram.bot import TelegramBridge, make_config, run_polling

DEFAULT_IDLE_TTL_SECONDS = "1200"
DEFAULT_STREAM_EDIT_INTERVAL = "0.6"
DEFAULT_STDIO_LIMIT = "8388608"


def get_version() -> str:
    try:
        return metadata.version("telegram-pi-bot")
    except metadata.PackageNotFoundError:
        return "unknown"


def get_parser() -> argparse.ArgumentParser:
    """Return the CLI argument parser."""
    parser = argparse.ArgumentParser(prog="pi-bot")
    parser.add_argument("-V", "--version", action="version", version=f"%(prog)s {get_version()}")
    parser.add_argument("--telegram-token", default=os.getenv("TELEGRAM_BOT_TOKEN", ""), help="Telegram bot token")
    parser.add_argument(
        "--allowed-user-id",
        action="append",
        default=[],
        type=int,
        help="Allowed Telegram user ID. Can be repeated. Defaults to TELEGRAM_ALLOWED_USER_IDS (comma-separated).",
    )
    parser.add_argument("--pi-bin", default=os.getenv("PI_BIN", "pi"), help="Agent executable started in RPC mode.")
    parser.add_argument(
        "--pi-cwd",
        default=os.getenv("PI_CWD", os.getcwd()),
        help="Working directory of the agent processes.",
    )
    parser.add_argument(
        "--data-dir",
        default=os.getenv("TELEGRAM_DATA_DIR", os.path.join(os.getcwd(), "data", "telegram-bot")),
        help="Directory holding per-conversation session files.",
    )
    parser.add_argument(
        "--idle-ttl",
        type=float,
        default=os.getenv("TELEGRAM_IDLE_TTL_SECONDS", DEFAULT_IDLE_TTL_SECONDS),
        help="Seconds of inactivity after which an agent process is stopped. Session files are kept.",
    )
    parser.add_argument(
        "--stream-edit-interval",
        type=float,
        default=os.getenv("TELEGRAM_STREAM_EDIT_INTERVAL", DEFAULT_STREAM_EDIT_INTERVAL),
        help="Minimum seconds between edits of a streamed reply.",
    )
    parser.add_argument(
        "--pi-stdio-limit",
        type=int,
        default=os.getenv("PI_STDIO_LIMIT", DEFAULT_STDIO_LIMIT),
        help="Maximum size in bytes of one RPC line read from the agent.",
    )
    parser.add_argument(
        "--log-level",
        default=os.getenv("LOG_LEVEL", "INFO"),
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        type=str.upper,
        help="Logging level.",
    )
    return parser


def parse_user_ids(raw: str) -> list[int]:
    """Parse a comma-separated list of positive Telegram user ids."""
    ids: list[int] = []
    for part in raw.split(","):
        value = part.strip()
        if not value:
            continue
        user_id = int(value)
        if user_id <= 0:
            raise ValueError(value)
        ids.append(user_id)
    return ids


def main(args: list[str] | None = None) -> int:
    """Run the main program."""
    load_dotenv(dotenv_path=os.getenv("TELEGRAM_ENV_FILE") or None, override=False)
    parser = get_parser()
    opts = parser.parse_args(args=args)

    if not opts.telegram_token:
        parser.error("--telegram-token (or TELEGRAM_BOT_TOKEN) is required")

    allowed_user_ids = list(opts.allowed_user_id)
    if not allowed_user_ids:
        try:
            allowed_user_ids = parse_user_ids(os.getenv("TELEGRAM_ALLOWED_USER_IDS", ""))
        except ValueError:
            parser.error("TELEGRAM_ALLOWED_USER_IDS must be comma-separated positive integers")
    if not allowed_user_ids:
        parser.error("--allowed-user-id (or TELEGRAM_ALLOWED_USER_IDS) is required")
    if not opts.pi_bin.strip():
        parser.error("--pi-bin is empty")
    if opts.idle_ttl < 0:
        parser.error("--idle-ttl must not be negative")
    if opts.stream_edit_interval < 0:
        parser.error("--stream-edit-interval must not be negative")
    if opts.pi_stdio_limit <= 0:
        parser.error("--pi-stdio-limit must be positive")

    logging.basicConfig(level=opts.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    logger = logging.getLogger(__name__)

    sessions_dir = Path(opts.data_dir).expanduser().resolve() / "sessions"
    sessions_dir.mkdir(parents=True, exist_ok=True)
    pi_cwd = Path(opts.pi_cwd).expanduser().resolve()

    pool = AgentPool(
        idle_ttl=opts.idle_ttl,
        runtime_factory=PiRuntimeFactory(pi_bin=opts.pi_bin.strip(), cwd=pi_cwd, stdio_limit=opts.pi_stdio_limit),
        session_paths=SessionPathManager(sessions_dir),
    )
    config = make_config(
        token=opts.telegram_token,
        allowed_user_ids=allowed_user_ids,
        stream_edit_interval=opts.stream_edit_interval,
    )
    bridge = TelegramBridge(config=config, pool=pool)
    logger.info(
        "Starting bot: pi_bin=%s pi_cwd=%s sessions_dir=%s allowed_users=%s",
        opts.pi_bin,
        pi_cwd,
        sessions_dir,
        len(config.allowed_user_ids),
    )
    return run_polling(config, bridge)


__all__: list[str] = ["get_parser", "main"]
