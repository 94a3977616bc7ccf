"""
mailstat --email me@example.com --cache var/me.json --days 14
"""
import argparse
import os
import signal
import sys
import threading
from dataclasses import replace
from functools import partial
from pathlib import Path
from typing import List, Optional

from loguru import logger

from .cache import CacheStore
from .client import MailProtocolClient
from .config import DEFAULT_DAYS, Security, ServerProfile, Settings, load_settings
from .credentials import CredentialSource
from .errors import MailstatError, SyncCancelled
from .models import DayRange
from .stats import Stats, top
from .sync import RetryPolicy, SyncEngine

LOG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)
EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="mailstat", description="Statistics over the recent messages of an IMAP mailbox."
    )
    parser.add_argument("-e", "--email", required=True, help="Mailbox address, also the login.")
    parser.add_argument("--cache", type=Path, help="JSON cache file, reused between runs.")
    parser.add_argument(
        "-d", "--days", type=int, default=DEFAULT_DAYS, help="Days to look back (default: 14)."
    )
    parser.add_argument(
        "-p", "--passwd-cmd", help="Command printing the password (default: pass show mailstat/<email>)."
    )
    parser.add_argument("--config", type=Path, help="YAML configuration file.")
    parser.add_argument("--profile", help="Server profile: gmail, bridge or one from the config.")
    parser.add_argument("--folder", help="Folder to inspect (default: INBOX).")
    parser.add_argument("--imap-host")
    parser.add_argument("--imap-port", type=int)
    security = parser.add_mutually_exclusive_group()
    security.add_argument(
        "--imap-starttls", dest="security", action="store_const", const=Security.STARTTLS
    )
    security.add_argument(
        "--imap-plaintext", dest="security", action="store_const", const=Security.PLAIN
    )
    security.add_argument("--imap-ssl", dest="security", action="store_const", const=Security.SSL)
    parser.add_argument("--smtp-host")
    parser.add_argument("--smtp-port", type=int)
    parser.add_argument(
        "--rebuild-cache",
        action="store_true",
        help="Ignore the existing cache content and fetch everything again.",
    )
    parser.add_argument("--top", type=int, default=10, help="Rows in the sender tables.")
    parser.add_argument("-v", "--verbose", action="store_true")
    args = parser.parse_args(argv)
    if args.days < 0:
        parser.error("--days must not be negative")
    return args


def setup_logging(verbose: bool) -> None:
    logger.remove()
    logger.add(
        sys.stderr,
        format=LOG_FORMAT,
        level="DEBUG" if verbose else os.getenv("MAILSTAT_LOG_LEVEL", "INFO"),
    )


def server_profile(args: argparse.Namespace, settings: Settings) -> ServerProfile:
    profile = settings.server(args.profile)
    overrides = {
        "imap_host": args.imap_host,
        "imap_port": args.imap_port,
        "security": args.security,
        "smtp_host": args.smtp_host,
        "smtp_port": args.smtp_port,
    }
    return replace(profile, **{k: v for k, v in overrides.items() if v is not None})


def print_report(stats: Stats, n: int, out=None) -> None:
    write = partial(print, file=out)
    write(f"Messages: {stats.total} ({stats.status.value})")
    write(f"Senders: {stats.distinct_senders}")
    write(f"Threads: {len(stats.by_thread)}")
    if stats.skipped:
        write(f"Skipped (clearly wrong date): {stats.skipped}")
    write()
    write("date,count")
    for day, count in stats.by_day.items():
        write(f"{day},{count}")
    write()
    write("domain,count")
    for domain, count in top(stats.by_domain, n):
        write(f"{domain},{count}")
    write()
    write("sender,count")
    for sender, count in top(stats.by_sender, n):
        write(f"{sender},{count}")
    if not stats.complete:
        write()
        write(f"WARNING: {stats.missing_count} message(s) could not be retrieved")


def run(args: argparse.Namespace, cancel: Optional[threading.Event] = None) -> int:
    settings = load_settings(args.config)
    profile = server_profile(args, settings)
    logger.debug(
        "Profile {}: IMAP {}:{} {}, SMTP {}:{}",
        profile.name,
        profile.imap_host,
        profile.imap_port,
        profile.security.value,
        profile.smtp_host,
        profile.smtp_port,
    )
    engine = SyncEngine(
        store=CacheStore(args.cache, args.email),
        session_factory=partial(MailProtocolClient, profile, settings.timeout),
        username=args.email,
        secret=CredentialSource(args.email, args.passwd_cmd),
        folder=args.folder or settings.folder,
        retry=RetryPolicy.from_settings(settings.retry),
        cancel=cancel,
        rebuild=args.rebuild_cache,
    )
    day_range = DayRange.last_days(args.days)
    result = engine.sync(day_range)
    logger.info(
        "{} messages in {} ({}{})",
        len(result.records),
        day_range,
        result.status.value,
        "" if result.used_network else ", from cache",
    )
    print_report(Stats.from_sync(result), args.top)
    return EXIT_OK


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.verbose)
    cancel = threading.Event()

    def interrupted(signum, frame):
        logger.warning("Interrupted, stopping after the current server call")
        cancel.set()

    previous = signal.signal(signal.SIGINT, interrupted)
    try:
        return run(args, cancel)
    except SyncCancelled:
        logger.error("Cancelled")
        return EXIT_CANCELLED
    except MailstatError as e:
        stage = e.stage or "setup"
        logger.error("sync failed during {}: {}: {}", stage, type(e).__name__, e)
        return EXIT_FAILED
    finally:
        signal.signal(signal.SIGINT, previous)


if __name__ == "__main__":
    sys.exit(main())
