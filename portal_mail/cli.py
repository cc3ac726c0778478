"""
Command line entry point

    portal-mail sync ACCOUNT_ID [--full] [--max-results N]
    portal-mail sync-all [--full]
    portal-mail retry
    portal-mail scheduled
    portal-mail init-db
    portal-mail generate-key
    portal-mail rotate-keys

Run from cron or a scheduler when the API process does not run the
background jobs itself.
"""
import argparse
import asyncio
import logging
import sys
import uuid

from dotenv import load_dotenv

from portal_mail.core.config import get_settings, setup_logging

logger = logging.getLogger(__name__)


def _init():
    from portal_mail.core.database import init_db
    setup_logging()
    init_db()


def _jobs():
    from portal_mail.core.database import get_session_factory
    from portal_mail.core.jobs import MailJobs
    return MailJobs(get_session_factory(), get_settings())


async def _sync(args) -> int:
    from portal_mail.core.errors import AccountNotFoundError, SyncInProgressError
    from portal_mail.core.sync import SyncOptions

    try:
        account_id = uuid.UUID(args.account_id)
    except ValueError:
        print(f"Invalid account id: {args.account_id}")
        return 2

    options = SyncOptions(force_full_sync=args.full, max_results=args.max_results)
    try:
        result = await _jobs().run_account_sync(account_id, options, require_lease=True)
    except AccountNotFoundError:
        print(f"Account {account_id} not found")
        return 1
    except SyncInProgressError as e:
        print(f"Skipped: {e}")
        return 0

    if not result.success:
        print(f"Sync failed: {result.error}")
        return 1
    print(
        f"{result.sync_type} sync: {result.threads_processed} threads, "
        f"{result.messages_processed} messages in {result.duration_ms}ms"
    )
    return 0


async def _sync_all(args) -> int:
    from portal_mail.core.sync import SyncOptions

    results = await _jobs().sync_all_accounts(SyncOptions(force_full_sync=args.full))
    failed = [r for r in results if not r.success and not r.skipped]
    for r in results:
        state = "ok" if r.success else ("skipped" if r.skipped else f"failed: {r.error}")
        print(f"{r.account_id}: {state}")
    return 1 if failed else 0


async def _retry(args) -> int:
    result = await _jobs().run_retry_tick()
    print(
        f"Retry scan: {result.scanned} scanned, {result.succeeded} succeeded, "
        f"{result.failed} failed, {result.skipped} skipped"
    )
    return 0


async def _scheduled(args) -> int:
    result = await _jobs().run_scheduled_tick()
    print(
        f"Scheduled sends: {result.scanned} due, {result.succeeded} sent, "
        f"{result.failed} failed, {result.skipped} skipped"
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="portal-mail",
        description="Mailbox sync and outbound delivery jobs"
    )
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Sync one account")
    sync.add_argument("account_id", help="Account UUID")
    sync.add_argument("--full", action="store_true",
                      help="Force a full sync instead of an incremental one")
    sync.add_argument("--max-results", type=int, default=None,
                      help="Messages fetched by a full sync")

    sync_all = commands.add_parser("sync-all", help="Sync every sync-enabled account")
    sync_all.add_argument("--full", action="store_true",
                          help="Force full syncs")

    commands.add_parser("retry", help="Retry failed sends whose backoff elapsed")
    commands.add_parser("scheduled", help="Deliver scheduled sends that are due")
    commands.add_parser("init-db", help="Create tables (prefer alembic upgrade head)")
    commands.add_parser("generate-key", help="Print a new DB_ENCRYPTION_KEY")
    commands.add_parser("rotate-keys", help="Re-encrypt stored tokens with the primary key")
    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)

    if args.command == "generate-key":
        from portal_mail.core.database.encryption import generate_encryption_key
        print(generate_encryption_key())
        return 0

    _init()

    if args.command == "init-db":
        from portal_mail.core.database import create_tables
        create_tables()
        print("Tables created")
        return 0

    if args.command == "rotate-keys":
        from portal_mail.core.accounts import EncryptedCredentialStore
        from portal_mail.core.database import get_session_factory
        db = get_session_factory()()
        try:
            rotated = EncryptedCredentialStore(db).rotate_keys()
        finally:
            db.close()
        print(f"Rotated {rotated} tokens")
        return 0

    handlers = {
        "sync": _sync,
        "sync-all": _sync_all,
        "retry": _retry,
        "scheduled": _scheduled,
    }
    try:
        return asyncio.run(handlers[args.command](args))
    except KeyboardInterrupt:
        print("\nInterrupted by user")
        return 1


if __name__ == "__main__":
    sys.exit(main())
