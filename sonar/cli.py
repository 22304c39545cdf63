"""
    Command line entry point for operating a Sonar database.

    Commands:
        migrate / downgrade   Apply or roll back Alembic revisions
        check-db              Verify the database is reachable
        create-user           Sign up a user
        post                  Publish a ping as a user
        timeline              Show a user's pings, newest first
        recent                Show the newest pings from everyone
        issue-token           Check a user's password and issue a fresh auth token
"""

import argparse
import asyncio
import getpass

from alembic import command
from alembic.config import Config
from pydantic import ValidationError

from . import services
from .cache import cache_manager
from .config import settings
from .db import check_db_connection, dispose_engine
from .exceptions import SonarError
from .logger import logger
from .schemas import PingCreate, PingOut, UserCreate


def _alembic_config(path: str) -> Config:
    cfg = Config(path)
    cfg.set_main_option("sqlalchemy.url", settings.DB_URL)
    return cfg


def _format_ping(ping: PingOut, username: str | None = None) -> str:
    author = username or f"user:{ping.user_id}"
    stamp = ping.timestamp.strftime("%Y-%m-%d %H:%M:%S")
    return f"[{ping.id}] {stamp} @{author}: {ping.content}  (likes={ping.likes} echoes={ping.echoes})"


def _read_password(args) -> str:
    if args.password is not None:
        return args.password
    return getpass.getpass("Password: ")

# ==================== Async Commands ====================


async def _check_db(args) -> int:
    healthy = await check_db_connection()
    print(f"database_ok={healthy}")
    return 0 if healthy else 1


async def _create_user(args) -> int:
    data = UserCreate(
        username=args.username,
        password=_read_password(args),
        real_name=args.real_name,
        blurb=args.blurb,
    )
    user = await services.register_user(data)
    print(f"user_created id={user.id} username={user.username}")
    return 0


async def _post(args) -> int:
    user = await services.get_user_by_username(args.username)
    ping = await services.post_ping(user.id, PingCreate(content=args.content))
    print(_format_ping(ping, user.username))
    return 0


async def _timeline(args) -> int:
    user = await services.get_user_by_username(args.username)
    page = await services.user_timeline(user.id, page=args.page, limit=args.limit)
    for ping in page.items:
        print(_format_ping(ping, user.username))
    print(f"page={page.page}/{page.pages} total={page.total}")
    return 0


async def _recent(args) -> int:
    for ping in await services.recent_pings(limit=args.limit, before_id=args.before):
        print(_format_ping(ping))
    return 0


async def _issue_token(args) -> int:
    user = await services.get_validated_user(args.username, _read_password(args))
    token = await services.issue_token(user.id)
    print(f"token user={user.username} key={token.key}")
    return 0


async def _run(handler, args) -> int:
    if settings.CACHE_ENABLED:
        await cache_manager.connect()
    try:
        return await handler(args)
    finally:
        if settings.CACHE_ENABLED:
            await cache_manager.disconnect()
        await dispose_engine()

# ==================== Argument Parsing ====================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="sonar", description="Manage a Sonar database.")
    parser.add_argument("--alembic-ini", default="alembic.ini", help="Path to alembic.ini. Default: alembic.ini")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("migrate", help="Upgrade the schema.")
    p.add_argument("--revision", default="head", help="Target revision. Default: head")

    p = sub.add_parser("downgrade", help="Downgrade the schema.")
    p.add_argument("revision", help="Target revision, e.g. -1 or base")

    sub.add_parser("check-db", help="Check database connectivity.")

    p = sub.add_parser("create-user", help="Create a user.")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted for when omitted)")
    p.add_argument("--real-name", default="")
    p.add_argument("--blurb", default="")

    p = sub.add_parser("post", help="Post a ping as a user.")
    p.add_argument("username")
    p.add_argument("content")

    p = sub.add_parser("timeline", help="Show a user's pings.")
    p.add_argument("username")
    p.add_argument("--page", type=int, default=settings.DEFAULT_PAGE)
    p.add_argument("--limit", type=int, default=settings.DEFAULT_LIMIT)

    p = sub.add_parser("recent", help="Show the newest pings.")
    p.add_argument("--limit", type=int, default=settings.DEFAULT_LIMIT)
    p.add_argument("--before", type=int, default=None, help="Only pings with an id below this")

    p = sub.add_parser("issue-token", help="Issue an auth token for a user.")
    p.add_argument("username")
    p.add_argument("--password", help="Password (prompted for when omitted)")

    return parser


ASYNC_COMMANDS = {
    "check-db": _check_db,
    "create-user": _create_user,
    "post": _post,
    "timeline": _timeline,
    "recent": _recent,
    "issue-token": _issue_token,
}


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    try:
        if args.command == "migrate":
            command.upgrade(_alembic_config(args.alembic_ini), args.revision)
            print(f"migrated_to={args.revision}")
            return
        if args.command == "downgrade":
            command.downgrade(_alembic_config(args.alembic_ini), args.revision)
            print(f"downgraded_to={args.revision}")
            return
        code = asyncio.run(_run(ASYNC_COMMANDS[args.command], args))
    except SonarError as e:
        logger.error(f"{args.command} failed: [{e.error_code}] {e.message}", extra={"command": args.command})
        raise SystemExit(1)
    except ValidationError as e:
        logger.error(f"{args.command} failed: invalid input: {e.errors(include_url=False)}", extra={"command": args.command})
        raise SystemExit(2)
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True, extra={"command": args.command})
        raise SystemExit(1)
    if code:
        raise SystemExit(code)


if __name__ == "__main__":
    main()
