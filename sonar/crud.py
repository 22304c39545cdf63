"""Database CRUD operations for users, pings, and auth tokens."""

from sqlalchemy import select, func, or_, delete, update
from sqlalchemy.exc import IntegrityError

from . import db
from .models import User, Ping, AuthToken
from .logger import logger
from .config import settings
from .utils import escape_like

PING_COUNTERS = ("likes", "echoes")


# ==================== Helper Functions ====================

def _create_user_snapshot(user: User) -> User:
    """Create a detached snapshot of a user before deletion."""
    snapshot = User()
    snapshot.id = user.id
    snapshot.username = user.username
    snapshot.password = user.password
    snapshot.real_name = user.real_name
    snapshot.blurb = user.blurb
    return snapshot


def _create_ping_snapshot(ping: Ping) -> Ping:
    """Create a detached snapshot of a ping before deletion."""
    snapshot = Ping()
    snapshot.id = ping.id
    snapshot.user_id = ping.user_id
    snapshot.timestamp = ping.timestamp
    snapshot.content = ping.content
    snapshot.likes = ping.likes
    snapshot.echoes = ping.echoes
    return snapshot


def _apply_sort(stmt, model, sort: str, order: str):
    sort_column = getattr(model, sort, model.id)
    if order == "desc":
        return stmt.order_by(sort_column.desc())
    return stmt.order_by(sort_column.asc())


# ==================== Single User Operations ====================


async def insert_user(username: str, hashed_password: str, real_name: str = "", blurb: str = "") -> User:
    """Insert a new user with hashed password. Raises ValueError on duplicate username."""
    async with db.async_session() as session:
        try:
            async with session.begin():
                user = User(
                    username=username,
                    password=hashed_password,
                    real_name=real_name,
                    blurb=blurb,
                )
                session.add(user)
            await session.refresh(user)  # Pick up server defaults
            return user
        except IntegrityError as e:
            logger.debug(f"Duplicate username rejected: {username}")
            raise ValueError("duplicate username") from e


async def select_user(user_id: int) -> User | None:
    """Retrieve a user by ID."""
    async with db.async_session() as session:
        return await session.get(User, user_id)


async def select_user_by_username(username: str) -> User | None:
    """Retrieve a user by username (exact, case-sensitive match)."""
    async with db.async_session() as session:
        result = await session.execute(select(User).where(User.username == username))
        return result.scalars().first()


async def username_exists(username: str) -> bool:
    """Check whether a username is already taken."""
    async with db.async_session() as session:
        result = await session.execute(
            select(func.count()).select_from(User).where(User.username == username)
        )
        return (result.scalar() or 0) > 0


async def update_user_profile(
    user_id: int,
    real_name: str | None = None,
    blurb: str | None = None,
) -> User | None:
    """Update the editable profile fields of a user. None leaves a field unchanged."""
    async with db.async_session() as session:
        async with session.begin():
            user = await session.get(User, user_id)
            if not user:
                return None
            if real_name is not None:
                user.real_name = real_name
            if blurb is not None:
                user.blurb = blurb
        return user


async def update_user_password(user_id: int, hashed_password: str) -> User | None:
    """Replace the stored password hash of a user."""
    async with db.async_session() as session:
        async with session.begin():
            user = await session.get(User, user_id)
            if not user:
                return None
            user.password = hashed_password
        return user


async def delete_user(user_id: int) -> User | None:
    """Delete a user along with their pings and auth token.

    Returns a snapshot of the deleted user, or None if no such user exists.
    """
    async with db.async_session() as session:
        try:
            async with session.begin():
                user = await session.get(User, user_id)
                if not user:
                    return None
                snapshot = _create_user_snapshot(user)
                await session.execute(delete(AuthToken).where(AuthToken.user_id == user_id))
                await session.execute(delete(Ping).where(Ping.user_id == user_id))
                await session.delete(user)
            return snapshot
        except Exception:
            logger.error(f"Failed to delete user id={user_id}", exc_info=True)
            raise


async def list_users(
    skip: int,
    limit: int,
    username: str | None = None,  # Filter by exact username
    sort: str = "id",
    order: str = "asc",
) -> tuple[list[User], int]:
    """List users with optional filter, sorting, and pagination. Returns list of users and total count."""
    async with db.async_session() as session:
        try:
            conditions: list = []
            if username:
                conditions.append(User.username == username)
            # Total count w/ same filters
            count_stmt = select(func.count()).select_from(User)
            if conditions:
                count_stmt = count_stmt.where(*conditions)
            count_result = await session.execute(count_stmt)
            total = count_result.scalar() or 0

            stmt = select(User)
            if conditions:
                stmt = stmt.where(*conditions)
            stmt = _apply_sort(stmt, User, sort, order)
            stmt = stmt.offset(skip).limit(limit)
            result = await session.execute(stmt)
            users = list(result.scalars().all())
            logger.debug(f"Query executed: returned {len(users)} users out of {total} total")
            return users, total
        except Exception:
            logger.error("Failed to list users", exc_info=True)
            raise


# ==================== Batch Operations ====================

async def insert_users(items: list[dict]) -> list[User]:
    """Insert multiple users in a single transaction, processing in chunks for memory efficiency.
    All-or-nothing: either all users are inserted or none are (atomic operation).
    Raises ValueError on duplicate username.

    Each item dict must contain username and password (already hashed);
    real_name and blurb are optional.
    """
    if not items:
        return []

    for item in items:
        if 'password' not in item:
            raise ValueError("Each user item must include a hashed 'password' field")

    total_chunks = (len(items) + settings.CHUNK_SIZE - 1) // settings.CHUNK_SIZE
    logger.debug(f"Processing {len(items)} users in {total_chunks} chunks of {settings.CHUNK_SIZE} (atomic transaction)")

    async with db.async_session() as session:
        try:
            async with session.begin():
                all_users = []

                for i in range(0, len(items), settings.CHUNK_SIZE):
                    chunk = items[i:i + settings.CHUNK_SIZE]
                    chunk_num = (i // settings.CHUNK_SIZE) + 1
                    logger.debug(f"Processing chunk {chunk_num}/{total_chunks} ({len(chunk)} users)")

                    objs = [
                        User(
                            username=item["username"],
                            password=item["password"],
                            real_name=item.get("real_name", ""),
                            blurb=item.get("blurb", ""),
                        )
                        for item in chunk
                    ]
                    session.add_all(objs)
                    # Flush per chunk so a duplicate surfaces before the next chunk is built
                    await session.flush()
                    all_users.extend(objs)

            for obj in all_users:
                await session.refresh(obj)

            logger.debug(f"Batch insert completed: {len(all_users)} users created")
            return all_users

        except IntegrityError as e:
            logger.error("Batch insert failed: duplicate username (transaction rolled back)")
            raise ValueError("duplicate username") from e
        except Exception as e:
            logger.error(f"Batch insert failed: {str(e)} (transaction rolled back)", exc_info=True)
            raise


async def delete_users(ids: list[int]) -> list[User]:
    """Delete multiple users (and their pings and tokens) in a single transaction.
    All-or-nothing: either all users are deleted or none are (atomic operation).
    Returns snapshots of deleted users; unknown IDs are ignored.
    """
    if not ids:
        return []

    total_chunks = (len(ids) + settings.CHUNK_SIZE - 1) // settings.CHUNK_SIZE
    logger.debug(f"Processing {len(ids)} deletions in {total_chunks} chunks of {settings.CHUNK_SIZE} (atomic transaction)")

    async with db.async_session() as session:
        try:
            async with session.begin():
                all_deleted = []

                for i in range(0, len(ids), settings.CHUNK_SIZE):
                    chunk = ids[i:i + settings.CHUNK_SIZE]
                    chunk_num = (i // settings.CHUNK_SIZE) + 1

                    result = await session.execute(select(User).where(User.id.in_(chunk)))
                    users = result.scalars().all()
                    if not users:
                        continue

                    found_ids = [u.id for u in users]
                    await session.execute(delete(AuthToken).where(AuthToken.user_id.in_(found_ids)))
                    await session.execute(delete(Ping).where(Ping.user_id.in_(found_ids)))
                    for u in users:
                        all_deleted.append(_create_user_snapshot(u))
                        await session.delete(u)
                    logger.debug(f"Chunk {chunk_num}/{total_chunks} staged: {len(users)} users")

            logger.debug(f"Batch delete completed: {len(all_deleted)} users deleted")
            return all_deleted

        except Exception as e:
            logger.error(f"Batch delete failed: {str(e)} (transaction rolled back)", exc_info=True)
            raise RuntimeError(f"Failed to delete users: {str(e)}") from e


# ==================== Search Operations ====================

async def search_users(
    query: str,
    skip: int,
    limit: int,
    sort: str = "id",
    order: str = "asc",
) -> tuple[list[User], int]:
    """Search users by username or real name containing the query string."""
    async with db.async_session() as session:
        try:
            search_pattern = f"%{escape_like(query)}%"
            search_condition = or_(
                User.username.ilike(search_pattern, escape="\\"),
                User.real_name.ilike(search_pattern, escape="\\"),
            )

            count_stmt = select(func.count()).select_from(User).where(search_condition)
            count_result = await session.execute(count_stmt)
            total = count_result.scalar() or 0

            stmt = _apply_sort(select(User).where(search_condition), User, sort, order)
            stmt = stmt.offset(skip).limit(limit)
            result = await session.execute(stmt)
            users = list(result.scalars().all())
            logger.debug(f"Search query executed: found {len(users)} users (total matches: {total})")
            return users, total
        except Exception as e:
            logger.error(f"Search query failed for term '{query}': {str(e)}", exc_info=True)
            raise


# ==================== Ping Operations ====================

async def insert_ping(user_id: int, content: str) -> Ping:
    """Insert a ping for a user. Raises ValueError if the user does not exist.

    Content length is not checked here; the table accepts any text.
    """
    async with db.async_session() as session:
        try:
            async with session.begin():
                ping = Ping(user_id=user_id, content=content)
                session.add(ping)
            await session.refresh(ping)  # Load timestamp and counter defaults
            return ping
        except IntegrityError as e:
            logger.debug(f"Ping rejected, unknown user: id={user_id}")
            raise ValueError("unknown user") from e


async def select_ping(ping_id: int) -> Ping | None:
    """Retrieve a ping by ID."""
    async with db.async_session() as session:
        return await session.get(Ping, ping_id)


async def delete_ping(ping_id: int) -> Ping | None:
    """Delete a ping by ID and return a snapshot of it."""
    async with db.async_session() as session:
        async with session.begin():
            ping = await session.get(Ping, ping_id)
            if not ping:
                return None
            snapshot = _create_ping_snapshot(ping)
            await session.delete(ping)
        return snapshot


async def list_pings_by_user(user_id: int, skip: int, limit: int) -> tuple[list[Ping], int]:
    """List one user's pings newest first. Returns the page and the user's total ping count."""
    async with db.async_session() as session:
        count_result = await session.execute(
            select(func.count()).select_from(Ping).where(Ping.user_id == user_id)
        )
        total = count_result.scalar() or 0

        # Served by pings_user_timestamp_index; id breaks ties within the same second
        stmt = (
            select(Ping)
            .where(Ping.user_id == user_id)
            .order_by(Ping.timestamp.desc(), Ping.id.desc())
            .offset(skip)
            .limit(limit)
        )
        result = await session.execute(stmt)
        pings = list(result.scalars().all())
        logger.debug(f"Timeline query for user id={user_id}: {len(pings)} of {total} pings")
        return pings, total


async def list_recent_pings(limit: int, before_id: int | None = None) -> list[Ping]:
    """List the newest pings across all users, optionally only those older than `before_id`."""
    async with db.async_session() as session:
        stmt = select(Ping)
        if before_id is not None:
            stmt = stmt.where(Ping.id < before_id)
        stmt = stmt.order_by(Ping.timestamp.desc(), Ping.id.desc()).limit(limit)
        result = await session.execute(stmt)
        return list(result.scalars().all())


async def adjust_ping_counter(ping_id: int, counter: str, delta: int) -> Ping | None:
    """Atomically add `delta` to a ping's likes or echoes counter.

    The update is a single guarded UPDATE, so concurrent adjustments never
    lose increments and the counter never drops below zero.

    Returns the updated ping, or None if the ping does not exist.
    Raises ValueError("counter underflow") if the change would go negative.
    """
    if counter not in PING_COUNTERS:
        raise ValueError(f"unknown counter '{counter}'")
    column = getattr(Ping, counter)

    async with db.async_session() as session:
        async with session.begin():
            result = await session.execute(
                update(Ping)
                .where(Ping.id == ping_id, column + delta >= 0)
                .values({column: column + delta})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if await session.get(Ping, ping_id) is None:
                    return None
                raise ValueError("counter underflow")
            ping = await session.get(Ping, ping_id, populate_existing=True)
        return ping


# ==================== Auth Token Operations ====================

async def upsert_token(user_id: int, key: str) -> AuthToken:
    """Store `key` as the user's only auth token, replacing any previous one.

    Raises ValueError("unknown user") if the user does not exist and
    ValueError("duplicate token key") if the key is already in use.
    """
    async with db.async_session() as session:
        try:
            async with session.begin():
                if await session.get(User, user_id) is None:
                    raise ValueError("unknown user")
                await session.execute(delete(AuthToken).where(AuthToken.user_id == user_id))
                token = AuthToken(user_id=user_id, key=key)
                session.add(token)
            await session.refresh(token)
            return token
        except IntegrityError as e:
            logger.warning(f"Token key collision for user id={user_id}")
            raise ValueError("duplicate token key") from e


async def select_token_by_key(key: str) -> AuthToken | None:
    """Retrieve an auth token by its key."""
    async with db.async_session() as session:
        result = await session.execute(select(AuthToken).where(AuthToken.key == key))
        return result.scalars().first()


async def select_token_for_user(user_id: int) -> AuthToken | None:
    """Retrieve the auth token belonging to a user, if any."""
    async with db.async_session() as session:
        result = await session.execute(select(AuthToken).where(AuthToken.user_id == user_id))
        return result.scalars().first()


async def delete_token_by_key(key: str) -> bool:
    """Delete the token with the given key. Returns True if a token was removed."""
    async with db.async_session() as session:
        async with session.begin():
            result = await session.execute(delete(AuthToken).where(AuthToken.key == key))
        return result.rowcount > 0


async def delete_token_for_user(user_id: int) -> bool:
    """Delete a user's token. Returns True if a token was removed."""
    async with db.async_session() as session:
        async with session.begin():
            result = await session.execute(delete(AuthToken).where(AuthToken.user_id == user_id))
        return result.rowcount > 0
