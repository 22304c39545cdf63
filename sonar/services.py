"""Business logic layer for users, pings, and auth tokens.

Validates input beyond what the schemas can check, turns data-layer
failures into domain errors, and caches frequently read user records.
Reads are retried on transient database errors; writes are not.
"""

from datetime import datetime, timedelta, timezone

from .schemas import (
    UserOut,
    UserCreate,
    UserUpdate,
    PingCreate,
    PingOut,
    TokenOut,
    PaginatedUsers,
    PaginatedPings,
    BatchCreateRequest,
    BatchCreateResponse,
    BatchDeleteRequest,
    BatchDeleteResponse,
    ErrorCode,
)
from . import crud
from .auth import hash_password, verify_password, generate_token_key
from .cache import cache_manager, make_cache_key, USER_BY_ID_PREFIX, USER_BY_USERNAME_PREFIX
from .config import settings
from .db import retry_on_db_error
from .exceptions import (
    ConflictError,
    InvalidCredentialsError,
    InvalidInputError,
    NotFoundError,
    PermissionDeniedError,
)
from .models import User, Ping
from .utils import normalize_username, page_count
from .logger import logger

TOKEN_ISSUE_ATTEMPTS = 3

# ==================== Helper Functions ====================


def _convert_to_user_out(user: User) -> UserOut:
    """Convert ORM User model to UserOut schema."""
    return UserOut.model_validate(user)


def _convert_to_ping_out(ping: Ping) -> PingOut:
    """Convert ORM Ping model to PingOut schema."""
    return PingOut.model_validate(ping)


def _validate_pagination(page: int, limit: int) -> tuple[int, int, int]:
    """Validate and normalize pagination parameters.

    Returns:
        tuple: (page, limit, skip) normalized values
    """
    if page < 1:
        page = settings.DEFAULT_PAGE
    if limit < 1:
        limit = settings.DEFAULT_LIMIT
    if limit > settings.MAX_LIMIT:
        limit = settings.MAX_LIMIT
    skip = (page - 1) * limit
    return page, limit, skip


def _validate_sort_params(sort: str, order: str) -> tuple[str, str]:
    """Validate and normalize sort parameters."""
    if sort not in ["id", "username", "real_name"]:
        sort = "id"
    if order not in ["asc", "desc"]:
        order = "asc"
    return sort, order


def _check_password_length(password: str) -> None:
    """Enforce the password bounds. The maximum counts UTF-8 bytes, as bcrypt does."""
    if len(password) < settings.PASSWORD_MIN_LENGTH:
        raise InvalidInputError(
            "Password too short",
            ErrorCode.PASSWORD_TOO_SHORT,
            {"minimum": settings.PASSWORD_MIN_LENGTH},
        )
    if len(password.encode("utf-8")) > settings.PASSWORD_MAX_LENGTH:
        raise InvalidInputError(
            "Password too long",
            ErrorCode.PASSWORD_TOO_LONG,
            {"maximum_bytes": settings.PASSWORD_MAX_LENGTH},
        )


def _user_not_found(user_id: int) -> NotFoundError:
    return NotFoundError(
        f"User with ID {user_id} does not exist",
        ErrorCode.USER_NOT_FOUND,
        {"user_id": user_id},
    )


def _ping_not_found(ping_id: int) -> NotFoundError:
    return NotFoundError(
        f"Ping with ID {ping_id} does not exist",
        ErrorCode.PING_NOT_FOUND,
        {"ping_id": ping_id},
    )


def _as_utc(moment: datetime) -> datetime:
    # SQLite hands back naive CURRENT_TIMESTAMP values, which are UTC
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


async def _cache_user(user_out: UserOut) -> None:
    if settings.CACHE_ENABLED:
        await cache_manager.remember_user(user_out.model_dump())


async def _invalidate_user_cache(user: User | UserOut) -> None:
    if settings.CACHE_ENABLED:
        await cache_manager.forget_user(user.id, user.username)


# ==================== User Operations ====================


async def get_user(user_id: int) -> UserOut:
    """Retrieve a user by ID with caching."""
    logger.debug(f"Fetching user: id={user_id}")

    if settings.CACHE_ENABLED:
        cached_data = await cache_manager.get(make_cache_key(USER_BY_ID_PREFIX, user_id))
        if cached_data:
            logger.debug(f"Cache hit for user: id={user_id}")
            return UserOut(**cached_data)

    user = await retry_on_db_error(lambda: crud.select_user(user_id))
    if not user:
        logger.warning(f"User not found: id={user_id}")
        raise _user_not_found(user_id)

    user_out = _convert_to_user_out(user)
    await _cache_user(user_out)
    return user_out


async def get_user_by_username(username: str) -> UserOut:
    """Retrieve a user by username with caching."""
    username = normalize_username(username)

    if settings.CACHE_ENABLED:
        cached_data = await cache_manager.get(make_cache_key(USER_BY_USERNAME_PREFIX, username))
        if cached_data:
            logger.debug(f"Cache hit for user: username={username}")
            return UserOut(**cached_data)

    user = await retry_on_db_error(lambda: crud.select_user_by_username(username))
    if not user:
        logger.warning(f"User not found: username={username}")
        raise NotFoundError(
            f"User '{username}' does not exist",
            ErrorCode.USER_NOT_FOUND,
            {"username": username},
        )

    user_out = _convert_to_user_out(user)
    await _cache_user(user_out)
    return user_out


async def register_user(data: UserCreate) -> UserOut:
    """Sign up a new user, storing only a bcrypt hash of the password."""
    logger.info(f"Registering new user: {data.username}")

    if await crud.username_exists(data.username):
        logger.warning(f"Registration failed - username taken: {data.username}")
        raise ConflictError(
            "Username already in use; pick another",
            ErrorCode.DUPLICATE_USERNAME,
            {"username": data.username},
        )

    _check_password_length(data.password)

    try:
        user = await crud.insert_user(
            data.username,
            hash_password(data.password),
            real_name=data.real_name,
            blurb=data.blurb,
        )
    except ValueError as e:
        # Lost a race with a concurrent signup for the same name
        logger.warning(f"Registration failed - username taken on insert: {data.username}")
        raise ConflictError(
            "Username already in use; pick another",
            ErrorCode.DUPLICATE_USERNAME,
            {"username": data.username},
        ) from e

    logger.info(f"User registered successfully: id={user.id} username={user.username}")
    user_out = _convert_to_user_out(user)
    await _cache_user(user_out)
    return user_out


async def update_profile(user_id: int, data: UserUpdate) -> UserOut:
    """Update a user's real name and/or blurb."""
    user = await crud.update_user_profile(user_id, real_name=data.real_name, blurb=data.blurb)
    if not user:
        raise _user_not_found(user_id)

    logger.info(f"Profile updated: id={user.id}")
    await _invalidate_user_cache(user)
    return _convert_to_user_out(user)


async def change_password(user_id: int, old_password: str, new_password: str) -> None:
    """Replace a user's password after checking the current one.

    The user's auth token is revoked so the old credential stops working.
    """
    user = await crud.select_user(user_id)
    if not user:
        raise _user_not_found(user_id)
    if not verify_password(old_password, user.password):
        logger.warning(f"Password change rejected - wrong current password: id={user_id}")
        raise InvalidCredentialsError("Current password is incorrect", ErrorCode.INVALID_CREDENTIALS)

    _check_password_length(new_password)
    await crud.update_user_password(user_id, hash_password(new_password))
    await crud.delete_token_for_user(user_id)
    logger.info(f"Password changed and token revoked: id={user_id}")


async def delete_user(user_id: int) -> UserOut:
    """Delete a user (with their pings and token) and invalidate cache."""
    logger.info(f"Deleting user: id={user_id}")
    user = await crud.delete_user(user_id)
    if not user:
        logger.warning(f"Cannot delete - user not found: id={user_id}")
        raise _user_not_found(user_id)

    logger.info(f"User deleted successfully: id={user.id} username={user.username}")
    await _invalidate_user_cache(user)
    return _convert_to_user_out(user)


async def list_users(
    page: int = settings.DEFAULT_PAGE,
    limit: int = settings.DEFAULT_LIMIT,
    username: str | None = None,
    sort: str = "id",
    order: str = "asc",
) -> PaginatedUsers:
    """List users with pagination, optional username filter, and sorting."""
    page, limit, skip = _validate_pagination(page, limit)
    sort, order = _validate_sort_params(sort, order)

    users, total = await crud.list_users(skip, limit, username=username, sort=sort, order=order)
    logger.debug(f"Found {len(users)} users (total={total})")

    return PaginatedUsers(
        items=[_convert_to_user_out(u) for u in users],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )


async def search_users(
    q: str,
    page: int = settings.DEFAULT_PAGE,
    limit: int = settings.DEFAULT_LIMIT,
    sort: str = "id",
    order: str = "asc",
) -> PaginatedUsers:
    """Search users by username or real name with pagination and sorting."""
    page, limit, skip = _validate_pagination(page, limit)
    sort, order = _validate_sort_params(sort, order)

    logger.info(f"Searching users: query='{q}' page={page} limit={limit}")
    users, total = await crud.search_users(q, skip, limit, sort, order)

    return PaginatedUsers(
        items=[_convert_to_user_out(u) for u in users],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )

# ==================== Batch Operations ====================


def _check_batch_size(size: int) -> None:
    if size > settings.MAX_BATCH_SIZE:
        logger.warning(f"Batch rejected: size {size} exceeds maximum {settings.MAX_BATCH_SIZE}")
        raise InvalidInputError(
            f"Batch size {size} exceeds maximum allowed size of {settings.MAX_BATCH_SIZE}",
            ErrorCode.BATCH_SIZE_EXCEEDED,
            {"provided": size, "maximum": settings.MAX_BATCH_SIZE},
        )


async def batch_create_users(data: BatchCreateRequest) -> BatchCreateResponse:
    """Create multiple users atomically."""
    _check_batch_size(len(data.items))
    for item in data.items:
        _check_password_length(item.password)

    logger.info(f"Batch creating {len(data.items)} users")
    items = [
        {
            "username": u.username,
            "password": hash_password(u.password),
            "real_name": u.real_name,
            "blurb": u.blurb,
        }
        for u in data.items
    ]
    try:
        users = await crud.insert_users(items)
    except ValueError as e:
        logger.error(f"Batch create failed: {str(e)}")
        raise ConflictError(
            "Batch create failed: one or more usernames are already in use",
            ErrorCode.DUPLICATE_USERNAME,
            {"reason": str(e)},
        ) from e

    created_items = [_convert_to_user_out(u) for u in users]
    logger.info(f"Batch create completed: {len(created_items)} users created")
    return BatchCreateResponse(items=created_items, created=len(created_items))


async def batch_delete_users(req: BatchDeleteRequest) -> BatchDeleteResponse:
    """Delete multiple users by ID with cache invalidation."""
    _check_batch_size(len(req.ids))

    logger.info(f"Batch deleting {len(req.ids)} users")
    deleted = await crud.delete_users(req.ids)
    for user in deleted:
        await _invalidate_user_cache(user)

    logger.info(f"Batch delete completed: {len(deleted)} users deleted")
    items = [_convert_to_user_out(u) for u in deleted]
    return BatchDeleteResponse(items=items, deleted=len(items))

# ==================== Credentials ====================


async def verify_credentials(username: str, password: str) -> UserOut | None:
    """Return the user if the username exists and the password matches, else None."""
    user = await crud.select_user_by_username(normalize_username(username))
    if not user:
        logger.debug(f"Credential check failed - unknown username: {username}")
        return None
    if not verify_password(password, user.password):
        logger.debug(f"Credential check failed - wrong password: {username}")
        return None
    return _convert_to_user_out(user)


async def get_validated_user(username: str, password: str) -> UserOut:
    """Like verify_credentials, but raises InvalidCredentialsError instead of returning None."""
    user = await verify_credentials(username, password)
    if user is None:
        logger.warning(f"Invalid credentials presented for: {username}")
        raise InvalidCredentialsError("Invalid username or password", ErrorCode.INVALID_CREDENTIALS)
    return user

# ==================== Ping Operations ====================


async def post_ping(user_id: int, data: PingCreate) -> PingOut:
    """Publish a ping for a user."""
    try:
        ping = await crud.insert_ping(user_id, data.content)
    except ValueError as e:
        logger.warning(f"Ping rejected - unknown user: id={user_id}")
        raise _user_not_found(user_id) from e

    logger.info(f"Ping posted: id={ping.id} user={user_id}")
    return _convert_to_ping_out(ping)


async def get_ping(ping_id: int) -> PingOut:
    """Retrieve a single ping."""
    ping = await crud.select_ping(ping_id)
    if not ping:
        raise _ping_not_found(ping_id)
    return _convert_to_ping_out(ping)


async def delete_ping(ping_id: int, user_id: int) -> PingOut:
    """Delete a ping on behalf of its author."""
    ping = await crud.select_ping(ping_id)
    if not ping:
        raise _ping_not_found(ping_id)
    if ping.user_id != user_id:
        logger.warning(f"User id={user_id} tried to delete ping id={ping_id} owned by id={ping.user_id}")
        raise PermissionDeniedError(
            "Only the author can delete a ping",
            ErrorCode.FORBIDDEN,
            {"ping_id": ping_id, "user_id": user_id},
        )

    deleted = await crud.delete_ping(ping_id)
    if not deleted:
        # Removed concurrently between the check and the delete
        raise _ping_not_found(ping_id)
    logger.info(f"Ping deleted: id={ping_id}")
    return _convert_to_ping_out(deleted)


async def user_timeline(
    user_id: int,
    page: int = settings.DEFAULT_PAGE,
    limit: int = settings.DEFAULT_LIMIT,
) -> PaginatedPings:
    """A user's own pings, newest first."""
    await get_user(user_id)
    page, limit, skip = _validate_pagination(page, limit)

    pings, total = await retry_on_db_error(lambda: crud.list_pings_by_user(user_id, skip, limit))
    return PaginatedPings(
        items=[_convert_to_ping_out(p) for p in pings],
        total=total,
        page=page,
        limit=limit,
        pages=page_count(total, limit),
    )


async def recent_pings(limit: int = settings.DEFAULT_LIMIT, before_id: int | None = None) -> list[PingOut]:
    """Newest pings from everyone. Pass the last seen id as `before_id` to page back."""
    _, limit, _ = _validate_pagination(1, limit)
    pings = await retry_on_db_error(lambda: crud.list_recent_pings(limit, before_id=before_id))
    return [_convert_to_ping_out(p) for p in pings]


async def _adjust_counter(ping_id: int, counter: str, delta: int) -> PingOut:
    try:
        ping = await crud.adjust_ping_counter(ping_id, counter, delta)
    except ValueError as e:
        raise ConflictError(
            f"Ping {ping_id} has no {counter} to remove",
            ErrorCode.COUNTER_UNDERFLOW,
            {"ping_id": ping_id, "counter": counter},
        ) from e
    if not ping:
        raise _ping_not_found(ping_id)
    logger.debug(f"Ping id={ping_id} {counter} now {getattr(ping, counter)}")
    return _convert_to_ping_out(ping)


async def like_ping(ping_id: int) -> PingOut:
    return await _adjust_counter(ping_id, "likes", 1)


async def unlike_ping(ping_id: int) -> PingOut:
    return await _adjust_counter(ping_id, "likes", -1)


async def echo_ping(ping_id: int) -> PingOut:
    return await _adjust_counter(ping_id, "echoes", 1)


async def unecho_ping(ping_id: int) -> PingOut:
    return await _adjust_counter(ping_id, "echoes", -1)

# ==================== Auth Tokens ====================


async def issue_token(user_id: int) -> TokenOut:
    """Issue a fresh auth token for a user, replacing any token they already had."""
    for attempt in range(1, TOKEN_ISSUE_ATTEMPTS + 1):
        try:
            token = await crud.upsert_token(user_id, generate_token_key())
        except ValueError as e:
            if str(e) == "unknown user":
                raise _user_not_found(user_id) from e
            logger.warning(f"Token key collision (attempt {attempt}/{TOKEN_ISSUE_ATTEMPTS})")
            continue
        logger.info(f"Token issued for user: id={user_id}")
        return TokenOut.model_validate(token)

    raise ConflictError(
        "Could not generate a unique token key",
        ErrorCode.INVALID_INPUT,
        {"user_id": user_id, "attempts": TOKEN_ISSUE_ATTEMPTS},
    )


async def lookup_token(key: str) -> UserOut:
    """Return the user a token key belongs to.

    When TOKEN_MAX_AGE_MINUTES is set, tokens older than that are deleted
    and treated as missing.
    """
    token = await retry_on_db_error(lambda: crud.select_token_by_key(key))
    if not token:
        logger.debug("Token lookup failed - no such key")
        raise NotFoundError("Token presented was not valid", ErrorCode.TOKEN_NOT_FOUND)

    if settings.TOKEN_MAX_AGE_MINUTES is not None:
        age = datetime.now(timezone.utc) - _as_utc(token.timestamp)
        if age > timedelta(minutes=settings.TOKEN_MAX_AGE_MINUTES):
            await crud.delete_token_by_key(key)
            logger.info(f"Expired token removed for user: id={token.user_id}")
            raise NotFoundError("Token has expired", ErrorCode.TOKEN_NOT_FOUND, {"user_id": token.user_id})

    return await get_user(token.user_id)


async def revoke_token(key: str) -> None:
    """Delete a token by key."""
    if not await crud.delete_token_by_key(key):
        raise NotFoundError("Token presented was not valid", ErrorCode.TOKEN_NOT_FOUND)
    logger.info("Token revoked")
