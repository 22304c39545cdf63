"""
Unit tests for the database layer (CRUD operations).
Tests CRUD functions against a real SQLite database using test fixtures.
"""

import asyncio

import pytest
from sqlalchemy.exc import IntegrityError

from sonar import db
from sonar.crud import (
    insert_user,
    select_user,
    select_user_by_username,
    username_exists,
    update_user_profile,
    update_user_password,
    delete_user,
    list_users,
    search_users,
    insert_users,
    delete_users,
    insert_ping,
    select_ping,
    delete_ping,
    list_pings_by_user,
    list_recent_pings,
    adjust_ping_counter,
    upsert_token,
    select_token_by_key,
    select_token_for_user,
    delete_token_by_key,
    delete_token_for_user,
)
from sonar.models import AuthToken, Ping
from sonar.auth import hash_password


# Helper function for tests - provides a default hashed password
def get_test_password_hash() -> str:
    """Get a hashed password for test users."""
    return hash_password("test_password_1234")


@pytest.mark.asyncio
class TestInsertUser:
    """Test insert_user CRUD function."""

    async def test_insert_user_success(self, test_db_engine):
        user = await insert_user("tester", get_test_password_hash(), real_name="Test User")

        assert user.id is not None
        assert user.username == "tester"
        assert user.real_name == "Test User"
        assert user.blurb == ""

    async def test_insert_user_duplicate_username(self, test_db_engine):
        await insert_user("dupe", get_test_password_hash())

        with pytest.raises(ValueError, match="duplicate username"):
            await insert_user("dupe", get_test_password_hash())

    async def test_usernames_are_case_sensitive(self, test_db_engine):
        await insert_user("Case", get_test_password_hash())
        other = await insert_user("case", get_test_password_hash())
        assert other.id is not None

    async def test_password_stored_as_given_hash(self, test_db_engine):
        hashed = get_test_password_hash()
        user = await insert_user("hashy", hashed)
        assert user.password == hashed


@pytest.mark.asyncio
class TestSelectUser:
    """Test user lookup functions."""

    async def test_select_user_success(self, test_db_engine):
        created = await insert_user("tester", get_test_password_hash())

        user = await select_user(created.id)

        assert user is not None
        assert user.id == created.id
        assert user.username == "tester"

    async def test_select_user_not_found(self, test_db_engine):
        assert await select_user(99999) is None

    async def test_select_user_by_username(self, test_db_engine):
        created = await insert_user("findme", get_test_password_hash())

        user = await select_user_by_username("findme")
        assert user is not None
        assert user.id == created.id
        assert await select_user_by_username("nobody") is None

    async def test_username_exists(self, test_db_engine):
        await insert_user("taken", get_test_password_hash())
        assert await username_exists("taken") is True
        assert await username_exists("free") is False


@pytest.mark.asyncio
class TestUpdateUser:
    """Test profile and password updates."""

    async def test_update_profile_fields(self, test_db_engine):
        created = await insert_user("editor", get_test_password_hash())

        updated = await update_user_profile(created.id, real_name="New Name", blurb="hello")

        assert updated.real_name == "New Name"
        assert updated.blurb == "hello"
        reloaded = await select_user(created.id)
        assert reloaded.real_name == "New Name"

    async def test_update_profile_none_leaves_field(self, test_db_engine):
        created = await insert_user("editor", get_test_password_hash(), real_name="Keep", blurb="old")

        updated = await update_user_profile(created.id, blurb="new")

        assert updated.real_name == "Keep"
        assert updated.blurb == "new"

    async def test_update_profile_missing_user(self, test_db_engine):
        assert await update_user_profile(4242, real_name="x") is None

    async def test_update_password(self, test_db_engine):
        created = await insert_user("rotator", get_test_password_hash())
        new_hash = hash_password("another_password_99")

        updated = await update_user_password(created.id, new_hash)

        assert updated.password == new_hash
        assert await update_user_password(4242, new_hash) is None


@pytest.mark.asyncio
class TestDeleteUser:
    """Test delete_user CRUD function."""

    async def test_delete_user_success(self, test_db_engine):
        created = await insert_user("doomed", get_test_password_hash())

        deleted = await delete_user(created.id)

        assert deleted is not None
        assert deleted.id == created.id
        assert deleted.username == "doomed"
        assert await select_user(created.id) is None

    async def test_delete_user_not_found(self, test_db_engine):
        assert await delete_user(99999) is None

    async def test_delete_user_removes_pings_and_token(self, test_db_engine):
        created = await insert_user("doomed", get_test_password_hash())
        ping = await insert_ping(created.id, "last words")
        await upsert_token(created.id, "doomed-key")

        await delete_user(created.id)

        assert await select_ping(ping.id) is None
        assert await select_token_by_key("doomed-key") is None


@pytest.mark.asyncio
class TestListUsers:
    """Test list_users CRUD function."""

    async def test_list_users_empty(self, test_db_engine):
        users, total = await list_users(skip=0, limit=10)

        assert users == []
        assert total == 0

    async def test_list_users_pagination(self, test_db_engine):
        for i in range(1, 6):
            await insert_user(f"user{i}", get_test_password_hash())

        users, total = await list_users(skip=2, limit=2)

        assert len(users) == 2
        assert total == 5
        assert [u.username for u in users] == ["user3", "user4"]

    async def test_list_users_filter_by_username(self, test_db_engine):
        for i in range(1, 4):
            await insert_user(f"user{i}", get_test_password_hash())

        users, total = await list_users(skip=0, limit=10, username="user2")

        assert total == 1
        assert users[0].username == "user2"

    async def test_list_users_sort_desc(self, test_db_engine):
        for name in ["bravo", "alpha", "charlie"]:
            await insert_user(name, get_test_password_hash())

        users, _ = await list_users(skip=0, limit=10, sort="username", order="desc")

        assert [u.username for u in users] == ["charlie", "bravo", "alpha"]


@pytest.mark.asyncio
class TestSearchUsers:
    """Test search_users CRUD function."""

    async def test_search_matches_username_and_real_name(self, test_db_engine):
        await insert_user("pinger", get_test_password_hash(), real_name="Someone")
        await insert_user("other", get_test_password_hash(), real_name="Ping Fan")
        await insert_user("unrelated", get_test_password_hash(), real_name="Nobody")

        users, total = await search_users("ping", skip=0, limit=10)

        assert total == 2
        assert {u.username for u in users} == {"pinger", "other"}

    async def test_search_escapes_wildcards(self, test_db_engine):
        await insert_user("percent%user", get_test_password_hash())
        await insert_user("plainuser", get_test_password_hash())

        users, total = await search_users("%", skip=0, limit=10)

        assert total == 1
        assert users[0].username == "percent%user"


@pytest.mark.asyncio
class TestBatchUsers:
    """Test batch insert and delete."""

    async def test_insert_users_batch(self, test_db_engine):
        items = [{"username": f"batch{i}", "password": get_test_password_hash()} for i in range(5)]

        users = await insert_users(items)

        assert len(users) == 5
        assert all(u.id is not None for u in users)

    async def test_insert_users_empty(self, test_db_engine):
        assert await insert_users([]) == []

    async def test_insert_users_requires_password(self, test_db_engine):
        with pytest.raises(ValueError, match="password"):
            await insert_users([{"username": "nopass"}])

    async def test_insert_users_is_atomic(self, test_db_engine):
        await insert_user("existing", get_test_password_hash())
        items = [
            {"username": "fresh", "password": get_test_password_hash()},
            {"username": "existing", "password": get_test_password_hash()},
        ]

        with pytest.raises(ValueError, match="duplicate username"):
            await insert_users(items)

        assert await select_user_by_username("fresh") is None

    async def test_delete_users_batch(self, test_db_engine):
        a = await insert_user("a_user", get_test_password_hash())
        b = await insert_user("b_user", get_test_password_hash())
        await insert_ping(a.id, "bye")

        deleted = await delete_users([a.id, b.id, 99999])

        assert {u.id for u in deleted} == {a.id, b.id}
        assert await select_user(a.id) is None
        assert await select_user(b.id) is None

    async def test_delete_users_empty(self, test_db_engine):
        assert await delete_users([]) == []


@pytest.mark.asyncio
class TestPings:
    """Test ping storage and retrieval."""

    async def test_insert_ping_defaults(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())

        ping = await insert_ping(user.id, "hello world")

        assert ping.id is not None
        assert ping.user_id == user.id
        assert ping.content == "hello world"
        assert ping.likes == 0
        assert ping.echoes == 0
        assert ping.timestamp is not None

    async def test_insert_ping_unknown_user_rejected(self, test_db_engine):
        with pytest.raises(ValueError, match="unknown user"):
            await insert_ping(99999, "orphan")

    async def test_table_accepts_long_content(self, test_db_engine):
        # Length is a service-level rule, not a schema one
        user = await insert_user("verbose", get_test_password_hash())
        ping = await insert_ping(user.id, "x" * 500)
        assert len(ping.content) == 500

    async def test_select_and_delete_ping(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        ping = await insert_ping(user.id, "short lived")

        assert (await select_ping(ping.id)).content == "short lived"
        deleted = await delete_ping(ping.id)
        assert deleted.id == ping.id
        assert deleted.content == "short lived"
        assert await select_ping(ping.id) is None
        assert await delete_ping(ping.id) is None

    async def test_timeline_is_newest_first(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        other = await insert_user("other", get_test_password_hash())
        ids = [(await insert_ping(user.id, f"ping {i}")).id for i in range(5)]
        await insert_ping(other.id, "not mine")

        pings, total = await list_pings_by_user(user.id, skip=0, limit=10)

        assert total == 5
        assert [p.id for p in pings] == list(reversed(ids))

    async def test_timeline_pagination(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        ids = [(await insert_ping(user.id, f"ping {i}")).id for i in range(5)]

        pings, total = await list_pings_by_user(user.id, skip=2, limit=2)

        assert total == 5
        assert [p.id for p in pings] == [ids[2], ids[1]]

    async def test_recent_pings_across_users(self, test_db_engine):
        a = await insert_user("a_user", get_test_password_hash())
        b = await insert_user("b_user", get_test_password_hash())
        first = await insert_ping(a.id, "one")
        second = await insert_ping(b.id, "two")
        third = await insert_ping(a.id, "three")

        pings = await list_recent_pings(limit=10)
        assert [p.id for p in pings] == [third.id, second.id, first.id]

        older = await list_recent_pings(limit=10, before_id=third.id)
        assert [p.id for p in older] == [second.id, first.id]

        limited = await list_recent_pings(limit=1)
        assert [p.id for p in limited] == [third.id]


@pytest.mark.asyncio
class TestPingCounters:
    """Test atomic like/echo counter updates."""

    async def test_increment_and_decrement(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        ping = await insert_ping(user.id, "like me")

        for _ in range(3):
            updated = await adjust_ping_counter(ping.id, "likes", 1)
        assert updated.likes == 3

        updated = await adjust_ping_counter(ping.id, "likes", -1)
        assert updated.likes == 2
        assert updated.echoes == 0

        updated = await adjust_ping_counter(ping.id, "echoes", 1)
        assert updated.echoes == 1

    async def test_concurrent_likes_are_not_lost(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        ping = await insert_ping(user.id, "popular")

        # Each call gets its own connection (NullPool), so these really contend
        results = await asyncio.gather(*(adjust_ping_counter(ping.id, "likes", 1) for _ in range(10)))

        assert all(r is not None for r in results)
        assert sorted(r.likes for r in results) == list(range(1, 11))
        assert (await select_ping(ping.id)).likes == 10

    async def test_counter_never_negative(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())
        ping = await insert_ping(user.id, "unloved")

        with pytest.raises(ValueError, match="counter underflow"):
            await adjust_ping_counter(ping.id, "echoes", -1)

        assert (await select_ping(ping.id)).echoes == 0

    async def test_missing_ping(self, test_db_engine):
        assert await adjust_ping_counter(99999, "likes", 1) is None

    async def test_unknown_counter(self, test_db_engine):
        with pytest.raises(ValueError, match="unknown counter"):
            await adjust_ping_counter(1, "content", 1)

    async def test_check_constraint_blocks_negative_counts(self, test_db_engine):
        user = await insert_user("author", get_test_password_hash())

        with pytest.raises(IntegrityError):
            async with db.async_session() as session:
                async with session.begin():
                    session.add(Ping(user_id=user.id, content="bad", likes=-1))


@pytest.mark.asyncio
class TestAuthTokens:
    """Test auth token storage."""

    async def test_upsert_and_lookup(self, test_db_engine):
        user = await insert_user("holder", get_test_password_hash())

        token = await upsert_token(user.id, "key-one")

        assert token.user_id == user.id
        assert token.timestamp is not None
        assert (await select_token_by_key("key-one")).user_id == user.id
        assert (await select_token_for_user(user.id)).key == "key-one"
        assert await select_token_by_key("nope") is None

    async def test_upsert_replaces_existing_token(self, test_db_engine):
        user = await insert_user("holder", get_test_password_hash())
        await upsert_token(user.id, "old-key")

        await upsert_token(user.id, "new-key")

        assert await select_token_by_key("old-key") is None
        assert (await select_token_for_user(user.id)).key == "new-key"

    async def test_upsert_unknown_user(self, test_db_engine):
        with pytest.raises(ValueError, match="unknown user"):
            await upsert_token(99999, "key")

    async def test_duplicate_key_rejected(self, test_db_engine):
        a = await insert_user("a_user", get_test_password_hash())
        b = await insert_user("b_user", get_test_password_hash())
        await upsert_token(a.id, "shared")

        with pytest.raises(ValueError, match="duplicate token key"):
            await upsert_token(b.id, "shared")

        # The failed upsert rolled back, so b's delete-then-insert left nothing behind
        assert await select_token_for_user(b.id) is None
        assert (await select_token_by_key("shared")).user_id == a.id

    async def test_table_allows_one_token_per_user(self, test_db_engine):
        user = await insert_user("holder", get_test_password_hash())
        await upsert_token(user.id, "first")

        with pytest.raises(IntegrityError):
            async with db.async_session() as session:
                async with session.begin():
                    session.add(AuthToken(user_id=user.id, key="second"))

    async def test_delete_tokens(self, test_db_engine):
        user = await insert_user("holder", get_test_password_hash())
        await upsert_token(user.id, "bye")

        assert await delete_token_by_key("bye") is True
        assert await delete_token_by_key("bye") is False

        await upsert_token(user.id, "again")
        assert await delete_token_for_user(user.id) is True
        assert await delete_token_for_user(user.id) is False
