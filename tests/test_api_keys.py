"""Unit tests for auth/api_keys.py -- the API Key Manager.

Covers:
- issue() returns a 32-byte secret once and stores only its digest
- validate() returns the owner while the key is live and Expired afterwards
- Unknown keys raise ApiKeyNotFound; both failures are Unauthenticated
- ttl and user validation
- Digest collisions surface as Conflict without a retry
- Concurrent issuance never produces colliding digests
"""

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

import auth.api_keys as api_keys_module
from auth.api_keys import ApiKeyManager
from auth.errors import ApiKeyNotFound, Conflict, Expired, NotFound, Unauthenticated, ValidationError
from auth.models import User
from auth.store import AccountStore
from auth.tokens import API_KEY_PREFIX, hash_api_key


class TestIssue:
    def test_returns_secret_and_record(self, api_keys: ApiKeyManager, user: User) -> None:
        before = datetime.now(timezone.utc)
        raw_key, record = api_keys.issue(user.id, 3600)

        assert raw_key.startswith(API_KEY_PREFIX)
        secret = raw_key[len(API_KEY_PREFIX) :]
        assert len(bytes.fromhex(secret)) == 32
        assert record.user_id == user.id
        assert record.api_key_hash == hash_api_key(raw_key)
        assert raw_key not in record.api_key_hash
        expected = before + timedelta(seconds=3600)
        assert abs(record.expires_at - expected) < timedelta(seconds=5)
        assert record.valid is True

    def test_accepts_timedelta_ttl(self, api_keys: ApiKeyManager, user: User) -> None:
        _raw, record = api_keys.issue(user.id, timedelta(minutes=5))
        assert record.expires_at - datetime.now(timezone.utc) <= timedelta(minutes=5)

    @pytest.mark.parametrize("ttl", [0, -1, timedelta(0), timedelta(seconds=-30)])
    def test_non_positive_ttl_rejected(self, api_keys: ApiKeyManager, user: User, ttl) -> None:
        with pytest.raises(ValidationError):
            api_keys.issue(user.id, ttl)

    @pytest.mark.parametrize("ttl", [float("nan"), float("inf"), 10**15, 999_999_999_999, timedelta.max])
    def test_unrepresentable_ttl_rejected(self, api_keys: ApiKeyManager, user: User, ttl) -> None:
        with pytest.raises(ValidationError):
            api_keys.issue(user.id, ttl)
        assert api_keys.list_for_user(user.id) == []

    def test_unknown_user_rejected(self, api_keys: ApiKeyManager) -> None:
        with pytest.raises(ValidationError):
            api_keys.issue("no-such-user", 3600)

    def test_collision_conflicts_and_is_not_retried(
        self, api_keys: ApiKeyManager, user: User, store: AccountStore, monkeypatch
    ) -> None:
        calls = []

        def fixed_key() -> str:
            calls.append(1)
            return f"{API_KEY_PREFIX}{'ab' * 32}"

        monkeypatch.setattr(api_keys_module, "generate_api_key", fixed_key)
        api_keys.issue(user.id, 3600)
        with pytest.raises(Conflict):
            api_keys.issue(user.id, 3600)

        assert len(calls) == 2
        assert len(store.list_api_keys(user.id)) == 1


class TestValidate:
    def test_live_key_returns_owner(self, api_keys: ApiKeyManager, user: User) -> None:
        raw_key, _record = api_keys.issue(user.id, 3600)
        assert api_keys.validate(raw_key) == user.id

    def test_expired_key_raises_expired(self, api_keys: ApiKeyManager, user: User, expire_key) -> None:
        raw_key, record = api_keys.issue(user.id, 3600)
        expire_key(record.id)

        with pytest.raises(Expired) as excinfo:
            api_keys.validate(raw_key)
        assert isinstance(excinfo.value, Unauthenticated)

    def test_unknown_key_raises_not_found(self, api_keys: ApiKeyManager) -> None:
        with pytest.raises(ApiKeyNotFound) as excinfo:
            api_keys.validate(f"{API_KEY_PREFIX}{'00' * 32}")
        assert isinstance(excinfo.value, Unauthenticated)

    def test_destroyed_key_no_longer_validates(self, api_keys: ApiKeyManager, user: User) -> None:
        raw_key, record = api_keys.issue(user.id, 3600)
        api_keys.destroy(record.id)
        with pytest.raises(ApiKeyNotFound):
            api_keys.validate(raw_key)

    def test_key_of_deleted_user_is_gone(self, api_keys: ApiKeyManager, user: User, store: AccountStore) -> None:
        raw_key, _record = api_keys.issue(user.id, 3600)
        store.delete_user(user.id)
        with pytest.raises(ApiKeyNotFound):
            api_keys.validate(raw_key)


class TestDestroy:
    def test_destroy_unknown_raises_not_found(self, api_keys: ApiKeyManager) -> None:
        with pytest.raises(NotFound):
            api_keys.destroy("missing")

    def test_get_unknown_raises_not_found(self, api_keys: ApiKeyManager) -> None:
        with pytest.raises(NotFound):
            api_keys.get("missing")


def test_concurrent_issue_never_collides(tmp_path) -> None:
    """Parallel issuance against one file database yields distinct digests."""
    store = AccountStore(f"sqlite:///{tmp_path / 'concurrent.db'}")
    try:
        owner = store.create_user(User(email="busy@example.com"))
        manager = ApiKeyManager(store)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(lambda _: manager.issue(owner.id, 3600), range(40)))

        raw_keys = {raw for raw, _record in results}
        digests = {record.api_key_hash for _raw, record in results}
        assert len(raw_keys) == 40
        assert len(digests) == 40
        assert len(store.list_api_keys(owner.id)) == 40
    finally:
        store.close()
