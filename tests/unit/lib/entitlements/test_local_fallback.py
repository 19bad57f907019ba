"""Unit tests for the file-backed local fallback copy."""

import json

from src.lambdas.shared.models.subscription import SubscriptionRecord, SubscriptionStatus
from src.lib.entitlements.local_fallback import LocalFallbackStore
from tests.fixtures.mocks.fake_clock import FakeClock


def _record(**overrides):
    values = {"user_id": "user-1", "status": SubscriptionStatus.ACTIVE, "updated_at": 42}
    values.update(overrides)
    return SubscriptionRecord(**values)


class TestLocalFallbackStore:
    def test_save_then_load(self, tmp_path):
        clock = FakeClock()
        store = LocalFallbackStore(tmp_path, clock=clock)

        store.save("user-1", _record())
        record, saved_at = store.load("user-1")

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.updated_at == 42
        assert saved_at == clock.now

    def test_missing_file(self, tmp_path):
        assert LocalFallbackStore(tmp_path).load("user-1") is None

    def test_saved_none_is_distinguished_from_missing(self, tmp_path):
        store = LocalFallbackStore(tmp_path)
        store.save("user-1", None)

        loaded = store.load("user-1")

        assert loaded is not None
        assert loaded[0] is None

    def test_copy_older_than_max_age_is_ignored(self, tmp_path):
        clock = FakeClock()
        store = LocalFallbackStore(tmp_path, max_age_seconds=60, clock=clock)
        store.save("user-1", _record())

        clock.advance(60)

        assert store.load("user-1") is None

    def test_corrupt_file_is_ignored(self, tmp_path):
        store = LocalFallbackStore(tmp_path)
        store.save("user-1", _record())
        path = next(tmp_path.glob("subscription_*.json"))
        path.write_text("{truncated", encoding="utf-8")

        assert store.load("user-1") is None

    def test_unknown_format_version_is_ignored(self, tmp_path):
        store = LocalFallbackStore(tmp_path)
        store.save("user-1", _record())
        path = next(tmp_path.glob("subscription_*.json"))
        payload = json.loads(path.read_text(encoding="utf-8"))
        payload["version"] = 99
        path.write_text(json.dumps(payload), encoding="utf-8")

        assert store.load("user-1") is None

    def test_user_id_is_sanitized_for_file_name(self, tmp_path):
        store = LocalFallbackStore(tmp_path)

        store.save("../../etc/passwd", _record(user_id="../../etc/passwd"))

        files = list(tmp_path.iterdir())
        assert len(files) == 1
        assert files[0].parent == tmp_path
        assert store.load("../../etc/passwd") is not None

    def test_no_temp_files_left_behind(self, tmp_path):
        store = LocalFallbackStore(tmp_path)
        store.save("user-1", _record())
        store.save("user-1", _record(status=SubscriptionStatus.PAST_DUE))

        assert [p.suffix for p in tmp_path.iterdir()] == [".json"]
        assert store.load("user-1")[0].status == SubscriptionStatus.PAST_DUE

    def test_clear(self, tmp_path):
        store = LocalFallbackStore(tmp_path)
        store.save("user-1", _record())

        store.clear("user-1")
        store.clear("user-1")

        assert store.load("user-1") is None

    def test_unwritable_directory_is_logged_not_raised(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("x", encoding="utf-8")
        store = LocalFallbackStore(blocker / "sub")

        store.save("user-1", _record())

        assert store.load("user-1") is None
