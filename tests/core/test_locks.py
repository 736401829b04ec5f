"""Tests for parley.core.locks - per-aggregate keyed locks."""

from __future__ import annotations

import threading
import time

import pytest

from parley.core.exceptions import LockTimeoutError
from parley.core.locks import KeyedLocks, _order, group_key, message_key, user_key


class TestKeys:
    def test_key_format(self):
        assert group_key("g1") == "group:g1"
        assert message_key("m1") == "message:m1"
        assert user_key("u1") == "user:u1"

    def test_global_order(self):
        keys = [user_key("a"), message_key("z"), group_key("b"), group_key("a")]
        assert sorted(keys, key=_order) == ["group:a", "group:b", "message:z", "user:a"]


class TestKeyedLocks:
    def test_hold_and_release(self):
        locks = KeyedLocks()
        with locks.hold(group_key("g1"), user_key("u1")):
            assert len(locks) == 2
        assert len(locks) == 0

    def test_duplicate_keys_collapse(self):
        locks = KeyedLocks()
        with locks.hold(group_key("g1"), group_key("g1")):
            assert len(locks) == 1

    def test_excludes_other_threads(self):
        locks = KeyedLocks()
        inside = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(group_key("g1")):
                inside.set()
                release.wait(timeout=2)

        t = threading.Thread(target=holder)
        t.start()
        inside.wait(timeout=2)

        with pytest.raises(LockTimeoutError) as exc_info:
            with locks.hold(group_key("g1"), timeout=0.05):
                pass
        assert exc_info.value.keys == ["group:g1"]

        release.set()
        t.join()
        with locks.hold(group_key("g1"), timeout=0.5):
            pass

    def test_timeout_releases_partial_acquisitions(self):
        locks = KeyedLocks()
        inside = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold(user_key("u1")):
                inside.set()
                release.wait(timeout=2)

        t = threading.Thread(target=holder)
        t.start()
        inside.wait(timeout=2)

        with pytest.raises(LockTimeoutError):
            with locks.hold(group_key("g1"), user_key("u1"), timeout=0.05):
                pass

        # group:g1 was taken first and must have been released
        with locks.hold(group_key("g1"), timeout=0.05):
            pass

        release.set()
        t.join()

    def test_different_keys_do_not_contend(self):
        locks = KeyedLocks()
        with locks.hold(group_key("g1")):
            with locks.hold(group_key("g2"), timeout=0.05):
                pass

    def test_mutual_exclusion_under_contention(self):
        locks = KeyedLocks()
        counter = {"value": 0}

        def bump():
            for _ in range(200):
                with locks.hold(group_key("g1")):
                    current = counter["value"]
                    time.sleep(0)
                    counter["value"] = current + 1

        threads = [threading.Thread(target=bump) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counter["value"] == 800
        assert len(locks) == 0
