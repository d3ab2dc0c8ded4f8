#!/usr/bin/env python3
"""
Tests for the key pool: rotation, persistence and admin edits.
"""

import json
import os
import tempfile
import threading

from errors import IndexOutOfRange, InvalidKey, NoKeysAvailable, PersistenceError
from key_store import JsonKeyFile, KeyStore


def _store(tmpdir: str, keys=None, cursor=0) -> KeyStore:
    path = os.path.join(tmpdir, "data", "api-keys.json")
    if keys is not None:
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as f:
            json.dump({"apiKeys": keys, "currentKeyIndex": cursor}, f)
    store = KeyStore(JsonKeyFile(path))
    store.load()
    return store


def test_round_robin_returns_each_key_once_then_wraps():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir, ["key-a", "key-b", "key-c"])

        dispensed = [store.next() for _ in range(3)]
        assert dispensed == ["key-a", "key-b", "key-c"]
        assert store.next() == "key-a"
        assert store.cursor == 1
    print("✓ round_robin_returns_each_key_once_then_wraps passed")


def test_next_on_empty_pool_raises():
    store = KeyStore()
    try:
        store.next()
    except NoKeysAvailable:
        pass
    else:
        raise AssertionError("expected NoKeysAvailable")
    print("✓ next_on_empty_pool_raises passed")


def test_next_persists_cursor():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir, ["key-a", "key-b"])
        store.next()

        with open(store.storage.path) as f:
            data = json.load(f)
        assert data == {"apiKeys": ["key-a", "key-b"], "currentKeyIndex": 1}
    print("✓ next_persists_cursor passed")


def test_save_then_load_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        store.add("first-key-0000")
        store.add("second-key-0000")
        store.add("third-key-0000")
        store.next()
        store.next()
        store.save()

        reloaded = KeyStore(JsonKeyFile(store.storage.path))
        reloaded.load()
        assert reloaded.list() == store.list()
        assert reloaded.cursor == 2
        assert reloaded.next() == "third-key-0000"
    print("✓ save_then_load_round_trip passed")


def test_load_missing_file_gives_empty_pool():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir)
        assert store.total == 0
        assert store.cursor == 0
    print("✓ load_missing_file_gives_empty_pool passed")


def test_load_corrupt_file_gives_empty_pool():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "api-keys.json")
        with open(path, "w") as f:
            f.write('{"apiKeys": ["abc", ')
        store = KeyStore(JsonKeyFile(path))
        store.load()
        assert store.total == 0
        assert store.cursor == 0
    print("✓ load_corrupt_file_gives_empty_pool passed")


def test_load_clamps_out_of_range_cursor():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = _store(tmpdir, ["key-a", "key-b"], cursor=5)
        assert store.cursor == 0

        store = _store(tmpdir, ["key-a", "key-b"], cursor=-1)
        assert store.cursor == 0
    print("✓ load_clamps_out_of_range_cursor passed")


def test_add_trims_and_rejects_blank_keys():
    store = KeyStore()
    assert store.add("  AIzaSyExampleKey  ") == 1
    assert store.next() == "AIzaSyExampleKey"

    for bad in ["", "   ", None, 42]:
        try:
            store.add(bad)
        except InvalidKey:
            pass
        else:
            raise AssertionError(f"expected InvalidKey for {bad!r}")
    assert store.total == 1
    print("✓ add_trims_and_rejects_blank_keys passed")


def test_remove_rejects_bad_index():
    store = KeyStore()
    store.add("key-a")
    for bad in [-1, 1, "x", None, True, 1.5]:
        try:
            store.remove(bad)
        except IndexOutOfRange:
            pass
        else:
            raise AssertionError(f"expected IndexOutOfRange for {bad!r}")
    assert store.total == 1
    print("✓ remove_rejects_bad_index passed")


def test_remove_accepts_integer_string():
    store = KeyStore()
    store.add("key-a")
    store.add("key-b")
    assert store.remove("0") == 1
    assert store.next() == "key-b"
    print("✓ remove_accepts_integer_string passed")


def test_remove_accepts_integral_float():
    store = KeyStore()
    for key in ["key-a", "key-b", "key-c"]:
        store.add(key)
    assert store.remove(1.0) == 2
    assert store.remove("1.0") == 1
    assert store.next() == "key-a"
    for bad in [0.5, "0.5", float("nan"), float("inf")]:
        try:
            store.remove(bad)
        except IndexOutOfRange:
            pass
        else:
            raise AssertionError(f"expected IndexOutOfRange for {bad!r}")
    print("✓ remove_accepts_integral_float passed")


def test_remove_below_cursor_keeps_rotation_order():
    store = KeyStore()
    for key in ["key-a", "key-b", "key-c", "key-d"]:
        store.add(key)
    store.next()
    store.next()  # next up: key-c

    store.remove(0)

    assert [store.next() for _ in range(3)] == ["key-c", "key-d", "key-b"]
    print("✓ remove_below_cursor_keeps_rotation_order passed")


def test_remove_resets_cursor_past_end():
    store = KeyStore()
    for key in ["key-a", "key-b", "key-c"]:
        store.add(key)
    store.next()
    store.next()  # cursor = 2

    store.remove(2)

    assert store.cursor == 0
    assert store.next() == "key-a"
    print("✓ remove_resets_cursor_past_end passed")


def test_remove_last_key_leaves_empty_pool():
    store = KeyStore()
    store.add("key-a")
    store.remove(0)
    assert store.total == 0
    assert store.cursor == 0
    print("✓ remove_last_key_leaves_empty_pool passed")


def test_list_is_redacted():
    store = KeyStore()
    store.add("AIzaSyABCDEFGHIJKLMNOP")
    store.add("short")
    listing = store.list()

    assert listing == {
        "keys": [
            {"id": 0, "key": "AIzaSyABCD..."},
            {"id": 1, "key": "short..."},
        ],
        "total": 2,
        "currentIndex": 0,
    }
    assert "AIzaSyABCDEFGHIJKLMNOP" not in json.dumps(listing)
    print("✓ list_is_redacted passed")


class FailingKeyFile(JsonKeyFile):
    def __init__(self):
        super().__init__("/nonexistent/api-keys.json")
        self.writes = 0

    def write(self, data: dict) -> None:
        self.writes += 1
        raise PersistenceError("disk full")


def test_storage_failure_is_not_fatal():
    storage = FailingKeyFile()
    store = KeyStore(storage)
    store.add("key-a")
    store.add("key-b")

    assert store.next() == "key-a"
    assert store.next() == "key-b"
    assert storage.writes == 4
    print("✓ storage_failure_is_not_fatal passed")


def test_concurrent_next_never_hands_out_duplicates_per_round():
    store = KeyStore()
    keys = [f"key-{i}" for i in range(8)]
    for key in keys:
        store.add(key)

    results = []
    results_lock = threading.Lock()

    def worker():
        for _ in range(100):
            key = store.next()
            with results_lock:
                results.append(key)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    # 800 dispenses over 8 keys: each key exactly 100 times, cursor back at 0
    assert len(results) == 800
    for key in keys:
        assert results.count(key) == 100
    assert store.cursor == 0
    print("✓ concurrent_next_never_hands_out_duplicates_per_round passed")


def test_write_is_atomic_and_creates_directory():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = os.path.join(tmpdir, "nested", "dir", "api-keys.json")
        JsonKeyFile(path).write({"apiKeys": ["k"], "currentKeyIndex": 0})

        assert JsonKeyFile(path).read() == {"apiKeys": ["k"], "currentKeyIndex": 0}
        leftovers = [n for n in os.listdir(os.path.dirname(path)) if n.endswith(".tmp")]
        assert leftovers == []
    print("✓ write_is_atomic_and_creates_directory passed")


def run_all_tests():
    """Run all tests."""
    try:
        test_round_robin_returns_each_key_once_then_wraps()
        test_next_on_empty_pool_raises()
        test_next_persists_cursor()
        test_save_then_load_round_trip()
        test_load_missing_file_gives_empty_pool()
        test_load_corrupt_file_gives_empty_pool()
        test_load_clamps_out_of_range_cursor()
        test_add_trims_and_rejects_blank_keys()
        test_remove_rejects_bad_index()
        test_remove_accepts_integer_string()
        test_remove_accepts_integral_float()
        test_remove_below_cursor_keeps_rotation_order()
        test_remove_resets_cursor_past_end()
        test_remove_last_key_leaves_empty_pool()
        test_list_is_redacted()
        test_storage_failure_is_not_fatal()
        test_concurrent_next_never_hands_out_duplicates_per_round()
        test_write_is_atomic_and_creates_directory()
        print("\n✅ All tests passed!")
    except AssertionError as e:
        print(f"\n❌ Test failed: {e}")
        raise


if __name__ == "__main__":
    run_all_tests()
