import threading

import pytest

from keyswallet.exceptions import ConcurrencyError
from keyswallet.locks import AccountLockRegistry


def test_hold_orders_and_releases_locks() -> None:
    registry = AccountLockRegistry()

    with registry.hold("b", "a", "b") as held:
        assert held == ("a", "b")
        assert registry.is_locked("a")
        assert registry.is_locked("b")

    assert not registry.is_locked("a")
    assert not registry.is_locked("b")
    assert not registry.is_locked("never-seen")


def test_hold_releases_on_error() -> None:
    registry = AccountLockRegistry()

    with pytest.raises(RuntimeError):
        with registry.hold("a"):
            raise RuntimeError("boom")

    assert not registry.is_locked("a")


def test_hold_times_out_when_account_is_busy() -> None:
    registry = AccountLockRegistry()
    entered = threading.Event()
    release = threading.Event()

    def occupy() -> None:
        with registry.hold("a"):
            entered.set()
            release.wait(5)

    worker = threading.Thread(target=occupy)
    worker.start()
    entered.wait(5)
    try:
        with pytest.raises(ConcurrencyError):
            with registry.hold("b", "a", timeout=0.05):
                pass
        # The lock on "b" taken before the timeout must have been released.
        assert not registry.is_locked("b")
        assert len(registry) == 1
    finally:
        release.set()
        worker.join(5)
    assert len(registry) == 0


def test_entries_live_only_while_held_or_awaited() -> None:
    registry = AccountLockRegistry()
    entered = threading.Event()
    release = threading.Event()
    waited = []

    def occupy() -> None:
        with registry.hold("a"):
            entered.set()
            release.wait(5)

    def wait_for_a() -> None:
        with registry.hold("a", timeout=5):
            waited.append(True)

    holder = threading.Thread(target=occupy)
    holder.start()
    entered.wait(5)
    waiter = threading.Thread(target=wait_for_a)
    waiter.start()
    assert len(registry) == 1

    release.set()
    holder.join(5)
    waiter.join(5)

    assert waited == [True]
    assert len(registry) == 0


def test_released_entries_are_dropped() -> None:
    registry = AccountLockRegistry()

    for index in range(20):
        with registry.hold(f"acct-{index}", "shared"):
            pass

    assert len(registry) == 0
