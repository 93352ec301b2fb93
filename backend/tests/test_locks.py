import threading

from mediaopt.locks import KeyedLock


def test_same_key_blocks_other_keys_do_not():
    locks = KeyedLock()
    first_holding = threading.Event()
    release_first = threading.Event()
    second_acquired = threading.Event()
    other_acquired = threading.Event()

    def hold_first():
        with locks.hold(1):
            first_holding.set()
            release_first.wait(timeout=5)

    def hold_same():
        with locks.hold(1):
            second_acquired.set()

    def hold_other():
        with locks.hold(2):
            other_acquired.set()

    first = threading.Thread(target=hold_first)
    first.start()
    assert first_holding.wait(timeout=5)

    same = threading.Thread(target=hold_same)
    other = threading.Thread(target=hold_other)
    same.start()
    other.start()

    assert other_acquired.wait(timeout=5)
    assert not second_acquired.wait(timeout=0.2)

    release_first.set()
    assert second_acquired.wait(timeout=5)
    for t in (first, same, other):
        t.join(timeout=5)


def test_entries_are_dropped_after_release():
    locks = KeyedLock()
    with locks.hold("a"):
        with locks.hold("b"):
            assert len(locks) == 2
        assert len(locks) == 1
    assert len(locks) == 0
