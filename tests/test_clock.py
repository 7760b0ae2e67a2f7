from clock import LogicalClock, process_clock


def test_advance_without_peer_value_increments():
    clock = LogicalClock()
    assert clock.value == 0
    assert clock.advance() == 1
    assert clock.advance() == 2
    assert clock.value == 2


def test_advance_takes_max_of_local_and_received():
    clock = LogicalClock(5)
    assert clock.advance(10) == 11
    assert clock.advance(3) == 12
    assert clock.advance("40") == 41


def test_process_clock_never_goes_backwards():
    before = process_clock.value
    after = process_clock.advance(0)
    assert after > before
