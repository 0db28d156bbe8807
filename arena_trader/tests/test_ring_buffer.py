import pytest

from arena_trader.ring_buffer import RingBuffer


def test_fill_and_push():
    buf = RingBuffer(3, fill=500.0)
    assert buf.snapshot() == [500.0, 500.0, 500.0]

    buf.push(510.0)
    assert buf.snapshot() == [500.0, 500.0, 510.0]
    assert buf.oldest() == 500.0
    assert buf.newest() == 510.0
    assert len(buf) == 3


def test_initial_longer_than_capacity_keeps_newest():
    buf = RingBuffer(2, initial=[1, 2, 3])
    assert buf.snapshot() == [2, 3]
    assert list(buf) == [2, 3]


def test_snapshot_is_a_copy():
    buf = RingBuffer(2, initial=[1])
    snap = buf.snapshot()
    snap.append(99)
    assert buf.snapshot() == [1]


def test_empty_buffer():
    buf = RingBuffer(4)
    assert buf.oldest() is None
    assert buf.newest() is None
    assert len(buf) == 0


def test_capacity_must_be_positive():
    with pytest.raises(ValueError):
        RingBuffer(0)
