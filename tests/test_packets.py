import threading
import time

import pytest

from tlc.cal import PacketCache, TLCError, VideoError


def test_append_is_bounded():
    cache = PacketCache()
    cache.reset(2)
    cache.append('a')
    cache.append('b')
    with pytest.raises(IndexError):
        cache.append('c')
    assert len(cache) == 2
    assert cache[1] == 'b'


def test_wait_beyond_capacity():
    cache = PacketCache()
    cache.reset(3)
    with pytest.raises(IndexError):
        cache.wait_for(4)


def test_wait_for_producer():
    cache = PacketCache()
    cache.reset(5)

    def produce():
        for i in range(5):
            time.sleep(0.01)
            cache.append(i)

    producer = threading.Thread(target=produce)
    producer.start()
    cache.wait_for(3)
    assert len(cache) >= 3
    assert cache.slice(0, 3) == [0, 1, 2]
    producer.join()
    cache.wait_for(5)
    assert cache.slice(3, 10) == [3, 4]


def test_wait_timeout():
    cache = PacketCache()
    cache.reset(2)
    cache.append('a')
    with pytest.raises(TimeoutError):
        cache.wait_for(2, timeout=0.05)


def test_producer_error_reaches_waiters():
    cache = PacketCache()
    cache.reset(10)
    cache.append('a')
    errors = []

    def consume():
        try:
            cache.wait_for(5)
        except TLCError as err:
            errors.append(err)

    consumer = threading.Thread(target=consume)
    consumer.start()
    time.sleep(0.02)
    cache.fail(VideoError("End of stream after 1 of 10 frames", "case.avi"))
    consumer.join(timeout=5)

    assert len(errors) == 1
    assert isinstance(errors[0], VideoError)
    # the stored prefix stays available
    cache.wait_for(1)


def test_foreign_error_is_wrapped():
    cache = PacketCache()
    cache.reset(2)
    cache.fail(OSError("disk gone"))
    with pytest.raises(TLCError) as excinfo:
        cache.wait_for(1)
    assert isinstance(excinfo.value.__cause__, OSError)


def test_clear_releases_waiters():
    cache = PacketCache()
    cache.reset(3)
    errors = []

    def consume():
        try:
            cache.wait_for(3)
        except TLCError as err:
            errors.append(err)

    consumer = threading.Thread(target=consume)
    consumer.start()
    time.sleep(0.02)
    cache.clear()
    consumer.join(timeout=5)

    assert len(errors) == 1
    assert len(cache) == 0
    assert cache.capacity == 0


def test_reset_forgets_previous_fill():
    cache = PacketCache()
    cache.reset(1)
    cache.fail(VideoError("broken"))
    cache.reset(2)
    cache.append('a')
    cache.wait_for(1)
    assert cache.slice(0, 2) == ['a']
