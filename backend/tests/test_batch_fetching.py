"""Tests for batch_fetching.py."""

import asyncio

import pytest

import batch_fetching
from models import GeoPoint, MatchedImage, SamplingPoint


def _points(n: int) -> list[SamplingPoint]:
    return [
        SamplingPoint(coordinate=GeoPoint(lat=10.0 + i * 0.001, lng=20.0), bearing=0.0)
        for i in range(n)
    ]


def _image_for(point: SamplingPoint) -> MatchedImage:
    return MatchedImage(
        id=f"{point.coordinate.lat:.3f}",
        thumb_url="https://images.example/t.jpg",
        coordinate=point.coordinate,
        compass_angle=0.0,
    )


class _TrackingMatcher:
    """Records concurrency and answers some points with None."""

    def __init__(self, skip_every: int = 0):
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = 0
        self._skip_every = skip_every

    async def match(self, point: SamplingPoint):
        self.calls += 1
        index = self.calls
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        # Later points finish first to prove ordering does not depend on timing.
        await asyncio.sleep(0.001 * (1 / index))
        self.in_flight -= 1
        if self._skip_every and index % self._skip_every == 0:
            return None
        return _image_for(point)


async def _collect(generator):
    return [batch async for batch in generator]


@pytest.mark.asyncio
async def test_groups_preserve_input_order(clock):
    points = _points(25)
    matcher = _TrackingMatcher(skip_every=4)

    batches = await _collect(
        batch_fetching.fetch_batched(points, matcher.match, 10, sleep=clock.sleep)
    )

    assert [len(b) for b in batches] == [10, 10, 5]
    flat = [r for batch in batches for r in batch]
    assert len(flat) == len(points)
    for i, (point, result) in enumerate(zip(points, flat)):
        if (i + 1) % 4 == 0:
            assert result is None
        else:
            assert result.coordinate == point.coordinate


@pytest.mark.asyncio
async def test_in_flight_requests_bounded_by_batch_size(clock):
    matcher = _TrackingMatcher()
    await _collect(
        batch_fetching.fetch_batched(_points(23), matcher.match, 5, sleep=clock.sleep)
    )
    assert matcher.max_in_flight == 5
    assert matcher.calls == 23


@pytest.mark.asyncio
async def test_pacing_between_groups_only(clock):
    await _collect(
        batch_fetching.fetch_batched(
            _points(30), _TrackingMatcher().match, 10, sleep=clock.sleep
        )
    )
    assert clock.sleeps == [0.5, 0.5]


@pytest.mark.asyncio
async def test_single_group_has_no_pacing(clock):
    await _collect(
        batch_fetching.fetch_batched(
            _points(4), _TrackingMatcher().match, 10, sleep=clock.sleep
        )
    )
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_empty_points_yield_nothing(clock):
    batches = await _collect(
        batch_fetching.fetch_batched([], _TrackingMatcher().match, sleep=clock.sleep)
    )
    assert batches == []


@pytest.mark.asyncio
async def test_generator_is_lazy(clock):
    matcher = _TrackingMatcher()
    stream = batch_fetching.fetch_batched(_points(30), matcher.match, 10, sleep=clock.sleep)

    first = await stream.__anext__()
    await stream.aclose()

    assert len(first) == 10
    assert matcher.calls == 10
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_stop_during_pause_skips_next_group():
    matcher = _TrackingMatcher()
    stopped = False
    sleeps = []

    async def _stopping_sleep(seconds):
        nonlocal stopped
        sleeps.append(seconds)
        stopped = True

    batches = await _collect(
        batch_fetching.fetch_batched(
            _points(30),
            matcher.match,
            10,
            sleep=_stopping_sleep,
            should_continue=lambda: not stopped,
        )
    )

    assert [len(b) for b in batches] == [10]
    assert matcher.calls == 10
    assert sleeps == [0.5]


@pytest.mark.asyncio
async def test_invalid_batch_size_raises():
    with pytest.raises(ValueError, match="batch_size"):
        await _collect(batch_fetching.fetch_batched(_points(3), _TrackingMatcher().match, 0))
