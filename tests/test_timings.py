import pytest

from boxoffice.infra import timings
from boxoffice.infra.sql import async_url


@pytest.fixture(autouse=True)
def _clean():
    timings.reset()
    yield
    timings.reset()


async def test_timeit_records_even_on_error():
    async with timings.timeit("probe"):
        pass
    with pytest.raises(RuntimeError):
        async with timings.timeit("probe"):
            raise RuntimeError("boom")

    snap = timings.snapshot()
    assert snap["probe"]["n"] == 2


def test_snapshot_stats():
    for v in (0.001, 0.002, 0.003):
        timings.record_timing("op", v)

    s = timings.snapshot()["op"]

    assert s["n"] == 3
    assert s["mean_ms"] == 2.0
    assert s["p50_ms"] == 2.0
    assert s["max_ms"] == 3.0


def test_samples_are_bounded(monkeypatch):
    monkeypatch.setattr(timings, "MAX_SAMPLES", 3)
    for v in range(5):
        timings.record_timing("op", float(v))

    s = timings.snapshot()["op"]
    assert s["n"] == 3
    assert s["max_ms"] == 4000.0


@pytest.mark.parametrize("url,expected", [
    ("sqlite:///./x.db", "sqlite+aiosqlite:///./x.db"),
    ("postgres://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql://u@h/db", "postgresql+asyncpg://u@h/db"),
    ("postgresql+asyncpg://u@h/db", "postgresql+asyncpg://u@h/db"),
])
def test_async_url(url, expected):
    assert async_url(url) == expected
