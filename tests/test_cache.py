import logging

import numpy as np
import pandas as pd

from om_analysis.cache import cached_call, clear_cache


class CallCounter:
    """Wraps a function and counts how often it actually runs."""

    def __init__(self, func):
        self.func = func
        self.calls = 0

    def __call__(self, *args, **kwargs):
        self.calls += 1
        return self.func(*args, **kwargs)


def scale(frame, factor=1.0):
    return frame * factor


def test_cached_call_computes_then_loads(tmp_path, caplog):
    frame = pd.DataFrame({"a": [1.0, 2.0]})
    func = CallCounter(scale)

    with caplog.at_level(logging.INFO, logger="om_analysis.cache"):
        first = cached_call(tmp_path, "scaled", func, frame, factor=2.0)
        assert "Computing scaled..." in caplog.text
        assert "Saved computed scaled to" in caplog.text

        caplog.clear()
        second = cached_call(tmp_path, "scaled", func, frame, factor=2.0)
        assert "Loading cached scaled from" in caplog.text

    assert func.calls == 1
    pd.testing.assert_frame_equal(first, second)


def test_cache_key_depends_on_content(tmp_path):
    func = CallCounter(scale)

    cached_call(tmp_path, "scaled", func, pd.DataFrame({"a": [1.0]}), factor=2.0)
    cached_call(tmp_path, "scaled", func, pd.DataFrame({"a": [5.0]}), factor=2.0)
    cached_call(tmp_path, "scaled", func, pd.DataFrame({"a": [5.0]}), factor=3.0)

    assert func.calls == 3
    assert len(list(tmp_path.glob("scaled_*.joblib"))) == 3


def test_force_recompute(tmp_path):
    func = CallCounter(scale)
    values = np.arange(3.0)

    cached_call(tmp_path, "scaled", func, values)
    result = cached_call(tmp_path, "scaled", func, values, force_recompute=True)

    assert func.calls == 2
    np.testing.assert_array_equal(result, values)


def test_cached_call_creates_cache_dir(tmp_path):
    cache_dir = tmp_path / "nested" / "cache"
    assert not cache_dir.exists()

    cached_call(cache_dir, "scaled", scale, np.ones(2))

    assert cache_dir.exists()


def test_clear_cache(tmp_path):
    cached_call(tmp_path, "first", scale, np.ones(2))
    cached_call(tmp_path, "second", scale, np.ones(2))

    assert clear_cache(tmp_path, "first") == 1
    assert [p.name.split("_")[0] for p in tmp_path.glob("*.joblib")] == ["second"]
    assert clear_cache(tmp_path) == 1
    assert clear_cache(tmp_path / "missing") == 0
