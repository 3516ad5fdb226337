# File: src/om_analysis/cache.py

import logging
from pathlib import Path
from typing import Any, Callable, Optional

import joblib

logger = logging.getLogger(__name__)


def cached_call(
    cache_dir: Path,
    name: str,
    func: Callable[..., Any],
    *args: Any,
    force_recompute: bool = False,
    **kwargs: Any,
) -> Any:
    """
    Calls `func(*args, **kwargs)` once and memoizes the result on disk.

    The cache file name combines `name` with a content hash of the arguments,
    so any change to the inputs or parameters produces a new artifact instead
    of silently reusing a stale one.

    Args:
        cache_dir: Directory holding the cached artifacts.
        name: Prefix identifying the computation.
        func: The function to call on a cache miss.
        force_recompute: If True, recomputes and overwrites an existing artifact.

    Returns:
        The (possibly cached) return value of `func`.
    """
    cache_dir.mkdir(parents=True, exist_ok=True)
    key = joblib.hash((args, sorted(kwargs.items())))
    cache_path = cache_dir / f"{name}_{key}.joblib"

    if cache_path.exists() and not force_recompute:
        logger.info(f"Loading cached {name} from {cache_path}")
        return joblib.load(cache_path)

    logger.info(f"Computing {name}...")
    result = func(*args, **kwargs)
    joblib.dump(result, cache_path)
    logger.info(f"Saved computed {name} to {cache_path}")

    return result


def clear_cache(cache_dir: Path, name: Optional[str] = None) -> int:
    """Deletes cached artifacts (all, or only those for `name`). Returns the count removed."""
    if not cache_dir.exists():
        return 0

    pattern = f"{name}_*.joblib" if name is not None else "*.joblib"
    removed = 0
    for path in cache_dir.glob(pattern):
        path.unlink()
        removed += 1

    logger.info(f"Removed {removed} cached artifact(s) from {cache_dir}")
    return removed
