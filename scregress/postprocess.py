"""
Residual post-processing: clipping and the UMI shift/log1p transform.
"""

import numpy as np
import pandas as pd

from .classes import InvalidArgumentError


def validate_clip_range(clip_range):
    """Return ``(lo, hi)`` as floats, or raise for a malformed range."""
    try:
        lo, hi = clip_range
        lo = float(lo)
        hi = float(hi)
    except (TypeError, ValueError):
        raise InvalidArgumentError(
            "clip_range must be a pair of numbers (lo, hi)") from None
    if np.isnan(lo) or np.isnan(hi):
        raise InvalidArgumentError("clip_range must not contain NaN")
    if lo > hi:
        raise InvalidArgumentError(f"clip_range lower bound {lo} exceeds upper bound {hi}")
    return lo, hi


def clip_residuals(resid, clip_range):
    """Clamp every entry of ``resid`` into ``clip_range``, in place.

    Parameters
    ----------
    resid : DataFrame or ndarray
        Residual matrix (genes x cells).
    clip_range : pair of float
        Inclusive ``(lo, hi)``.

    Returns
    -------
    The same object, clipped.
    """
    lo, hi = validate_clip_range(clip_range)
    if isinstance(resid, pd.DataFrame):
        resid.clip(lower=lo, upper=hi, inplace=True)
        return resid
    np.clip(resid, lo, hi, out=resid)
    return resid


def shift_log1p(resid):
    """Subtract each row's minimum, then apply ``log1p``.

    Every value becomes non-negative; labels are kept.
    """
    if isinstance(resid, pd.DataFrame):
        return np.log1p(resid.sub(resid.min(axis=1), axis=0))
    resid = np.asarray(resid, dtype=np.float64)
    return np.log1p(resid - resid.min(axis=1, keepdims=True))


def postprocess_residuals(resid, clip_range=None, use_umi=False):
    """Clip (when ``clip_range`` is given), then shift/log1p for UMI data."""
    if clip_range is not None:
        resid = clip_residuals(resid, clip_range)
    if use_umi:
        resid = shift_log1p(resid)
    return resid
