import logging

import numpy as np
from skimage.registration import phase_cross_correlation


logger = logging.getLogger(__name__)


def bin_spatial(mov: np.ndarray, bin_factor: int) -> np.ndarray:
    """
    Spatially bin a (T, H, W) movie by block averaging.

    Rows/columns that do not fill a complete ``bin_factor`` block are dropped.

    Returns:
        np.ndarray: (T, H // bin_factor, W // bin_factor) movie, same dtype
        family as float input.
    """
    bin_factor = int(bin_factor)
    if bin_factor <= 1:
        return mov

    T, H, W = mov.shape
    h, w = H // bin_factor, W // bin_factor
    if h == 0 or w == 0:
        raise ValueError(f"bin_factor={bin_factor} is larger than the frame size {H}x{W}")

    trimmed = mov[:, : h * bin_factor, : w * bin_factor]
    return trimmed.reshape(T, h, bin_factor, w, bin_factor).mean(axis=(2, 4)).astype(mov.dtype)


def estimate_line_shift(mov: np.ndarray, max_shift: int = 10) -> int:
    """
    Estimate the horizontal offset of odd scan lines relative to even ones.

    Bidirectional scanning shifts every other line by a few pixels. The
    mean image is split into even and odd lines and the column offset between
    the two half images is found by phase cross-correlation.
    """
    if mov.shape[1] < 2:
        return 0

    mean_img = mov.mean(axis=0)
    even = mean_img[0::2]
    odd = mean_img[1::2]
    n_rows = min(even.shape[0], odd.shape[0])

    shift = phase_cross_correlation(even[:n_rows], odd[:n_rows], upsample_factor=1)[0]
    col_shift = int(np.round(shift[-1]))

    if abs(col_shift) > max_shift:
        logger.warning(
            f"Line shift estimate {col_shift}px exceeds max_shift={max_shift}px; not correcting."
        )
        return 0
    return col_shift


def correct_line_shift(mov: np.ndarray, max_shift: int = 10) -> np.ndarray:
    """
    Compensate the alternating-line offset of a (T, H, W) movie.

    Odd lines are shifted horizontally to match even lines. Columns that are
    vacated by the shift are filled with the nearest valid column.
    """
    col_shift = estimate_line_shift(mov, max_shift=max_shift)
    if col_shift == 0:
        return mov

    logger.debug(f"Correcting line shift of {col_shift}px")
    corrected = mov.copy()
    odd = np.roll(mov[:, 1::2, :], col_shift, axis=2)
    if col_shift > 0:
        odd[:, :, :col_shift] = odd[:, :, col_shift : col_shift + 1]
    else:
        odd[:, :, col_shift:] = odd[:, :, col_shift - 1 : col_shift]
    corrected[:, 1::2, :] = odd
    return corrected
