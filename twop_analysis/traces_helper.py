import logging
from pathlib import Path

import h5py
import numpy as np
from scipy import sparse

from .acquisition import RoiSliceInfo


logger = logging.getLogger(__name__)

DEFAULT_ROI_GROUPS = tuple(range(1, 10))


def resolve_roi_list(slice_info: RoiSliceInfo, roi_groups=DEFAULT_ROI_GROUPS) -> list:
    """
    ROI numbers (1-based, ascending) whose grouping label is in ``roi_groups``.

    ``slice_info.grouping[i]`` is the label of ROI ``i + 1``.
    """
    roi_groups = set(int(g) for g in np.atleast_1d(roi_groups))
    return [i + 1 for i, label in enumerate(slice_info.grouping) if label in roi_groups]


def build_roi_mask(slice_info: RoiSliceInfo, roi_num: int, do_subtraction: bool = True) -> np.ndarray:
    """
    Weighting vector of one ROI over all pixels of the slice.

    ``+1/|body|`` on body pixels, ``-sub_coef/|neuropil|`` on neuropil pixels
    (only if ``do_subtraction`` and the ROI has a neuropil), 0 elsewhere.
    An ROI without body pixels gives an all-zero vector and a warning.
    Pixel indices outside ``0..n_pixels-1`` raise ``ValueError``.
    """
    if roi_num not in slice_info.rois:
        raise KeyError(f"ROI {roi_num} has a grouping label but no definition")
    roi = slice_info.rois[roi_num]

    n_pixels = slice_info.n_pixels
    for ind in (roi.ind_body, roi.ind_neuropil):
        if ind.size and (ind.min() < 0 or ind.max() >= n_pixels):
            raise ValueError(f"ROI {roi_num} has pixel indices outside 0..{n_pixels - 1}")

    mask = np.zeros(n_pixels, dtype=np.float64)

    if roi.ind_body.size == 0:
        logger.warning(f"ROI {roi_num} has an empty cell body; its trace will be all zeros.")
        return mask

    mask[roi.ind_body] = 1.0 / roi.ind_body.size
    if do_subtraction and roi.ind_neuropil.size:
        mask[roi.ind_neuropil] = -roi.sub_coef / roi.ind_neuropil.size
    return mask


def build_roi_matrix(slice_info: RoiSliceInfo, roi_list, do_subtraction: bool = True) -> sparse.csc_matrix:
    """
    Stack the masks of ``roi_list`` as columns of a sparse (n_pixels, n_rois) matrix.
    """
    n_pixels = slice_info.n_pixels
    rows, cols, vals = [], [], []

    for col, roi_num in enumerate(roi_list):
        mask = build_roi_mask(slice_info, roi_num, do_subtraction=do_subtraction)
        nz = np.flatnonzero(mask)
        rows.append(nz)
        cols.append(np.full(nz.size, col, dtype=np.int64))
        vals.append(mask[nz])

    if rows:
        rows = np.concatenate(rows)
        cols = np.concatenate(cols)
        vals = np.concatenate(vals)
    else:
        rows = cols = np.zeros(0, dtype=np.int64)
        vals = np.zeros(0, dtype=np.float64)

    return sparse.csc_matrix((vals, (rows, cols)), shape=(n_pixels, len(roi_list)), dtype=np.float64)


def movie_to_pixels_by_frames(movie: np.ndarray, shape) -> np.ndarray:
    """Reshape a (T, H, W) movie to (H*W, T), checking the frame shape against ``shape``."""
    movie = np.asarray(movie)
    if movie.ndim != 3 or tuple(movie.shape[1:]) != tuple(shape):
        raise ValueError(f"Movie frames of shape {movie.shape[1:]} do not match ROI grid {tuple(shape)}")
    return movie.reshape(movie.shape[0], -1).T


def save_traces(traces: np.ndarray, roi_list, output_path, save_as: str = "npy") -> Path:
    """
    Save a traces matrix (n_rois, n_frames).

    save_as : str
        "npy" (traces only, ROI numbers in ``<name>_rois.npy``), "txt"
        (first column holds the ROI number) or "h5" (``traces`` and
        ``roi_list`` datasets).

    Returns
    -------
    out_path : Path
    """
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    roi_list = np.asarray(roi_list, dtype=np.int64)

    if save_as == "npy":
        out_path = output_path.with_name(f"{output_path.name}.npy")
        np.save(out_path, traces)
        np.save(output_path.with_name(f"{output_path.name}_rois.npy"), roi_list)

    elif save_as == "txt":
        out_path = output_path.with_name(f"{output_path.name}.txt")
        np.savetxt(out_path, np.column_stack([roi_list, traces]) if traces.size else roi_list[:, None])

    elif save_as == "h5":
        out_path = output_path.with_name(f"{output_path.name}.h5")
        with h5py.File(out_path, "w") as h5:
            h5.create_dataset("traces", data=traces)
            h5.create_dataset("roi_list", data=roi_list)

    else:
        raise ValueError("save_as must be 'npy', 'txt' or 'h5'.")

    return out_path
