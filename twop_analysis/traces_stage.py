from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional, Sequence, Tuple

import numpy as np

from .acquisition import Acquisition
from .traces_helper import (
    DEFAULT_ROI_GROUPS,
    build_roi_matrix,
    movie_to_pixels_by_frames,
    resolve_roi_list,
    save_traces,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TraceConfig:
    roi_groups: Tuple[int, ...] = DEFAULT_ROI_GROUPS
    mov_nums: Optional[Tuple[int, ...]] = None          # None: every corrected movie
    slice_num: int = 1
    channel_num: int = 1
    do_subtraction: bool = True
    trace_basename: str = "roi_traces"
    save_format: str = "npy"


def _cfg_from_dict(d: Dict[str, Any]) -> TraceConfig:
    mov_nums = d.get("mov_nums", None)
    return TraceConfig(
        roi_groups=tuple(int(g) for g in d.get("roi_groups", DEFAULT_ROI_GROUPS)),
        mov_nums=tuple(int(m) for m in mov_nums) if mov_nums else None,
        slice_num=int(d.get("slice_num", 1)),
        channel_num=int(d.get("channel_num", 1)),
        do_subtraction=bool(d.get("do_subtraction", True)),
        trace_basename=d.get("trace_basename", "roi_traces"),
        save_format=d.get("save_format", "npy"),
    )


def extract_roi_traces(
    acq: Acquisition,
    roi_groups: Sequence[int] | None = None,
    mov_nums: Sequence[int] | None = None,
    slice_num: int = 1,
    channel_num: int = 1,
    do_subtraction: bool = True,
):
    """
    Extract ROI fluorescence traces from motion corrected movies.

    Movies are loaded one at a time, reshaped to (pixels, frames) and
    projected onto the ROI weighting matrix; the results are concatenated
    along the frame axis.

    Parameters
    ----------
    acq : Acquisition
        Needs ``roi_info[slice_num]`` and corrected movie paths. Not modified.
    roi_groups : sequence of int, optional
        Grouping labels to extract. Defaults to 1..9.
    mov_nums : sequence of int, optional
        Movie numbers to use. Defaults to every movie with a corrected file
        for this slice/channel.
    slice_num, channel_num : int
    do_subtraction : bool
        Subtract the scaled neuropil signal for ROIs that have one.

    Returns
    -------
    traces : ndarray
        (n_rois, n_frames) float64.
    roi_list : list of int
        ROI numbers, one per row of ``traces``.
    roi_mat : scipy.sparse.csc_matrix
        (n_pixels, n_rois) weighting matrix.
    """
    if roi_groups is None:
        roi_groups = DEFAULT_ROI_GROUPS
    if mov_nums is None:
        mov_nums = sorted(acq.corrected_movies.get((slice_num, channel_num), {}))

    if slice_num not in acq.roi_info:
        raise KeyError(f"No ROI information for slice {slice_num}")
    slice_info = acq.roi_info[slice_num]

    roi_list = resolve_roi_list(slice_info, roi_groups)
    roi_mat = build_roi_matrix(slice_info, roi_list, do_subtraction=do_subtraction)
    roi_mat_t = roi_mat.T.tocsr()

    traces = [np.zeros((len(roi_list), 0), dtype=np.float64)]
    for i, mov_num in enumerate(mov_nums, start=1):
        logger.info(f"[TRACES] Loading movie {i:03d} of {len(mov_nums):03d}")
        mov = acq.read_cor(mov_num, slice_num, channel_num, np.float64)
        mov = movie_to_pixels_by_frames(mov, slice_info.shape)
        traces.append(np.asarray(roi_mat_t @ mov, dtype=np.float64))
        del mov

    return np.concatenate(traces, axis=1), roi_list, roi_mat


def run_traces_stage(acq: Acquisition, cfg: Dict[str, Any] | None = None, output_dir=None) -> Path:
    """
    Extract traces with the settings from the ``traces`` config section and save them.

    Files go to ``output_dir`` (default ``<acq.default_dir>``) as
    ``<acq_name>_<trace_basename>_Slice01_Channel01.<ext>``.
    """
    tc = _cfg_from_dict(cfg or {})

    traces, roi_list, _ = extract_roi_traces(
        acq,
        roi_groups=tc.roi_groups,
        mov_nums=tc.mov_nums,
        slice_num=tc.slice_num,
        channel_num=tc.channel_num,
        do_subtraction=tc.do_subtraction,
    )

    if output_dir is None:
        if acq.default_dir is None:
            raise ValueError("No output_dir given and acquisition has no default_dir.")
        output_dir = acq.default_dir

    name = f"{acq.acq_name}_{tc.trace_basename}_Slice{tc.slice_num:02d}_Channel{tc.channel_num:02d}"
    out_path = save_traces(traces, roi_list, Path(output_dir) / name, save_as=tc.save_format)
    logger.info(f"[TRACES] {len(roi_list)} ROI(s) x {traces.shape[1]} frames saved → {out_path}")
    return out_path
