"""
Acquisition state shared by the motion correction and trace extraction stages.

An ``Acquisition`` holds the configuration of one imaging session (raw movie
list, correction function, reference movie, output directory) together with
the results written back by ``correct_motion`` (corrected file paths, movie
dimensions, motion shifts). It is persisted as

    <default_dir>/<acq_name>.yaml          # everything but arrays
    <default_dir>/<acq_name>_shifts.h5     # motion shifts, if any
"""

from __future__ import annotations

import importlib
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import h5py
import numpy as np
import yaml

from .IO import read_corrected, read_raw

logger = logging.getLogger(__name__)


# --------------------------------------------------
# ROI definitions
# --------------------------------------------------

@dataclass
class RoiDefinition:
    """
    One ROI on a slice.

    ``ind_body`` and ``ind_neuropil`` are 0-based flat pixel indices into the
    slice grid (C order). They must be disjoint.
    """

    ind_body: np.ndarray
    ind_neuropil: np.ndarray = field(default_factory=lambda: np.zeros(0, dtype=np.int64))
    sub_coef: float = 0.0

    def __post_init__(self):
        self.ind_body = np.asarray(self.ind_body, dtype=np.int64).ravel()
        self.ind_neuropil = np.asarray(self.ind_neuropil, dtype=np.int64).ravel()
        self.sub_coef = float(self.sub_coef)
        if np.intersect1d(self.ind_body, self.ind_neuropil).size:
            raise ValueError("ROI body and neuropil pixel sets must be disjoint.")


@dataclass
class RoiSliceInfo:
    """ROIs of one slice: grid shape, group label per ROI, and ROI definitions by number."""

    shape: Tuple[int, int]
    grouping: List[int] = field(default_factory=list)
    rois: Dict[int, RoiDefinition] = field(default_factory=dict)

    def __post_init__(self):
        self.shape = tuple(int(s) for s in self.shape)
        self.grouping = [int(g) for g in self.grouping]

    @property
    def n_pixels(self) -> int:
        return int(np.prod(self.shape))


def _roi_slice_to_dict(info: RoiSliceInfo) -> dict:
    return {
        "shape": list(info.shape),
        "grouping": list(info.grouping),
        "rois": {
            int(num): {
                "ind_body": roi.ind_body.tolist(),
                "ind_neuropil": roi.ind_neuropil.tolist(),
                "sub_coef": roi.sub_coef,
            }
            for num, roi in info.rois.items()
        },
    }


def _roi_slice_from_dict(d: Dict[str, Any]) -> RoiSliceInfo:
    return RoiSliceInfo(
        shape=d["shape"],
        grouping=d.get("grouping", []),
        rois={
            int(num): RoiDefinition(
                ind_body=r.get("ind_body", []),
                ind_neuropil=r.get("ind_neuropil", []),
                sub_coef=r.get("sub_coef", 0.0),
            )
            for num, r in d.get("rois", {}).items()
        },
    )


def save_roi_info(roi_info: Dict[int, RoiSliceInfo], output_path) -> Path:
    """Save ROI definitions of all slices to a JSON file."""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    payload = {"slices": {str(s): _roi_slice_to_dict(info) for s, info in roi_info.items()}}
    with open(output_path, "w") as f:
        json.dump(payload, f, indent=2)
    return output_path


def load_roi_info(path) -> Dict[int, RoiSliceInfo]:
    """
    Load ROI definitions written by ``save_roi_info``.

    Returns
    -------
    roi_info : dict
        slice number -> RoiSliceInfo
    """
    path = Path(path)
    with open(path, "r") as f:
        payload = json.load(f)
    return {int(s): _roi_slice_from_dict(d) for s, d in payload["slices"].items()}


# --------------------------------------------------
# Acquisition
# --------------------------------------------------

@dataclass
class Acquisition:
    acq_name: str = ""
    movies: List[Path] = field(default_factory=list)
    motion_correction_function: Optional[Callable] = None
    motion_ref_mov_num: Optional[int] = None
    default_dir: Optional[Path] = None
    bin_factor: int = 1
    naming_function: Optional[Callable] = None
    # (slice, channel) -> movie number -> corrected file path
    corrected_movies: Dict[Tuple[int, int], Dict[int, Path]] = field(default_factory=dict)
    # movie number -> {"size": (n_frames, height, width)}
    derived_data: Dict[int, Dict[str, Any]] = field(default_factory=dict)
    roi_info: Dict[int, RoiSliceInfo] = field(default_factory=dict)
    # movie number -> slice number -> (n_frames, 2) [row_shift, col_shift]
    shifts: Dict[int, Dict[int, np.ndarray]] = field(default_factory=dict)

    def __post_init__(self):
        self.movies = [Path(m) for m in self.movies]
        if self.default_dir is not None:
            self.default_dir = Path(self.default_dir)

    @property
    def n_movies(self) -> int:
        return len(self.movies)

    def read_raw(self, mov_num: int, dtype=np.float32):
        """Load raw movie ``mov_num`` (1-based) and its scan metadata."""
        return read_raw(self.movies[mov_num - 1], dtype=dtype)

    def corrected_path(self, mov_num: int, slice_num: int = 1, channel_num: int = 1) -> Path:
        try:
            return Path(self.corrected_movies[(slice_num, channel_num)][mov_num])
        except KeyError:
            raise KeyError(
                f"No corrected movie recorded for movie {mov_num}, "
                f"slice {slice_num}, channel {channel_num}"
            ) from None

    def read_cor(self, mov_num: int, slice_num: int = 1, channel_num: int = 1, dtype=np.float64):
        """Load the corrected movie for one movie/slice/channel."""
        return read_corrected(self.corrected_path(mov_num, slice_num, channel_num), dtype=dtype)


# --------------------------------------------------
# Persistence
# --------------------------------------------------

def callable_to_ref(func) -> Optional[dict]:
    """
    Describe a callable by import path so it can be written to YAML.

    ``MotionCorrector`` instances also store their constructor parameters.
    Lambdas and nested functions cannot be re-imported and are dropped.
    """
    if func is None:
        return None

    if hasattr(func, "get_params"):
        cls = type(func)
        return {"ref": f"{cls.__module__}:{cls.__qualname__}", "params": func.get_params()}

    qualname = getattr(func, "__qualname__", "")
    module = getattr(func, "__module__", None)
    if not module or not qualname or "<" in qualname:
        logger.warning(f"Cannot persist callable {func!r}; it will not be restored on load.")
        return None
    return {"ref": f"{module}:{qualname}"}


def callable_from_ref(ref: Optional[dict]):
    if not ref:
        return None
    module_name, qualname = ref["ref"].split(":", 1)
    obj = importlib.import_module(module_name)
    for attr in qualname.split("."):
        obj = getattr(obj, attr)
    if "params" in ref:
        return obj(**(ref["params"] or {}))
    return obj


def acquisition_to_dict(acq: Acquisition) -> dict:
    return {
        "acq_name": acq.acq_name,
        "movies": [str(m) for m in acq.movies],
        "default_dir": str(acq.default_dir) if acq.default_dir is not None else None,
        "bin_factor": int(acq.bin_factor),
        "motion_ref_mov_num": acq.motion_ref_mov_num,
        "motion_correction_function": callable_to_ref(acq.motion_correction_function),
        "naming_function": callable_to_ref(acq.naming_function),
        "corrected_movies": [
            {
                "slice": int(s),
                "channel": int(c),
                "files": {int(m): str(p) for m, p in files.items()},
            }
            for (s, c), files in acq.corrected_movies.items()
        ],
        "derived_data": {
            int(m): {"size": [int(v) for v in d["size"]]} for m, d in acq.derived_data.items()
        },
        "roi_info": {int(s): _roi_slice_to_dict(info) for s, info in acq.roi_info.items()},
    }


def acquisition_from_dict(d: Dict[str, Any]) -> Acquisition:
    corrected = {}
    for entry in d.get("corrected_movies") or []:
        corrected[(int(entry["slice"]), int(entry["channel"]))] = {
            int(m): Path(p) for m, p in entry["files"].items()
        }

    return Acquisition(
        acq_name=d.get("acq_name", ""),
        movies=d.get("movies") or [],
        motion_correction_function=callable_from_ref(d.get("motion_correction_function")),
        motion_ref_mov_num=d.get("motion_ref_mov_num"),
        default_dir=d.get("default_dir"),
        bin_factor=int(d.get("bin_factor", 1)),
        naming_function=callable_from_ref(d.get("naming_function")),
        corrected_movies=corrected,
        derived_data={
            int(m): {"size": tuple(v["size"])} for m, v in (d.get("derived_data") or {}).items()
        },
        roi_info={int(s): _roi_slice_from_dict(v) for s, v in (d.get("roi_info") or {}).items()},
    )


def _shifts_path(yaml_path: Path) -> Path:
    return yaml_path.with_name(f"{yaml_path.stem}_shifts.h5")


def save_acquisition(acq: Acquisition, output_path=None) -> Path:
    """
    Write the acquisition to ``<default_dir>/<acq_name>.yaml``.

    Motion shifts, if present, go to a sibling ``_shifts.h5`` file.
    """
    if output_path is None:
        if acq.default_dir is None or not acq.acq_name:
            raise ValueError("Acquisition needs default_dir and acq_name to be saved.")
        output_path = Path(acq.default_dir) / f"{acq.acq_name}.yaml"
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w") as f:
        yaml.safe_dump(acquisition_to_dict(acq), f, sort_keys=False)

    if acq.shifts:
        with h5py.File(_shifts_path(output_path), "w") as h5:
            for mov_num, per_slice in acq.shifts.items():
                grp = h5.create_group(f"movie_{int(mov_num):03d}")
                for slice_num, shifts in per_slice.items():
                    grp.create_dataset(f"slice_{int(slice_num):02d}", data=np.asarray(shifts))

    logger.info(f"Saved acquisition '{acq.acq_name}' to {output_path}")
    return output_path


def load_acquisition(path) -> Acquisition:
    path = Path(path)
    with path.open("r") as f:
        acq = acquisition_from_dict(yaml.safe_load(f))

    shifts_path = _shifts_path(path)
    if shifts_path.exists():
        with h5py.File(shifts_path, "r") as h5:
            for mov_key, grp in h5.items():
                mov_num = int(mov_key.split("_")[1])
                acq.shifts[mov_num] = {
                    int(slice_key.split("_")[1]): np.array(ds) for slice_key, ds in grp.items()
                }
    return acq
