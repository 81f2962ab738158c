"""
Motion correction stage for two-photon ScanImage acquisitions.

Every raw movie of an acquisition is loaded, binned (optional), line-shift
corrected, split into slices/channels, passed through the motion correction
function (``"identify"`` then ``"apply"``) and written as one int16 TIFF per
slice and channel:

    <write_dir>/<acq_name>_Slice01_Channel01_File001.tif
    ...

The reference movie is processed first so that correction functions can seed
their template from it. Corrected paths and movie sizes are recorded on the
acquisition, which is saved once all movies are done.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import numpy as np

from .IO import tiff_write
from .acquisition import Acquisition, save_acquisition
from .errors import ConfigurationError, MetadataParseError, WriteError
from .preprocess_helper import bin_spatial, correct_line_shift
from .scanimage import parse_scanimage_tiff

logger = logging.getLogger(__name__)

CORRECTED_SUBDIR = "Corrected"


def default_naming_function(acq_name: str, slice_num: int, channel_num: int, mov_num: int) -> str:
    return f"{acq_name}_Slice{slice_num:02d}_Channel{channel_num:02d}_File{mov_num:03d}.tif"


@dataclass(frozen=True)
class MotionConfig:
    write_dir: Optional[Path] = None
    write_retry_delay: float = 60.0     # seconds before the single write retry
    write_retries: int = 1
    write_dtype: str = "int16"
    raw_dtype: str = "float32"


def _cfg_from_dict(d: Dict[str, Any]) -> MotionConfig:
    write_dir = d.get("write_dir", None)
    return MotionConfig(
        write_dir=Path(write_dir) if write_dir else None,
        write_retry_delay=float(d.get("write_retry_delay", 60.0)),
        write_retries=int(d.get("write_retries", 1)),
        write_dtype=d.get("write_dtype", "int16"),
        raw_dtype=d.get("raw_dtype", "float32"),
    )


@dataclass(frozen=True)
class ResolvedMotionSettings:
    motion_correction_function: Callable
    naming_function: Callable
    write_dir: Path
    ref_mov_num: int


@dataclass(frozen=True)
class WriteResult:
    ok: bool
    attempts: int
    path: Optional[Path] = None
    error: Optional[BaseException] = None


def movie_order(n_movies: int, ref_mov_num: int) -> List[int]:
    """1..n_movies with the reference movie moved to the front."""
    if not 1 <= ref_mov_num <= n_movies:
        raise ConfigurationError(
            f"Motion correction reference movie {ref_mov_num} is not in 1..{n_movies}"
        )
    order = list(range(1, n_movies + 1))
    order.remove(ref_mov_num)
    return [ref_mov_num] + order


def resolve_motion_settings(
    acq: Acquisition,
    write_dir=None,
    motion_correction_function: Optional[Callable] = None,
    naming_function: Optional[Callable] = None,
) -> ResolvedMotionSettings:
    """
    Resolve and validate everything ``correct_motion`` needs, before any I/O.

    Mutates ``acq``: an explicit correction function replaces the stored one,
    an unset ``default_dir`` adopts the write directory and a single-movie
    acquisition gets movie 1 as reference.
    """
    if motion_correction_function is None and acq.motion_correction_function is None:
        raise ConfigurationError(
            "Function for correction not provided as argument or specified in acquisition"
        )
    if motion_correction_function is None:
        motion_correction_function = acq.motion_correction_function
    else:
        acq.motion_correction_function = motion_correction_function

    if naming_function is None:
        naming_function = acq.naming_function or default_naming_function

    if not acq.acq_name:
        raise ConfigurationError("Acquisition name unspecified")

    if write_dir is None:
        if acq.default_dir is None:
            raise ConfigurationError("Default directory unspecified")
        write_dir = Path(acq.default_dir) / CORRECTED_SUBDIR
    write_dir = Path(write_dir)

    if acq.default_dir is None:
        acq.default_dir = write_dir

    if acq.n_movies == 0:
        raise ConfigurationError(f"Acquisition '{acq.acq_name}' has no movies")

    if acq.motion_ref_mov_num is None:
        if acq.n_movies == 1:
            acq.motion_ref_mov_num = 1
        else:
            raise ConfigurationError("Motion correction reference not identified")

    if not 1 <= acq.motion_ref_mov_num <= acq.n_movies:
        raise ConfigurationError(
            f"Motion correction reference {acq.motion_ref_mov_num} is not in 1..{acq.n_movies}"
        )

    return ResolvedMotionSettings(
        motion_correction_function=motion_correction_function,
        naming_function=naming_function,
        write_dir=write_dir,
        ref_mov_num=int(acq.motion_ref_mov_num),
    )


def write_with_retry(
    movie: np.ndarray,
    file_name: str,
    write_dir: Path,
    dtype: str = "int16",
    retries: int = 1,
    delay: float = 60.0,
) -> WriteResult:
    """
    Write one movie, retrying ``retries`` times after ``delay`` seconds.

    Disk access occasionally fails on network shares; the retry absorbs that.
    Returns a ``WriteResult`` instead of raising.
    """
    error = None
    for attempt in range(1, retries + 2):
        try:
            path = tiff_write(movie, file_name, write_dir, dtype)
            return WriteResult(ok=True, attempts=attempt, path=path)
        except OSError as e:
            error = e
            logger.warning(f"[MOTION] Writing {file_name} failed (attempt {attempt}): {e}")
            if attempt <= retries:
                time.sleep(delay)
    return WriteResult(ok=False, attempts=retries + 1, error=error)


def correct_motion(
    acq: Acquisition,
    write_dir=None,
    motion_correction_function: Optional[Callable] = None,
    naming_function: Optional[Callable] = None,
    *,
    config: MotionConfig | None = None,
) -> Path:
    """
    Motion correct every movie of ``acq`` and write split slice/channel files.

    Parameters
    ----------
    acq : Acquisition
        Mutated in place: ``corrected_movies``, ``derived_data``, and possibly
        ``motion_correction_function``, ``default_dir``, ``motion_ref_mov_num``.
    write_dir : str or Path, optional
        Output directory. Defaults to ``<acq.default_dir>/Corrected``.
    motion_correction_function : callable, optional
        ``func(acq, movie_struct, metadata, mov_num, mode)``. Overrides and
        replaces ``acq.motion_correction_function``.
    naming_function : callable, optional
        ``func(acq_name, slice_num, channel_num, mov_num) -> file name``.
    config : MotionConfig, optional
        Retry and sample type settings.

    Returns
    -------
    Path of the saved acquisition file.

    Raises
    ------
    ConfigurationError, MetadataParseError, WriteError
    """
    config = config or MotionConfig()
    if write_dir is None:
        write_dir = config.write_dir

    settings = resolve_motion_settings(acq, write_dir, motion_correction_function, naming_function)
    correction = settings.motion_correction_function
    n_movies = acq.n_movies

    for mov_num in movie_order(n_movies, settings.ref_mov_num):
        logger.info(f"[MOTION] Loading movie #{mov_num:03d} of #{n_movies:03d}")
        mov, metadata = acq.read_raw(mov_num, np.dtype(config.raw_dtype))

        if acq.bin_factor > 1:
            mov = bin_spatial(mov, acq.bin_factor)

        logger.info(f"[MOTION] Line shift correcting movie #{mov_num:03d} of #{n_movies:03d}")
        mov = correct_line_shift(mov)

        try:
            movie_struct, n_slices, n_channels = parse_scanimage_tiff(mov, metadata)
        except MetadataParseError:
            raise
        except Exception as e:
            raise MetadataParseError(
                f"Failed to parse scan metadata of movie {mov_num} ({acq.movies[mov_num - 1]})"
            ) from e
        del mov

        logger.info(f"[MOTION] Identifying motion correction for movie #{mov_num:03d} of #{n_movies:03d}")
        correction(acq, movie_struct, metadata, mov_num, "identify")

        logger.info(f"[MOTION] Applying motion correction for movie #{mov_num:03d} of #{n_movies:03d}")
        movie_struct = correction(acq, movie_struct, metadata, mov_num, "apply")

        for slice_num in range(1, n_slices + 1):
            for channel_num in range(1, n_channels + 1):
                file_name = settings.naming_function(acq.acq_name, slice_num, channel_num, mov_num)
                acq.corrected_movies.setdefault((slice_num, channel_num), {})[mov_num] = (
                    settings.write_dir / file_name
                )

                logger.info(f"[MOTION] Writing movie #{mov_num:03d} of #{n_movies:03d} → {file_name}")
                result = write_with_retry(
                    movie_struct[(slice_num, channel_num)],
                    file_name,
                    settings.write_dir,
                    dtype=config.write_dtype,
                    retries=config.write_retries,
                    delay=config.write_retry_delay,
                )
                if not result.ok:
                    raise WriteError(
                        f"Could not write {settings.write_dir / file_name} "
                        f"after {result.attempts} attempts"
                    ) from result.error

        # same for all slices and channels of a movie
        acq.derived_data.setdefault(mov_num, {})["size"] = tuple(
            int(v) for v in movie_struct[(n_slices, n_channels)].shape
        )
        del movie_struct

    saved_path = save_acquisition(acq)
    logger.info("[MOTION] Motion correction completed!")
    return saved_path
