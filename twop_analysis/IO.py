import logging
from pathlib import Path

import numpy as np

try:
    import tifffile
except Exception as e:  # pragma: no cover
    raise ImportError("Please install 'tifffile' (pip install tifffile).") from e

from .scanimage import parse_scanimage_metadata


logger = logging.getLogger(__name__)


def _as_stack(arr: np.ndarray, path) -> np.ndarray:
    if arr.ndim == 2:
        return arr[np.newaxis]
    if arr.ndim < 2:
        raise ValueError(f"Expected TIFF stack (t, y, x), got shape={arr.shape} at {path}")
    # ScanImage files are sometimes reported as (t, z, c, y, x); keep acquisition order
    return arr.reshape(-1, *arr.shape[-2:])


def read_raw(path, dtype=np.float32):
    """
    Load one raw ScanImage TIFF and its header.

    Parameters
    ----------
    path : str or Path
        Multipage TIFF written by ScanImage (or any multipage TIFF).
    dtype : numpy dtype
        Sample type of the returned movie.

    Returns
    -------
    movie : np.ndarray
        (n_frames, height, width) in acquisition order (slices/channels interleaved).
    metadata : dict
        Flat ``key -> value`` dict parsed from the ScanImage header. Empty
        if the file carries no header.
    """
    path = Path(path)
    logger.info(f"Loading raw movie from: {path}")

    metadata = {}
    with tifffile.TiffFile(str(path)) as tif:
        movie = _as_stack(tif.asarray(), path)

        description = tif.pages[0].description or ""
        metadata.update(parse_scanimage_metadata(description))

        # ScanImage 2016+ stores the header in its own block
        if tif.is_scanimage:
            si_meta = tif.scanimage_metadata or {}
            metadata.update(si_meta.get("FrameData", {}))

    return movie.astype(dtype, copy=False), metadata


def read_corrected(path, dtype=np.float64) -> np.ndarray:
    """Load one motion corrected (single slice/channel) TIFF as (t, y, x)."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Corrected movie does not exist: {path}")
    movie = _as_stack(tifffile.imread(str(path)), path)
    return movie.astype(dtype, copy=False)


def tiff_write(movie: np.ndarray, file_name: str, write_dir, dtype="int16") -> Path:
    """
    Write a (t, y, x) movie as a multipage TIFF.

    Values are rounded and clipped to the range of ``dtype`` before casting
    so that out-of-range samples saturate instead of wrapping.

    Returns
    -------
    out_path : Path
        Full path of the written file.
    """
    write_dir = Path(write_dir)
    write_dir.mkdir(parents=True, exist_ok=True)
    out_path = write_dir / file_name

    dtype = np.dtype(dtype)
    data = np.asarray(movie)
    if np.issubdtype(dtype, np.integer):
        info = np.iinfo(dtype)
        data = np.clip(np.round(np.nan_to_num(data)), info.min, info.max)
    data = data.astype(dtype)

    tifffile.imwrite(str(out_path), data, photometric="minisblack")
    return out_path
