import numpy as np
import pytest
import tifffile

from twop_analysis.acquisition import Acquisition, RoiDefinition, RoiSliceInfo


def write_raw_movie(path, movie, n_slices=1, n_channels=1):
    """Write an interleaved (t, y, x) movie with a minimal scan header."""
    description = f"num_slices = {n_slices}\nnum_channels = {n_channels}\n"
    tifffile.imwrite(
        str(path), movie.astype(np.int16), description=description, metadata=None,
        photometric="minisblack",
    )
    return path


@pytest.fixture
def raw_acquisition(tmp_path):
    """Factory for an acquisition whose raw movies exist on disk."""

    def _make(n_movies=3, n_slices=1, n_channels=1, n_volumes=4, shape=(8, 8), **kwargs):
        raw_dir = tmp_path / "raw"
        raw_dir.mkdir(exist_ok=True)
        rng = np.random.default_rng(0)

        movies = []
        for mov_num in range(1, n_movies + 1):
            n_frames = n_volumes * n_slices * n_channels
            movie = rng.integers(0, 1000, size=(n_frames, *shape))
            movies.append(
                write_raw_movie(raw_dir / f"raw_{mov_num:05d}.tif", movie, n_slices, n_channels)
            )

        kwargs.setdefault("acq_name", "acq1")
        kwargs.setdefault("default_dir", tmp_path / "processed")
        return Acquisition(movies=movies, **kwargs)

    return _make


@pytest.fixture
def slice_info():
    """4x4 grid, ROI 1 = 4 center pixels with a neuropil ring, ROI 2 = a corner pixel."""
    shape = (4, 4)
    body = np.ravel_multi_index(([1, 1, 2, 2], [1, 2, 1, 2]), shape)
    neuropil = np.ravel_multi_index(([0, 0, 0, 0], [0, 1, 2, 3]), shape)
    return RoiSliceInfo(
        shape=shape,
        grouping=[1, 2],
        rois={
            1: RoiDefinition(ind_body=body, ind_neuropil=neuropil, sub_coef=0.7),
            2: RoiDefinition(ind_body=[15]),
        },
    )
