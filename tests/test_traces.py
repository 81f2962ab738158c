import logging

import h5py
import numpy as np
import pytest
import tifffile

from twop_analysis.acquisition import Acquisition, RoiDefinition, RoiSliceInfo
from twop_analysis.traces_helper import (
    build_roi_matrix,
    resolve_roi_list,
    save_traces,
)
from twop_analysis.traces_stage import extract_roi_traces, run_traces_stage


def _acq_with_movies(tmp_path, slice_info, movies, slice_num=1, channel_num=1):
    files = {}
    for mov_num, movie in enumerate(movies, start=1):
        path = tmp_path / f"cor_{mov_num:03d}.tif"
        tifffile.imwrite(str(path), movie.astype(np.int16), photometric="minisblack")
        files[mov_num] = path
    return Acquisition(
        acq_name="acq1",
        default_dir=tmp_path,
        corrected_movies={(slice_num, channel_num): files},
        roi_info={slice_num: slice_info},
    )


def test_grouping_filter():
    info = RoiSliceInfo(
        shape=(2, 2),
        grouping=[1, 2, 1, 3],
        rois={i: RoiDefinition(ind_body=[i - 1]) for i in range(1, 5)},
    )
    assert resolve_roi_list(info, [1]) == [1, 3]
    assert resolve_roi_list(info, [3, 2]) == [2, 4]
    assert resolve_roi_list(info, range(1, 10)) == [1, 2, 3, 4]


def test_matrix_column_sums(slice_info):
    roi_mat = build_roi_matrix(slice_info, [1, 2], do_subtraction=True)
    assert roi_mat.shape == (16, 2)
    np.testing.assert_allclose(np.asarray(roi_mat.sum(axis=0)).ravel(), [1 - 0.7, 1.0])

    roi_mat = build_roi_matrix(slice_info, [1, 2], do_subtraction=False)
    np.testing.assert_allclose(np.asarray(roi_mat.sum(axis=0)).ravel(), [1.0, 1.0])


def test_matrix_weights(slice_info):
    mask = build_roi_matrix(slice_info, [1]).toarray()[:, 0].reshape(4, 4)
    expected = np.array(
        [
            [-0.175, -0.175, -0.175, -0.175],
            [0, 0.25, 0.25, 0],
            [0, 0.25, 0.25, 0],
            [0, 0, 0, 0],
        ]
    )
    np.testing.assert_allclose(mask, expected)


def test_matrix_is_reproducible(slice_info):
    a = build_roi_matrix(slice_info, [1, 2])
    b = build_roi_matrix(slice_info, [1, 2])
    assert a.dtype == np.float64
    np.testing.assert_array_equal(a.toarray(), b.toarray())


def test_empty_body_gives_zero_column_and_warning(caplog):
    info = RoiSliceInfo(
        shape=(2, 2),
        grouping=[1, 1],
        rois={1: RoiDefinition(ind_body=[]), 2: RoiDefinition(ind_body=[0, 1])},
    )
    with caplog.at_level(logging.WARNING, logger="twop_analysis"):
        roi_mat = build_roi_matrix(info, [1, 2]).toarray()

    np.testing.assert_array_equal(roi_mat[:, 0], 0)
    assert np.all(np.isfinite(roi_mat))
    assert "ROI 1 has an empty cell body" in caplog.text


@pytest.mark.parametrize(
    "body, neuropil",
    [([-1, 5], []), ([16], []), ([5], [3, 16]), ([5], [-4])],
)
def test_out_of_range_pixel_indices_rejected(body, neuropil):
    info = RoiSliceInfo(
        shape=(4, 4),
        grouping=[1],
        rois={1: RoiDefinition(ind_body=body, ind_neuropil=neuropil)},
    )
    with pytest.raises(ValueError, match="outside 0..15"):
        build_roi_matrix(info, [1])


def test_constant_body_trace(tmp_path):
    shape = (4, 4)
    body = np.ravel_multi_index(([1, 1, 2, 2], [1, 2, 1, 2]), shape)
    info = RoiSliceInfo(shape=shape, grouping=[1], rois={1: RoiDefinition(ind_body=body)})

    movie = np.zeros((2, 4, 4))
    movie[:, 1:3, 1:3] = 5.0
    acq = _acq_with_movies(tmp_path, info, [movie])

    traces, roi_list, roi_mat = extract_roi_traces(acq)

    assert roi_list == [1]
    assert traces.dtype == np.float64
    np.testing.assert_allclose(traces, [[5.0, 5.0]])
    assert roi_mat.shape == (16, 1)


def test_neuropil_subtraction(tmp_path, slice_info):
    movie = np.zeros((3, 4, 4))
    movie[:, 1:3, 1:3] = 100.0
    movie[:, 0, :] = 10.0
    acq = _acq_with_movies(tmp_path, slice_info, [movie])

    traces, roi_list, _ = extract_roi_traces(acq, roi_groups=[1])
    np.testing.assert_allclose(traces, [[100 - 0.7 * 10] * 3])

    raw, _, _ = extract_roi_traces(acq, roi_groups=[1], do_subtraction=False)
    np.testing.assert_allclose(raw, [[100.0] * 3])


def test_traces_concatenate_movies(tmp_path, slice_info):
    movies = [np.full((2, 4, 4), 1.0), np.full((3, 4, 4), 2.0), np.full((1, 4, 4), 3.0)]
    acq = _acq_with_movies(tmp_path, slice_info, movies)

    traces, roi_list, _ = extract_roi_traces(acq, do_subtraction=False)
    assert roi_list == [1, 2]
    assert traces.shape == (2, 6)
    np.testing.assert_allclose(traces[1], [1, 1, 2, 2, 2, 3])

    subset, _, _ = extract_roi_traces(acq, mov_nums=[3, 1], do_subtraction=False)
    np.testing.assert_allclose(subset[0], [3, 1, 1])


def test_no_matching_rois(tmp_path, slice_info):
    acq = _acq_with_movies(tmp_path, slice_info, [np.ones((2, 4, 4))])
    traces, roi_list, roi_mat = extract_roi_traces(acq, roi_groups=[9])
    assert roi_list == []
    assert traces.shape == (0, 2)
    assert roi_mat.shape == (16, 0)


def test_frame_shape_mismatch(tmp_path, slice_info):
    acq = _acq_with_movies(tmp_path, slice_info, [np.ones((2, 5, 5))])
    with pytest.raises(ValueError):
        extract_roi_traces(acq)


def test_missing_slice(tmp_path, slice_info):
    acq = _acq_with_movies(tmp_path, slice_info, [np.ones((2, 4, 4))])
    with pytest.raises(KeyError):
        extract_roi_traces(acq, slice_num=2)


def test_extractor_does_not_modify_acquisition(tmp_path, slice_info):
    acq = _acq_with_movies(tmp_path, slice_info, [np.ones((2, 4, 4))])
    before = dict(acq.corrected_movies[(1, 1)])
    extract_roi_traces(acq)
    assert acq.corrected_movies == {(1, 1): before}
    assert acq.derived_data == {}


@pytest.mark.parametrize("save_as", ["npy", "txt", "h5"])
def test_save_traces(tmp_path, save_as):
    traces = np.arange(6, dtype=float).reshape(2, 3)
    out = save_traces(traces, [4, 7], tmp_path / "traces", save_as=save_as)

    assert out.name == f"traces.{save_as}"
    if save_as == "npy":
        np.testing.assert_array_equal(np.load(out), traces)
        np.testing.assert_array_equal(np.load(tmp_path / "traces_rois.npy"), [4, 7])
    elif save_as == "txt":
        np.testing.assert_array_equal(np.loadtxt(out), [[4, 0, 1, 2], [7, 3, 4, 5]])
    else:
        with h5py.File(out, "r") as h5:
            np.testing.assert_array_equal(h5["traces"][()], traces)
            np.testing.assert_array_equal(h5["roi_list"][()], [4, 7])


def test_save_traces_rejects_unknown_format(tmp_path):
    with pytest.raises(ValueError):
        save_traces(np.zeros((1, 1)), [1], tmp_path / "traces", save_as="csv")


def test_run_traces_stage(tmp_path, slice_info):
    acq = _acq_with_movies(tmp_path, slice_info, [np.ones((2, 4, 4))])
    out = run_traces_stage(acq, {"roi_groups": [2], "save_format": "h5"})

    assert out == tmp_path / "acq1_roi_traces_Slice01_Channel01.h5"
    with h5py.File(out, "r") as h5:
        np.testing.assert_array_equal(h5["roi_list"][()], [2])
        np.testing.assert_allclose(h5["traces"][()], [[1.0, 1.0]])
