import logging

import numpy as np
import yaml

from twop_analysis.acquisition import Acquisition, save_acquisition, save_roi_info
from twop_analysis.motion import RigidMotionCorrector
from twop_analysis.pipeline import acquisition_from_config, load_config, run_full_pipeline


def _write_config(tmp_path, acq, slice_info, **traces):
    roi_file = save_roi_info({1: slice_info}, tmp_path / "rois.json")
    cfg = {
        "acquisition": {
            "acq_name": acq.acq_name,
            "default_dir": str(acq.default_dir),
            "movies": [str(m) for m in acq.movies],
            "motion_ref_mov_num": 2,
            "roi_file": str(roi_file),
        },
        "motion": {"write_retry_delay": 0, "corrector": {"max_shift": 2, "upsample_factor": 1}},
        "traces": {"roi_groups": [1, 2], "save_format": "npy", **traces},
    }
    path = tmp_path / "config.yaml"
    with path.open("w") as f:
        yaml.safe_dump(cfg, f)
    return path


def test_load_config(tmp_path):
    path = tmp_path / "c.yaml"
    path.write_text("acquisition:\n  acq_name: a\n")
    assert load_config(path) == {"acquisition": {"acq_name": "a"}}


def test_acquisition_from_config_builds_corrector(tmp_path):
    acq = acquisition_from_config(
        {"acq_name": "a", "movies": ["m1.tif"], "default_dir": str(tmp_path)},
        {"max_shift": 3},
    )
    assert isinstance(acq.motion_correction_function, RigidMotionCorrector)
    assert acq.motion_correction_function.max_shift == 3
    assert acq.roi_info == {}


def test_config_motion_settings_override_saved_state(tmp_path, caplog):
    save_acquisition(
        Acquisition(
            acq_name="a",
            movies=["m1.tif", "m2.tif"],
            motion_ref_mov_num=1,
            default_dir=tmp_path,
            motion_correction_function=RigidMotionCorrector(max_shift=2),
        )
    )

    with caplog.at_level(logging.WARNING, logger="twop_analysis"):
        acq = acquisition_from_config(
            {"acq_name": "a", "default_dir": str(tmp_path), "motion_ref_mov_num": 2},
            {"max_shift": 9},
        )

    assert acq.motion_ref_mov_num == 2
    assert acq.motion_correction_function.max_shift == 9
    assert "motion_ref_mov_num=2 overrides saved value 1" in caplog.text
    assert "overrides saved corrector" in caplog.text


def test_saved_state_kept_when_config_agrees(tmp_path, caplog):
    corrector = RigidMotionCorrector(max_shift=2)
    save_acquisition(
        Acquisition(
            acq_name="a",
            movies=["m1.tif"],
            motion_ref_mov_num=1,
            default_dir=tmp_path,
            motion_correction_function=corrector,
        )
    )

    with caplog.at_level(logging.WARNING, logger="twop_analysis"):
        acq = acquisition_from_config(
            {"acq_name": "a", "default_dir": str(tmp_path), "motion_ref_mov_num": 1},
            {"max_shift": 2},
        )

    assert acq.motion_correction_function.get_params() == corrector.get_params()
    assert "overrides" not in caplog.text

def test_full_pipeline(tmp_path, raw_acquisition, slice_info):
    acq = raw_acquisition(n_movies=3, n_volumes=5, shape=(4, 4))
    config_path = _write_config(tmp_path, acq, slice_info)

    result, out_path = run_full_pipeline(config_path)

    assert sorted(result.corrected_movies[(1, 1)]) == [1, 2, 3]
    assert (acq.default_dir / "acq1.yaml").exists()
    traces = np.load(out_path)
    assert traces.shape == (2, 15)
    np.testing.assert_array_equal(np.load(out_path.with_name(out_path.stem + "_rois.npy")), [1, 2])

    # second run picks up the saved acquisition and only extracts traces
    resumed, out_again = run_full_pipeline(config_path, run_motion=False)
    assert sorted(resumed.corrected_movies[(1, 1)]) == [1, 2, 3]
    np.testing.assert_allclose(np.load(out_again), traces)
