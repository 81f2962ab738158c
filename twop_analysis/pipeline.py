import logging
import sys
from pathlib import Path

import yaml

from .acquisition import Acquisition, load_acquisition, load_roi_info
from .motion import RigidMotionCorrector
from .motion_stage import _cfg_from_dict as motion_cfg_from_dict
from .motion_stage import correct_motion
from .traces_stage import run_traces_stage


logger = logging.getLogger(__name__)


def setup_logging(level=logging.INFO):
    """Log stage messages of the whole package to stdout."""
    root = logging.getLogger("twop_analysis")
    root.handlers = []
    root.setLevel(level)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s"))
    root.addHandler(handler)
    return root


def load_config(config_path: str | Path) -> dict:
    config_path = Path(config_path)
    with config_path.open("r") as f:
        cfg = yaml.safe_load(f)
    return cfg


def _apply_motion_overrides(acq: Acquisition, acq_cfg: dict, corrector_cfg: dict | None) -> None:
    for key in ("motion_ref_mov_num", "bin_factor"):
        if acq_cfg.get(key) is None:
            continue
        value = int(acq_cfg[key])
        if getattr(acq, key) != value:
            logger.warning(
                f"[PIPELINE] Config {key}={value} overrides saved value {getattr(acq, key)}"
            )
            setattr(acq, key, value)

    if not corrector_cfg:
        return
    saved = acq.motion_correction_function
    saved_params = saved.get_params() if isinstance(saved, RigidMotionCorrector) else None
    if saved_params is None or any(saved_params.get(k) != v for k, v in corrector_cfg.items()):
        logger.warning(
            f"[PIPELINE] Config corrector {corrector_cfg} overrides saved corrector {saved_params}"
        )
        acq.motion_correction_function = RigidMotionCorrector(**corrector_cfg)


def acquisition_from_config(acq_cfg: dict, corrector_cfg: dict | None = None) -> Acquisition:
    """
    Build an Acquisition from the ``acquisition`` section of the config.

    If ``<default_dir>/<acq_name>.yaml`` already exists (a previous motion
    correction run), that state is loaded instead. Motion settings given in
    the config still win over the saved ones, with a warning, and the ROI
    file is always re-read.
    """
    acq_name = acq_cfg["acq_name"]
    default_dir = acq_cfg.get("default_dir", None)

    saved = Path(default_dir) / f"{acq_name}.yaml" if default_dir else None
    if saved is not None and saved.exists() and not acq_cfg.get("ignore_saved", False):
        print(f"[PIPELINE] Loading saved acquisition {saved}")
        acq = load_acquisition(saved)
        _apply_motion_overrides(acq, acq_cfg, corrector_cfg)
    else:
        acq = Acquisition(
            acq_name=acq_name,
            movies=acq_cfg.get("movies", []),
            motion_ref_mov_num=acq_cfg.get("motion_ref_mov_num", None),
            default_dir=default_dir,
            bin_factor=int(acq_cfg.get("bin_factor", 1)),
            motion_correction_function=RigidMotionCorrector(**(corrector_cfg or {})),
        )

    roi_file = acq_cfg.get("roi_file", None)
    if roi_file:
        acq.roi_info = load_roi_info(roi_file)

    return acq


def run_full_pipeline(
    config_path: str | Path,
    run_motion: bool = True,
    run_traces: bool = True,
):
    cfg = load_config(config_path)

    acq_cfg = cfg["acquisition"]
    motion_cfg = cfg.get("motion", {}) or {}
    trace_cfg = cfg.get("traces", {}) or {}

    acq = acquisition_from_config(acq_cfg, motion_cfg.get("corrector", {}))

    # 1) Motion correction
    if run_motion:
        print("\n=== Stage 1: Motion correction ===")
        correct_motion(acq, config=motion_cfg_from_dict(motion_cfg))

    # 2) Traces
    out_path = None
    if run_traces:
        print("\n=== Stage 2: ROI trace extraction ===")
        if not acq.roi_info:
            raise ValueError("No ROI information; set acquisition.roi_file in the config.")
        out_path = run_traces_stage(acq, trace_cfg)

    print("\n✅ Pipeline finished successfully.")
    return acq, out_path


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Two-photon analysis pipeline")
    parser.add_argument(
        "-c", "--config", required=True, help="Path to YAML config file."
    )
    args = parser.parse_args()

    setup_logging()
    run_full_pipeline(args.config)
