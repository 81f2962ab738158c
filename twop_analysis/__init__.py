"""
twop_analysis
=============

Motion correction and ROI trace extraction for two-photon ScanImage
acquisitions.

Typical usage from Python:

    from twop_analysis import Acquisition, RigidMotionCorrector, correct_motion, extract_roi_traces

    acq = Acquisition(acq_name="mouse1", movies=[...], default_dir="data/mouse1",
                      motion_ref_mov_num=1)
    correct_motion(acq, motion_correction_function=RigidMotionCorrector())
    traces, roi_list, roi_mat = extract_roi_traces(acq, roi_groups=[1])

Or from the CLI (see scripts/run_pipeline.py):

    python scripts/run_pipeline.py -c path/to/config.yaml
"""

from .acquisition import (
    Acquisition,
    RoiDefinition,
    RoiSliceInfo,
    load_acquisition,
    load_roi_info,
    save_acquisition,
    save_roi_info,
)
from .errors import ConfigurationError, MetadataParseError, PipelineError, WriteError
from .motion import MotionCorrector, RigidMotionCorrector
from .motion_stage import MotionConfig, correct_motion, default_naming_function
from .pipeline import load_config, run_full_pipeline, setup_logging
from .traces_stage import extract_roi_traces

__all__ = [
    "Acquisition",
    "RoiDefinition",
    "RoiSliceInfo",
    "load_acquisition",
    "load_roi_info",
    "save_acquisition",
    "save_roi_info",
    "PipelineError",
    "ConfigurationError",
    "MetadataParseError",
    "WriteError",
    "MotionCorrector",
    "RigidMotionCorrector",
    "MotionConfig",
    "correct_motion",
    "default_naming_function",
    "extract_roi_traces",
    "load_config",
    "run_full_pipeline",
    "setup_logging",
]

# Optional simple version – update manually or via packaging tools
__version__ = "0.1.0"
