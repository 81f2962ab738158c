"""
Motion correction functions for two-photon imaging data.

A motion correction function is any callable

    func(acq, movie_struct, metadata, mov_num, mode)

where ``mode`` is ``"identify"`` (estimate the correction, return value is
ignored) or ``"apply"`` (return the corrected ``{(slice, channel): movie}``
structure). ``correct_motion`` calls it once per mode and movie, with the
reference movie first.

``MotionCorrector`` wraps that contract in a class with ``identify`` and
``apply`` methods. ``RigidMotionCorrector`` is the bundled implementation:
frame-by-frame translation estimated by phase cross-correlation against a
template built from the reference movie.
"""

import logging

import numpy as np
from scipy.fft import fftn, ifftn
from scipy.ndimage import fourier_shift
from skimage.registration import phase_cross_correlation

logger = logging.getLogger(__name__)

MODES = ("identify", "apply")


def find_similar_frames(initial_frames: np.ndarray) -> tuple:
    """
    Rank frames by their similarity to the most typical frame.

    Uses frame-to-frame correlation to find the frame that correlates best
    with the others, then sorts all frames by their correlation with it.

    Parameters
    ----------
    initial_frames : ndarray
        Array of frames of shape (n_frames, height, width).

    Returns
    -------
    top_frame_indices : ndarray
        Indices of frames sorted by similarity (most similar first).
    correlation_matrix : ndarray
        Correlation matrix between all frame pairs.
    """
    frames_flat = np.reshape(initial_frames, (initial_frames.shape[0], -1)).astype("float64")
    frames_flat = frames_flat - frames_flat.mean(axis=1, keepdims=True)

    correlation_matrix = frames_flat @ frames_flat.T

    standard_deviations = np.sqrt(np.diag(correlation_matrix))
    standard_deviations[standard_deviations == 0] = 1.0
    correlation_matrix = correlation_matrix / np.outer(standard_deviations, standard_deviations)

    correlation_sorted = -np.sort(-correlation_matrix, axis=1)
    if correlation_sorted.shape[1] > 1:
        correlation_top_mean = np.mean(correlation_sorted[:, 1:150], axis=1)
    else:
        correlation_top_mean = correlation_sorted[:, 0]
    index_max_correlation = np.argmax(correlation_top_mean)

    top_frame_indices = np.argsort(-correlation_matrix[index_max_correlation, :], kind="stable")

    return top_frame_indices, correlation_matrix


def compute_template(movie: np.ndarray, n_template_frames: int = 30, max_frames: int = 500) -> np.ndarray:
    """Mean of the ``n_template_frames`` most similar frames (from at most ``max_frames``)."""
    n_frames = movie.shape[0]
    if n_frames > max_frames:
        # evenly spaced instead of random so templates are reproducible
        frame_indices = np.linspace(0, n_frames - 1, max_frames).astype(int)
    else:
        frame_indices = np.arange(n_frames)

    candidate_frames = movie[frame_indices]
    similar_frame_indices, _ = find_similar_frames(candidate_frames)
    return np.mean(candidate_frames[similar_frame_indices[:n_template_frames]], axis=0)


def estimate_motion_vectors(
    movie: np.ndarray,
    template: np.ndarray,
    upsample_factor: int = 1,
    max_shift: float | None = None,
) -> np.ndarray:
    """
    Estimate the shift that aligns each frame to ``template``.

    Returns
    -------
    motion_vectors : ndarray
        (n_frames, 2) array of [row_shift, col_shift]. Shifting a frame by
        its vector aligns it to the template.
    """
    if movie.shape[1:] != template.shape:
        raise ValueError(
            f"Frame shape {movie.shape[1:]} does not match template shape {template.shape}"
        )

    motion_vectors = np.zeros((movie.shape[0], 2), dtype=np.float64)
    for frame_idx in range(movie.shape[0]):
        motion_vectors[frame_idx] = phase_cross_correlation(
            template, movie[frame_idx], upsample_factor=upsample_factor
        )[0]

    if max_shift is not None:
        too_large = np.abs(motion_vectors) > max_shift
        if np.any(too_large):
            logger.warning(
                f"{int(too_large.any(axis=1).sum())} frame(s) exceed max_shift={max_shift}px; clipping."
            )
            motion_vectors = np.clip(motion_vectors, -max_shift, max_shift)

    return motion_vectors


def apply_motion_vectors(
    movie: np.ndarray,
    motion_vectors: np.ndarray,
    shift_method: str = "integer",
) -> np.ndarray:
    """
    Shift every frame of a (T, H, W) movie by its motion vector.

    shift_method : str
        "integer" uses np.roll (fast, integer pixel shifts),
        "fourier" uses fourier_shift (slower, subpixel precision).
    """
    if len(motion_vectors) != movie.shape[0]:
        raise ValueError(
            f"Got {len(motion_vectors)} motion vectors for a movie with {movie.shape[0]} frames"
        )

    corrected = movie.astype(np.float32, copy=True)

    if shift_method == "fourier":
        for frame_idx in range(corrected.shape[0]):
            shifted_frame_frequency = fourier_shift(
                fftn(corrected[frame_idx]), motion_vectors[frame_idx]
            )
            corrected[frame_idx] = ifftn(shifted_frame_frequency).real
    elif shift_method == "integer":
        integer_motion = np.round(motion_vectors).astype(np.int32)
        for frame_idx in range(corrected.shape[0]):
            corrected[frame_idx] = np.roll(
                corrected[frame_idx], tuple(integer_motion[frame_idx]), axis=(0, 1)
            )
    else:
        raise ValueError(f"shift_method must be 'fourier' or 'integer', got '{shift_method}'")

    return corrected


class MotionCorrector:
    """
    Two-phase motion correction function.

    Subclasses implement ``identify`` and ``apply``; instances are called by
    ``correct_motion`` with the plain function signature.
    """

    def __call__(self, acq, movie_struct, metadata, mov_num, mode):
        if mode == "identify":
            return self.identify(acq, movie_struct, metadata, mov_num)
        if mode == "apply":
            return self.apply(acq, movie_struct, metadata, mov_num)
        raise ValueError(f"mode must be one of {MODES}, got '{mode}'")

    def identify(self, acq, movie_struct, metadata, mov_num):
        raise NotImplementedError

    def apply(self, acq, movie_struct, metadata, mov_num):
        raise NotImplementedError

    def get_params(self) -> dict:
        """Constructor arguments, used to persist the corrector with the acquisition."""
        return {}


class RigidMotionCorrector(MotionCorrector):
    """
    Whole-frame translation correction.

    The template of each slice is computed from the first movie identified
    (the reference movie) and reused for every later movie. Shifts are
    estimated on ``motion_channel`` and applied to all channels of the slice,
    and stored in ``acq.shifts[mov_num][slice]``.
    """

    def __init__(
        self,
        max_shift: float = 20,
        upsample_factor: int = 10,
        shift_method: str = "integer",
        motion_channel: int = 1,
        n_template_frames: int = 30,
    ):
        if shift_method not in ("integer", "fourier"):
            raise ValueError(f"shift_method must be 'fourier' or 'integer', got '{shift_method}'")
        self.max_shift = max_shift
        self.upsample_factor = int(upsample_factor)
        self.shift_method = shift_method
        self.motion_channel = int(motion_channel)
        self.n_template_frames = int(n_template_frames)
        self.templates = {}

    def get_params(self) -> dict:
        return {
            "max_shift": self.max_shift,
            "upsample_factor": self.upsample_factor,
            "shift_method": self.shift_method,
            "motion_channel": self.motion_channel,
            "n_template_frames": self.n_template_frames,
        }

    def _motion_key(self, movie_struct, slice_num):
        key = (slice_num, self.motion_channel)
        if key not in movie_struct:
            raise ValueError(
                f"Motion channel {self.motion_channel} not present for slice {slice_num}"
            )
        return key

    def identify(self, acq, movie_struct, metadata, mov_num):
        slice_nums = sorted({s for s, _ in movie_struct})
        movie_shifts = {}

        for slice_num in slice_nums:
            frames = movie_struct[self._motion_key(movie_struct, slice_num)]

            if slice_num not in self.templates:
                logger.info(f"Computing motion template for slice {slice_num} from movie {mov_num}")
                self.templates[slice_num] = compute_template(frames, self.n_template_frames)

            movie_shifts[slice_num] = estimate_motion_vectors(
                frames,
                self.templates[slice_num],
                upsample_factor=self.upsample_factor,
                max_shift=self.max_shift,
            )

        acq.shifts[mov_num] = movie_shifts
        return movie_shifts

    def apply(self, acq, movie_struct, metadata, mov_num):
        if mov_num not in acq.shifts:
            raise ValueError(f"No shifts identified for movie {mov_num}; run 'identify' first.")
        movie_shifts = acq.shifts[mov_num]

        return {
            (slice_num, channel_num): apply_motion_vectors(
                movie, movie_shifts[slice_num], shift_method=self.shift_method
            )
            for (slice_num, channel_num), movie in movie_struct.items()
        }
