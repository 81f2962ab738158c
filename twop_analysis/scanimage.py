"""
ScanImage header parsing.

Raw two-photon movies are multipage TIFFs whose frames are interleaved as

    volume 0: slice 1 (channel 1, channel 2, ...), slice 2 (...), ...
    volume 1: ...

The header written by ScanImage tells us how many slices and channels were
saved. This module turns the header text into a flat dict and uses it to split
a raw movie into a ``{(slice, channel): movie}`` structure.
"""

from __future__ import annotations

import ast
import logging
from typing import Any, Dict, Tuple

import numpy as np

from .errors import MetadataParseError

logger = logging.getLogger(__name__)

# ast.literal_eval raises any of these on header values it cannot turn into literals
_LITERAL_ERRORS = (ValueError, SyntaxError, TypeError, MemoryError, RecursionError)

# (slices key, channels key) per header flavour, most recent first
_SLICE_CHANNEL_KEYS = (
    ("SI.hStackManager.actualNumSlices", "SI.hChannels.channelSave"),
    ("SI.hStackManager.numSlices", "SI.hChannels.channelSave"),
    ("SI5.stackNumSlices", "SI5.channelsSave"),
    ("scanimage.SI4.stackNumSlices", "scanimage.SI4.channelsSave"),
    ("num_slices", "num_channels"),
)


def _parse_value(value: str) -> Any:
    """Convert a MATLAB-style header value into a python object where possible."""
    value = value.strip()
    if value in ("true", "false"):
        return value == "true"
    if value in ("NaN", "nan"):
        return np.nan
    if value in ("Inf", "inf"):
        return np.inf
    if value.startswith("[") and value.endswith("]"):
        inner = value[1:-1].replace(";", " ").replace(",", " ").split()
        try:
            return [ast.literal_eval(v) for v in inner]
        except _LITERAL_ERRORS:
            return value
    try:
        return ast.literal_eval(value)
    except _LITERAL_ERRORS:
        return value.strip("'")


def parse_scanimage_metadata(header: str) -> Dict[str, Any]:
    """
    Parse ``key = value`` lines of a ScanImage header into a dict.

    Lines without ``=`` are ignored. Later keys overwrite earlier ones.
    """
    metadata = {}
    for line in header.splitlines():
        if "=" not in line:
            continue
        key, value = line.split("=", 1)
        metadata[key.strip(" \r")] = _parse_value(value.strip(" \r"))
    return metadata


def _count_channels(value: Any) -> int:
    # channelSave is either a scalar channel id or a list of saved channel ids
    if isinstance(value, (list, tuple, np.ndarray)):
        return len(value)
    return 1


def get_slices_and_channels(metadata: Dict[str, Any]) -> Tuple[int, int]:
    """
    Number of saved slices and channels described by ``metadata``.

    Raises
    ------
    MetadataParseError
        If none of the known header layouts is present.
    """
    for slice_key, channel_key in _SLICE_CHANNEL_KEYS:
        if slice_key in metadata and channel_key in metadata:
            n_slices = metadata[slice_key]
            n_channels = metadata[channel_key]
            if channel_key != "num_channels":
                n_channels = _count_channels(n_channels)
            try:
                n_slices = int(n_slices)
                n_channels = int(n_channels)
            except (TypeError, ValueError) as e:
                raise MetadataParseError(
                    f"Non-numeric slice/channel entries: {slice_key}={metadata[slice_key]!r}, "
                    f"{channel_key}={metadata[channel_key]!r}"
                ) from e
            if n_slices < 1 or n_channels < 1:
                raise MetadataParseError(
                    f"Invalid slice/channel counts: slices={n_slices}, channels={n_channels}"
                )
            return n_slices, n_channels

    raise MetadataParseError(
        "Could not find slice/channel entries in the scan metadata; "
        "unsupported ScanImage version?"
    )


def parse_scanimage_tiff(
    movie: np.ndarray,
    metadata: Dict[str, Any],
) -> Tuple[Dict[Tuple[int, int], np.ndarray], int, int]:
    """
    Split an interleaved raw movie into slices and channels.

    Parameters
    ----------
    movie : ndarray
        Raw movie of shape (n_frames, height, width) in acquisition order.
    metadata : dict
        Scan metadata as returned by ``parse_scanimage_metadata``.

    Returns
    -------
    movie_struct : dict
        (slice, channel) -> ndarray (n_volumes, height, width), 1-based keys.
    n_slices, n_channels : int
    """
    if movie.ndim != 3:
        raise MetadataParseError(f"Expected 3D movie (t, y, x), got shape={movie.shape}")

    n_slices, n_channels = get_slices_and_channels(metadata)
    frames_per_volume = n_slices * n_channels

    if movie.shape[0] % frames_per_volume != 0:
        raise MetadataParseError(
            f"{movie.shape[0]} frames cannot be split into "
            f"{n_slices} slices x {n_channels} channels"
        )

    movie_struct = {}
    for n_slice in range(1, n_slices + 1):
        for n_channel in range(1, n_channels + 1):
            offset = (n_slice - 1) * n_channels + (n_channel - 1)
            movie_struct[(n_slice, n_channel)] = movie[offset::frames_per_volume]

    logger.debug(
        "Parsed movie into %d slice(s) x %d channel(s), %d frames each",
        n_slices,
        n_channels,
        movie.shape[0] // frames_per_volume,
    )
    return movie_struct, n_slices, n_channels
