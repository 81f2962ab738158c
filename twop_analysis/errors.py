"""Exceptions raised by the motion correction and trace extraction stages."""


class PipelineError(Exception):
    """Base class for fatal pipeline errors."""


class ConfigurationError(PipelineError):
    """A required setting could not be resolved (raised before any movie I/O)."""


class MetadataParseError(PipelineError):
    """Scan metadata could not be split into slices and channels."""


class WriteError(PipelineError):
    """A corrected movie could not be written, even after retrying."""
