"""Exceptions raised by the kernel patchers."""


class PatchError(RuntimeError):
    """A patch site could not be located or validated."""


class PatternNotFound(PatchError):
    pass


class SequenceMismatch(PatchError):
    """Bytes next to a located reference are not the expected instructions."""


class FormatError(ValueError):
    """The image lacks a section the patchers need."""
