from .errors import FormatError, PatchError, PatternNotFound, SequenceMismatch
from .kernel import KernelPatcher

__all__ = ["KernelPatcher", "FormatError", "PatchError", "PatternNotFound",
           "SequenceMismatch"]
