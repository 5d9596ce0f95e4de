from numpy.linalg import LinAlgError


class ScranError(Exception):
    """Base class for errors raised by scanpy_scran."""


class InsufficientDataError(ScranError, ValueError):
    """Too few cells, genes or spike-ins to fit a stable trend or pool."""


class InvalidArgumentError(ScranError, ValueError):
    """Malformed mode, selection or configuration arguments."""


class InvalidSpikeSetError(InvalidArgumentError):
    """Spike-in mode requested without any spike-in rows."""


class FeatureClassMismatchError(InvalidArgumentError):
    """Size factors applied to a feature class they were not derived from."""


class DegenerateClusterError(ScranError, ValueError):
    """A cluster cannot form any valid pool for deconvolution."""


class SingularSystemError(ScranError, LinAlgError):
    """The pool design of a cluster is rank-deficient."""


class ZeroSizeFactorError(ScranError, ValueError):
    """A size factor is zero, negative or undefined."""


__all__ = [
    "ScranError",
    "InsufficientDataError",
    "InvalidArgumentError",
    "InvalidSpikeSetError",
    "FeatureClassMismatchError",
    "DegenerateClusterError",
    "SingularSystemError",
    "ZeroSizeFactorError",
]
