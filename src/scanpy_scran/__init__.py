import sys

from . import get
from . import preprocessing as pp
from ._config import (
    ModelGeneVarConfig,
    NormalizationConfig,
    PoolingConfig,
    QuickClusterConfig,
    TrendFitConfig,
    VarianceMode,
)
from ._errors import (
    DegenerateClusterError,
    FeatureClassMismatchError,
    InsufficientDataError,
    InvalidArgumentError,
    InvalidSpikeSetError,
    ScranError,
    SingularSystemError,
    ZeroSizeFactorError,
)
from .preprocessing import (
    FeatureClass,
    SizeFactors,
    TrendFunction,
    VarianceModel,
)

sys.modules.update({f"{__name__}.{m}": globals()[m] for m in ["pp"]})

__version__ = "0.1.0"

__all__ = [
    "pp",
    "get",
    "VarianceMode",
    "TrendFitConfig",
    "ModelGeneVarConfig",
    "QuickClusterConfig",
    "PoolingConfig",
    "NormalizationConfig",
    "FeatureClass",
    "SizeFactors",
    "TrendFunction",
    "VarianceModel",
    "ScranError",
    "InsufficientDataError",
    "InvalidArgumentError",
    "InvalidSpikeSetError",
    "FeatureClassMismatchError",
    "DegenerateClusterError",
    "SingularSystemError",
    "ZeroSizeFactorError",
]
