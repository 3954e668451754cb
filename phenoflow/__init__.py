"""Phenoflow - vegetation-index time series and phenology fitting from cloud imagery archives."""

__version__ = "0.3.0"

try:
    from phenoflow.config import config
    __all__ = ["config", "__version__"]
except ImportError:
    # Config might not be available during installation
    __all__ = ["__version__"]
