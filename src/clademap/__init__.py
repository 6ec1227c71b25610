"""CladeMap: nearest-clade characterization of a target genome."""

__version__ = "0.1.0"

__all__ = ["__version__"]
