"""Detection and decoding of square visual fiducial tags in grayscale images."""

__version__ = "0.1.0"

__all__ = ["decode", "detector", "family", "geometry", "lines", "quads", "threshold"]