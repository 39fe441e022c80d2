"""Orthophoto mosaic, mask, reprojection and overview pipeline."""

__version__ = "0.1.0"
