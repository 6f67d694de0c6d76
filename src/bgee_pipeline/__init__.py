"""Bgee call pipeline: conflict resolution, propagation and merging of expression calls."""

__version__ = "0.1.0"
