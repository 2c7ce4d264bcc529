"""Geometric solvers and utilities for visual SLAM: EPnP, RANSAC PnP, viewer signalling and trajectory export."""

__version__ = "0.1.0"
__all__ = ["epnp", "pnp_ransac", "viewer_control", "trajectory"]