"""Camera post-processing stages for YUV420 frames and piecewise linear functions."""

__version__ = "0.1.0"