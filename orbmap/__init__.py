"""Map, keyframe, map point, loop-candidate database, triangulation and metric logging for visual SLAM."""

__version__ = "0.1.0"