# orbmap

Building blocks for a feature-based visual SLAM back end, written in plain
Python with NumPy:

- `orbmap.slam_map.Map`: the thread-safe set of keyframes and map points,
  kept in insertion order, with reference map points, the largest keyframe
  id seen and a big-change counter (`inform_new_big_change`,
  `last_big_change_idx`).
- `orbmap.map_point.MapPoint`: a 3D landmark with its observations,
  visible/found counts (`found_ratio`), a representative descriptor chosen
  by least median Hamming distance (`hamming_distance`), the mean viewing
  direction, scale-invariance distances and `predict_scale`.
  `replace` hands all observations over to another point.
- `orbmap.keyframe.KeyFrame`: a keyframe with its pose and camera centre,
  the covisibility graph (`update_connections`,
  `best_covisibility_keyframes`, `covisibles_by_weight`), the spanning tree
  (parent and children, re-parented by `set_bad_flag`), loop edges,
  grid-based `features_in_area`, `unproject_stereo` and
  `compute_scene_median_depth`.
- `orbmap.keyframe_database.KeyFrameDatabase`: an inverted file from visual
  words to keyframes, answering loop-closure queries
  (`detect_loop_candidates`, or `custom_detect_loop_candidates` in stages
  reported to a `MetricLogger`) and relocalization queries
  (`detect_relocalization_candidates`). It is tuned by `LoopClosureConfig`
  and can score with an external vector database instead of the
  vocabulary. Intermediate results are `ScoredKeyFrame` entries.
- `orbmap.triangulation`: linear two-view `triangulate` and `check_rt`,
  which tests a motion hypothesis `(R, t)` against matches and returns an
  `RTCheck` with the good count, the points and the parallax in degrees.
- `orbmap.epipolar`: `skew_symmetric` and `compute_f12`, the fundamental
  matrix between two keyframes.
- `orbmap.metrics`: `MetricLogger` writes one CSV row per keyframe
  (`FrameMetrics`) plus per-stage candidate lists and a `params.yaml` into a
  log directory (see `default_log_dir`). It is also a context manager.

Keyframes, frames, vocabularies and vector databases are passed in as plain
objects with the attributes and methods named in each class's docstring.

## Installation

```
pip install .
```

For the test suite:

```
pip install .[test]
pytest
```

## Examples

```python
import numpy as np
from orbmap.triangulation import triangulate

p1 = np.hstack([np.eye(3), np.zeros((3, 1))])
p2 = np.hstack([np.eye(3), np.array([[-1.0], [0.0], [0.0]])])
point = triangulate((0.125, 0.05), (-0.125, 0.05), p1, p2)
print(point)  # close to [0.5, 0.2, 4.0]
```

```python
from orbmap.metrics import MetricLogger, default_log_dir

with MetricLogger(default_log_dir(".")) as logger:
    logger.start_frame(42)
    logger.current.loop_detected = True
    logger.log_frame()
```

## What the package does not do

It has no feature extraction or descriptor matching, no bag-of-words
vocabulary, no homography or fundamental-matrix estimation from matches,
no monocular map initialization, no local-mapping or loop-closing threads,
no bundle adjustment or pose-graph optimization, and no viewer. It has no
command-line entry point and stores nothing beyond the metric log files;
it is used as a library.