# fiducia

`fiducia` finds square visual fiducial tags in 8-bit grayscale images. For
each tag it reports the tag ID, how many bit errors were corrected, a
decision margin, the tag centre, the four corners, and the homography from
tag coordinates to image pixels.

The detector runs these stages:

1. Threshold the image adaptively in 4x4 tiles. Low-contrast areas are
   marked 127. Pixels are then grouped into connected components with
   union-find.
2. Collect the boundary points between adjacent large black and white
   components into clusters.
3. Fit a quadrilateral to each cluster by splitting its points into four
   lines.
4. Optionally snap each quad's edges onto nearby strong gradients.
5. Sample the quad's bit cells through its homography and match the bit
   pattern against each family. Matching allows bit errors and any of four
   rotations.
6. Drop overlapping duplicates of the same tag. When two duplicates
   overlap, the one kept has the smaller Hamming distance, then the larger
   margin.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Usage

Images are 2-D `numpy` arrays of `uint8`, indexed as `image[y, x]`.

```python
import numpy as np

from fiducia.detector import Detector
from fiducia.family import TagFamily

family = TagFamily(
    name="myfamily",
    codes=(...),           # one integer code word per tag
    width_at_border=...,   # width of the black border square, in cells
    total_width=...,       # full rendered width, in cells
    reversed_border=False,
    nbits=...,
    bit_x=(...),           # cell position of each bit, most significant first
    bit_y=(...),
    h=...,                 # minimum Hamming distance between codes
)

detector = Detector(quad_decimate=2.0, refine_edges=True)
detector.add_family(family, 2)

image = np.asarray(..., dtype=np.uint8)
for det in detector.detect(image):
    print(det.id, det.hamming, det.decision_margin, det.c, det.p)
```

`Detector.detect` returns a list of `Detection` objects sorted by tag ID.
Each has these fields:

- `family`: the `TagFamily` that matched.
- `id`: the tag ID.
- `hamming`: the number of bit errors corrected.
- `decision_margin`: how far the sampled bits lay from the threshold, on
  average.
- `H`: the homography.
- `c`: the tag centre.
- `p`: the corners, a 4x2 array. The corners are the projections of tag
  coordinates (-1, 1), (1, 1), (1, -1) and (-1, -1), in that order.

`detect` raises `ValueError` unless the image is 2-D `uint8`. It returns an
empty list when no family is registered. After each call,
`Detector.nquads` holds the number of candidate quads that were found.

### Detector settings

- `nthreads`: the number of threads used to decode quads (default 1).
- `quad_decimate`: quads are found on an image shrunk by this factor
  (default 2.0). The factor is 1.5 or an integer. Bits are still read at
  full resolution.
- `quad_sigma`: the standard deviation of a Gaussian blur applied before
  quad finding. A negative value sharpens instead (default 0.0).
- `refine_edges`: snap quad edges to nearby gradients (default `True`).
- `decode_sharpening`: how much Laplacian sharpening to apply to the
  sampled bit values (default 0.25).
- `qtp`: a `fiducia.threshold.QuadThreshParams`, holding:
  - `min_cluster_pixels`
  - `max_nmaxima`
  - `critical_rad`
  - `cos_critical_rad`
  - `max_line_fit_mse`
  - `min_white_black_diff`
  - `deglitch`

Families are managed with these methods:

- `add_family(family, bits_corrected=2)`
- `remove_family(family)`, which raises `ValueError` if the family is not
  registered.
- `clear_families()`

The `families` property lists the registered families.

### Tag families

- `TagFamily.to_image(idx)` draws tag `idx` as a `uint8` image with
  `total_width` pixels on each side.
- `QuickDecode(family, max_hamming)` builds a table of every code word
  within `max_hamming` bit errors (at most 3). Its `decode(rcode)` method
  returns a `DecodeEntry` with `id`, `hamming` and `rotation`, or `None`
  when nothing matches.
- `rotate90(w, nbits)` rotates a code word by a quarter turn.

### Building blocks

Each stage can also be called on its own:

- `fiducia.threshold`:
  - `threshold`, `threshold_bayer`
  - `connected_components`, which returns a `UnionFind`
  - `gradient_clusters`, which returns lists of `ClusterPoint`
- `fiducia.lines`:
  - `compute_lfps` (cumulative `LineFitMoments`)
  - `fit_line`, which returns a `LineFit`
  - `quad_segment_maxima`, `quad_segment_agg`
- `fiducia.quads`: `fit_quad`, `fit_quads`, `quad_thresh`.
- `fiducia.decode`:
  - `GrayModel`
  - `value_for_pixel`, which returns `None` outside the image
  - `sharpen`
  - `quad_decode`
  - `refine_edges`, which moves a quad's corners in place
- `fiducia.geometry`: `Quad` (with `update_homographies`),
  `homography_compute`, `homography_project`.

## What it does not do

- **No built-in tag families.** You supply each `TagFamily` yourself.
- **No pose estimation.** No 3-D pose is computed from a detection.
- **No camera calibration.**
- **No image file or camera input.** Images come in as `numpy` arrays.
- **No debug images.**
- **No command-line tool.**