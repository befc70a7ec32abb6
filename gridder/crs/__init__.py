"""CRS (Coordinate Reference System) inference.

Modules:
 - registry: pyproj-backed candidate catalog, areas of use, reprojection
 - inference: per-candidate lattice alignment scoring and ranking
"""

from gridder.crs.inference import (
    CRSInferenceEngine,
    CRSScore,
    CRSSearchResult,
    infer_crs,
    score_alignment,
)
from gridder.crs.registry import CRSCandidate, CRSRegistry

__all__ = [
    "CRSCandidate",
    "CRSInferenceEngine",
    "CRSRegistry",
    "CRSScore",
    "CRSSearchResult",
    "infer_crs",
    "score_alignment",
]
