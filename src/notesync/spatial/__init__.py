"""Region boundaries and chunked note verification."""

from .regions import BoundaryFetcher, Region, RegionCatalog, RegionIndex, RegionResolver, assemble_boundary
from .verification import ASSIGN_PASS, VERIFY_PASS, PassResult, VerificationEngine

__all__ = [
    "BoundaryFetcher",
    "Region",
    "RegionCatalog",
    "RegionIndex",
    "RegionResolver",
    "assemble_boundary",
    "ASSIGN_PASS",
    "VERIFY_PASS",
    "PassResult",
    "VerificationEngine",
]
