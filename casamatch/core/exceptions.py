"""Error taxonomy for the matching, classification and deduplication pipeline"""

from typing import List, Optional


class CasaMatchError(Exception):
    """Base class for all engine errors"""


class MalformedGeometryError(CasaMatchError):
    """Search area or listing location failed validation (NaN, too few vertices, ...)"""


class AmbiguousDuplicateError(CasaMatchError):
    """More than one canonical listing satisfies the duplicate rule"""

    def __init__(self, candidate_ids: List[int], chosen_id: Optional[int] = None):
        self.candidate_ids = candidate_ids
        self.chosen_id = chosen_id
        super().__init__(
            f"Ambiguous duplicate: {len(candidate_ids)} candidates {candidate_ids}, chosen: {chosen_id}"
        )


class MissingClassificationInputError(CasaMatchError):
    """Raw listing carries neither an owner nor an agency contact"""


class PreferenceAbsentError(CasaMatchError):
    """Buyer has no stored preference"""


class StorageConflictError(CasaMatchError):
    """Concurrent writer created the same row first; re-fetch and merge"""
