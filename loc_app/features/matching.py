"""
Descriptor matching between a query image and the map.

Two association strategies are provided:
- direct matching of query descriptors against every landmark descriptor
  (match_to_landmarks), and
- per-view matching passes with geometric verification, where each
  verified 2D-2D match is lifted to a 2D-3D association through the
  landmark observed by the view feature (match_to_views). The number of
  passes proposing the same association is kept in an occurrence map.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

from loc_app.config import ViewMatchParameters
from loc_app.features.keypoints import QueryRegions
from loc_app.geometry.fundamental import fundamental_matrix_ransac
from loc_app.scene.data_structures import Landmark, MapData

logger = logging.getLogger(__name__)


class CorrespondenceKey(NamedTuple):
    """Value-type identity of a 3D-2D association."""

    landmark_id: int
    desc_type: str
    feature_index: int


# How many independent matching passes proposed each association.
OccurrenceMap = Dict[CorrespondenceKey, int]


@dataclass(frozen=True, eq=False)
class Correspondence:
    """A query keypoint associated with a map landmark."""

    landmark_id: int
    desc_type: str
    # Row of the keypoint in the query regions of `desc_type`.
    feature_index: int
    # (2,) pixel coordinates in the query image.
    point_2d: np.ndarray
    # (3,) landmark position in world coordinates.
    point_3d: np.ndarray
    # Descriptor distance of the match.
    distance: float

    @property
    def key(self) -> CorrespondenceKey:
        return CorrespondenceKey(self.landmark_id, self.desc_type, self.feature_index)


def _matchable(descriptors: np.ndarray) -> np.ndarray:
    # OpenCV matchers accept CV_8U (binary) or CV_32F descriptors.
    d = np.asarray(descriptors)
    if d.dtype == np.uint8:
        return np.ascontiguousarray(d)
    return np.ascontiguousarray(d, dtype=np.float32)


def _compatible(desc1: np.ndarray, desc2: np.ndarray) -> bool:
    binary1 = np.asarray(desc1).dtype == np.uint8
    binary2 = np.asarray(desc2).dtype == np.uint8
    return binary1 == binary2 and desc1.shape[1] == desc2.shape[1]


def match_keypoints(
    descriptors1: np.ndarray,
    descriptors2: np.ndarray,
    k: int = 2,
    use_flann: bool = False,
) -> List[List[cv2.DMatch]]:
    """
    Match keypoint descriptors between two sets using k-NN matching.

    Args:
        descriptors1: Query descriptors (N1, D).
        descriptors2: Train descriptors (N2, D).
        k: Number of neighbours per query descriptor.
        use_flann: If True, use the (approximate) FLANN matcher for float
                   descriptors; otherwise use the exact brute-force matcher
                   (L2 for float descriptors, HAMMING for binary ones).

    Returns:
        List of k-NN match candidates, one list of cv2.DMatch per query
        descriptor, sorted by increasing distance.
    """
    if len(descriptors1) == 0 or len(descriptors2) == 0:
        return []

    d1 = _matchable(descriptors1)
    d2 = _matchable(descriptors2)
    is_float = d1.dtype == np.float32

    if use_flann and is_float:
        FLANN_INDEX_KDTREE = 1
        index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
        search_params = dict(checks=50)
        matcher = cv2.FlannBasedMatcher(index_params, search_params)
    else:
        norm_type = cv2.NORM_L2 if is_float else cv2.NORM_HAMMING
        matcher = cv2.BFMatcher(norm_type, crossCheck=False)

    return matcher.knnMatch(d1, d2, k=min(int(k), len(d2)))


def filter_matches_ratio_test(
    pts1: np.ndarray,
    pts2: np.ndarray,
    knn_matches: List[List[cv2.DMatch]],
    ratio: float = 0.8,
) -> Tuple[np.ndarray, np.ndarray, List[cv2.DMatch]]:
    """
    Filter 2D-2D matches using Lowe's ratio test.

    Matches whose two nearest neighbours are equidistant are rejected.

    Args:
        pts1: Keypoints of the query set (N1, 2).
        pts2: Keypoints of the train set (N2, 2).
        knn_matches: List of k-NN match candidates (k >= 2).
        ratio: Ratio threshold.

    Returns:
        Tuple of (pts1, pts2, good_matches) where:
        - pts1: Array of matched points from the query set (M, 2).
        - pts2: Array of matched points from the train set (M, 2).
        - good_matches: List of filtered cv2.DMatch objects.
    """
    good_matches = []

    for match_pair in knn_matches:
        if len(match_pair) < 2:
            continue

        m, n = match_pair[0], match_pair[1]

        # Keep if distance ratio is below threshold (ties are ambiguous).
        if m.distance < ratio * n.distance and m.distance != n.distance:
            good_matches.append(m)

    if len(good_matches) == 0:
        return np.zeros((0, 2)), np.zeros((0, 2)), []

    out1 = np.array([pts1[m.queryIdx] for m in good_matches], dtype=np.float64)
    out2 = np.array([pts2[m.trainIdx] for m in good_matches], dtype=np.float64)
    return out1, out2, good_matches


class LandmarkIndex:
    """
    Descriptors of every landmark observation, stacked per describer type.

    Built once from the map and only read afterwards.
    """

    def __init__(self, map_data: MapData) -> None:
        rows: Dict[str, List[np.ndarray]] = defaultdict(list)
        owners: Dict[str, List[int]] = defaultdict(list)
        per_landmark: Dict[str, int] = defaultdict(int)
        self._xyz: Dict[int, np.ndarray] = {}

        for landmark_id in sorted(map_data.landmarks):
            landmark = map_data.landmarks[landmark_id]
            if not landmark.observations:
                continue
            self._xyz[landmark_id] = np.asarray(landmark.xyz, dtype=np.float64).reshape(3)
            for view_id in sorted(landmark.observations):
                rows[landmark.desc_type].append(
                    np.asarray(landmark.observations[view_id].descriptor).ravel()
                )
                owners[landmark.desc_type].append(landmark_id)
            per_landmark[landmark.desc_type] = max(
                per_landmark[landmark.desc_type], len(landmark.observations)
            )

        self._descriptors = {t: _matchable(np.vstack(r)) for t, r in rows.items()}
        self._owners = {t: np.asarray(o, dtype=np.int64) for t, o in owners.items()}
        self._max_per_landmark = dict(per_landmark)

    def __contains__(self, desc_type: str) -> bool:
        return desc_type in self._descriptors

    def __len__(self) -> int:
        return int(sum(len(d) for d in self._descriptors.values()))

    @property
    def desc_types(self) -> List[str]:
        return sorted(self._descriptors)

    def descriptors(self, desc_type: str) -> np.ndarray:
        return self._descriptors[desc_type]

    def owners(self, desc_type: str) -> np.ndarray:
        """Landmark id of every descriptor row."""
        return self._owners[desc_type]

    def max_descriptors_per_landmark(self, desc_type: str) -> int:
        return self._max_per_landmark[desc_type]

    def xyz(self, landmark_id: int) -> np.ndarray:
        return self._xyz[landmark_id]


def _two_nearest_landmarks(
    matches: Sequence[cv2.DMatch],
    owners: np.ndarray,
) -> Tuple[Optional[cv2.DMatch], Optional[cv2.DMatch]]:
    """Best match and the best match belonging to a different landmark."""
    if not matches:
        return None, None
    best = matches[0]
    best_owner = owners[best.trainIdx]
    for m in matches[1:]:
        if owners[m.trainIdx] != best_owner:
            return best, m
    return best, None


def match_to_landmarks(
    query: QueryRegions,
    index: LandmarkIndex,
    ratio: float,
) -> List[Correspondence]:
    """
    Associate query keypoints with landmarks through the ratio test.

    For every query descriptor the two nearest *distinct* landmarks are
    found; the nearest is kept only if its distance is below `ratio` times
    the second one. Equal distances, or a single candidate landmark, are
    treated as ambiguous and rejected.

    Args:
        query: Query regions per describer type.
        index: Landmark descriptor index of the map.
        ratio: Ratio-test threshold.

    Returns:
        Correspondences, ordered by describer type then query feature index.
    """
    correspondences: List[Correspondence] = []

    for desc_type in sorted(query):
        regions = query[desc_type]
        if desc_type not in index or len(regions) == 0:
            continue
        db = index.descriptors(desc_type)
        if not _compatible(regions.descriptors, db):
            logger.warning("[match] Incompatible %s descriptors between query and map", desc_type)
            continue

        owners = index.owners(desc_type)
        k = index.max_descriptors_per_landmark(desc_type) + 1
        knn_matches = match_keypoints(regions.descriptors, db, k=k)

        n_ratio = 0
        for matches in knn_matches:
            best, second = _two_nearest_landmarks(matches, owners)
            if best is None or second is None:
                continue
            if best.distance == second.distance or not best.distance < ratio * second.distance:
                continue
            n_ratio += 1
            landmark_id = int(owners[best.trainIdx])
            correspondences.append(
                Correspondence(
                    landmark_id=landmark_id,
                    desc_type=desc_type,
                    feature_index=int(best.queryIdx),
                    point_2d=np.asarray(regions.keypoints[best.queryIdx], dtype=np.float64),
                    point_3d=index.xyz(landmark_id),
                    distance=float(best.distance),
                )
            )

        logger.debug(
            "[match] %s: %d query features, %d after ratio test",
            desc_type,
            len(regions),
            n_ratio,
        )

    return correspondences


@dataclass(frozen=True, eq=False)
class ViewFeatures:
    """Map features of one view and one describer type."""

    view_id: int
    desc_type: str
    keypoints: np.ndarray
    descriptors: np.ndarray
    # Landmark observed by every feature row.
    landmark_ids: np.ndarray

    def __len__(self) -> int:
        return int(len(self.keypoints))


def build_view_features(map_data: MapData) -> Dict[int, Dict[str, ViewFeatures]]:
    """Regroup landmark observations into per-view feature sets."""
    grouped: Dict[int, Dict[str, List[Tuple[int, np.ndarray, np.ndarray]]]] = defaultdict(
        lambda: defaultdict(list)
    )
    for landmark_id in sorted(map_data.landmarks):
        landmark = map_data.landmarks[landmark_id]
        for view_id, obs in landmark.observations.items():
            grouped[view_id][landmark.desc_type].append((landmark_id, obs.uv, obs.descriptor))

    features: Dict[int, Dict[str, ViewFeatures]] = {}
    for view_id in sorted(grouped):
        features[view_id] = {}
        for desc_type, items in grouped[view_id].items():
            features[view_id][desc_type] = ViewFeatures(
                view_id=view_id,
                desc_type=desc_type,
                keypoints=np.array([uv for _, uv, _ in items], dtype=np.float64).reshape(-1, 2),
                descriptors=_matchable(np.vstack([np.ravel(d) for _, _, d in items])),
                landmark_ids=np.array([lid for lid, _, _ in items], dtype=np.int64),
            )
    return features


def match_to_views(
    query: QueryRegions,
    view_features: Mapping[int, Mapping[str, ViewFeatures]],
    landmarks: Mapping[int, Landmark],
    params: ViewMatchParameters,
) -> Tuple[List[Correspondence], OccurrenceMap]:
    """
    Associate query keypoints with landmarks through per-view matching passes.

    Each view is matched independently (ratio test); the views with the most
    putative matches are geometrically verified with a fundamental matrix,
    and every verified match proposes the landmark seen by the view feature.

    Args:
        query: Query regions per describer type.
        view_features: Output of build_view_features.
        landmarks: Map landmarks, for 3D positions.
        params: Matching parameters.

    Returns:
        Tuple of (correspondences, occurrences) where correspondences are the
        unique proposed associations (sorted by key) and occurrences counts
        the passes proposing each of them.
    """
    putative: Dict[int, List[Tuple[str, List[cv2.DMatch]]]] = {}
    counts: Dict[int, int] = {}

    for view_id, per_type in view_features.items():
        passes = []
        total = 0
        for desc_type, feats in per_type.items():
            regions = query.get(desc_type)
            if regions is None or len(regions) == 0 or len(feats) < 2:
                continue
            if not _compatible(regions.descriptors, feats.descriptors):
                continue
            knn_matches = match_keypoints(regions.descriptors, feats.descriptors, k=2)
            _, _, good = filter_matches_ratio_test(
                regions.keypoints, feats.keypoints, knn_matches, ratio=params.dist_ratio
            )
            passes.append((desc_type, good))
            total += len(good)
        putative[view_id] = passes
        counts[view_id] = total

    ranked = sorted(counts, key=lambda v: (-counts[v], v))[: params.num_candidate_views]

    occurrences: OccurrenceMap = defaultdict(int)
    distances: Dict[CorrespondenceKey, float] = {}

    for view_id in ranked:
        if counts[view_id] < params.min_view_matches:
            continue

        rows = []
        for desc_type, good in putative[view_id]:
            feats = view_features[view_id][desc_type]
            regions = query[desc_type]
            for m in good:
                rows.append((desc_type, m, regions.keypoints[m.queryIdx], feats.keypoints[m.trainIdx]))

        pts_query = np.array([r[2] for r in rows], dtype=np.float64)
        pts_view = np.array([r[3] for r in rows], dtype=np.float64)
        _, inlier_mask = fundamental_matrix_ransac(
            pts_query,
            pts_view,
            reproj_threshold=params.matching_error_max,
            confidence=params.confidence,
            estimator=params.matching_estimator,
            max_iters=params.max_iterations,
        )
        n_verified = int(np.sum(inlier_mask))
        logger.debug(
            "[match] view %d: %d putative, %d geometrically verified",
            view_id,
            len(rows),
            n_verified,
        )
        if n_verified < params.min_view_matches:
            continue

        for (desc_type, m, _, _), is_inlier in zip(rows, inlier_mask):
            if not is_inlier:
                continue
            landmark_id = int(view_features[view_id][desc_type].landmark_ids[m.trainIdx])
            key = CorrespondenceKey(landmark_id, desc_type, int(m.queryIdx))
            occurrences[key] += 1
            distances[key] = min(distances.get(key, float(m.distance)), float(m.distance))

    correspondences = [
        Correspondence(
            landmark_id=key.landmark_id,
            desc_type=key.desc_type,
            feature_index=key.feature_index,
            point_2d=np.asarray(query[key.desc_type].keypoints[key.feature_index], dtype=np.float64),
            point_3d=np.asarray(landmarks[key.landmark_id].xyz, dtype=np.float64).reshape(3),
            distance=distances[key],
        )
        for key in sorted(occurrences)
    ]
    return correspondences, dict(occurrences)


def occurrence_weights(
    correspondences: Sequence[Correspondence],
    occurrences: Optional[OccurrenceMap],
) -> Optional[np.ndarray]:
    """Sampling weights aligned with `correspondences`, or None if uniform."""
    if not occurrences:
        return None
    weights = np.array([occurrences.get(c.key, 1) for c in correspondences], dtype=np.float64)
    if np.all(weights == weights[0]):
        return None
    return weights


__all__ = [
    "CorrespondenceKey",
    "OccurrenceMap",
    "Correspondence",
    "match_keypoints",
    "filter_matches_ratio_test",
    "LandmarkIndex",
    "match_to_landmarks",
    "ViewFeatures",
    "build_view_features",
    "match_to_views",
    "occurrence_weights",
]
