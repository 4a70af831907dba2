"""Qualitative entry clusters over {pain level, time of day, symptom set}."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import pdist

from config import EngineSettings, resolve
from constants import (
    CLUSTER_DOMINANT_SYMPTOM_SHARE,
    CLUSTER_DOMINANT_TIME_SHARE,
    MIN_SAMPLES,
    PAIN_BANDS,
    TIME_OF_DAY_ORDER,
)
from entries import as_frame
from models import Cluster, slugify, tier_for

log = logging.getLogger("analytics.clustering")

TOD_PLURAL = {"morning": "mornings", "afternoon": "afternoons", "evening": "evenings", "night": "nights"}


def profile_distance(a: Tuple[float, int, frozenset], b: Tuple[float, int, frozenset]) -> float:
    """Pain gap (0-1) + circular time-of-day gap (0-1) + symptom Jaccard distance (0-1)."""
    pain_gap = abs(a[0] - b[0]) / 10.0
    k = len(TIME_OF_DAY_ORDER)
    step = abs(a[1] - b[1])
    tod_gap = min(step, k - step) / (k // 2)
    union = a[2] | b[2]
    jaccard = 1.0 - len(a[2] & b[2]) / len(union) if union else 0.0
    return pain_gap + tod_gap + jaccard


def profile_distances(profiles: Sequence[Tuple[float, int, frozenset]]) -> np.ndarray:
    """Condensed `profile_distance` matrix for all pairs, in scipy `pdist` order."""
    m = len(profiles)
    k = len(TIME_OF_DAY_ORDER)
    pain_gap = pdist(np.array([[p[0] / 10.0] for p in profiles]), "cityblock")
    step = pdist(np.array([[float(p[1])] for p in profiles]), "cityblock")
    tod_gap = np.minimum(step, k - step) / (k // 2)

    vocab = sorted(set().union(*(p[2] for p in profiles)))
    if not vocab:
        return pain_gap + tod_gap
    col = {s: i for i, s in enumerate(vocab)}
    symptoms = np.zeros((m, len(vocab)), dtype=bool)
    for i, p in enumerate(profiles):
        symptoms[i, [col[s] for s in p[2]]] = True
    # two empty symptom sets are identical, not undefined
    jaccard = np.nan_to_num(pdist(symptoms, "jaccard"), nan=0.0)
    return pain_gap + tod_gap + jaccard


def _pain_band(mean_pain: float) -> str:
    for upper, label in PAIN_BANDS:
        if mean_pain < upper:
            return label
    return PAIN_BANDS[-1][1]


def _label(members: pd.DataFrame) -> Tuple[str, Optional[str], Tuple[str, ...]]:
    size = len(members)
    band = _pain_band(float(members["pain"].mean()))

    tod_counts = members["tod"].value_counts()
    top_tod = tod_counts.index[0]
    dominant_tod = top_tod if tod_counts.iloc[0] / size >= CLUSTER_DOMINANT_TIME_SHARE else None

    symptom_counts = Counter(s for syms in members["symptoms"] for s in syms)
    dominant_symptoms = tuple(
        sorted(s for s, c in symptom_counts.items() if c / size >= CLUSTER_DOMINANT_SYMPTOM_SHARE)
    )

    label = f"{band} {TOD_PLURAL[dominant_tod]}" if dominant_tod else f"{band} entries"
    if dominant_symptoms:
        label += " with " + " and ".join(dominant_symptoms)
    return label, dominant_tod, dominant_symptoms


def cluster_entries(entries: Any, settings: Optional[EngineSettings] = None) -> List[Cluster]:
    """Average-linkage hierarchical clustering over unique entry profiles.

    Clusters are named by their dominant characteristics; clusters that end
    up with the same name are merged, and clusters under MIN_SAMPLES
    entries are dropped.
    """
    cfg = resolve(settings)
    df = as_frame(entries)
    n = len(df)
    if n < MIN_SAMPLES:
        return []

    tod_index = {t: i for i, t in enumerate(TIME_OF_DAY_ORDER)}
    keys = [
        (float(p), tod_index[t], frozenset(s))
        for p, t, s in zip(df["pain"], df["tod"], df["symptoms"])
    ]
    profiles = sorted(set(keys), key=lambda k: (k[0], k[1], tuple(sorted(k[2]))))
    index_of = {k: i for i, k in enumerate(profiles)}

    if len(profiles) == 1:
        assignment = np.ones(len(profiles), dtype=int)
    else:
        tree = linkage(profile_distances(profiles), method="average")
        assignment = fcluster(tree, t=min(cfg.cluster_max_count, len(profiles)), criterion="maxclust")

    row_cluster = np.array([assignment[index_of[k]] for k in keys])
    groups: Dict[str, Dict[str, Any]] = {}
    for cid in sorted(set(row_cluster.tolist())):
        members = df[row_cluster == cid]
        label = _label(members)[0]
        if label in groups:
            groups[label]["rows"] = groups[label]["rows"] | (row_cluster == cid)
        else:
            groups[label] = {"rows": row_cluster == cid}

    out: List[Cluster] = []
    for label, g in groups.items():
        members = df[g["rows"]]
        size = len(members)
        if size < MIN_SAMPLES:
            continue
        # merged groups are re-described from their combined members
        _, tod, symptoms = _label(members)
        out.append(
            Cluster(
                id=f"cluster:{slugify(label)}",
                label=label,
                size=size,
                share=round(size / n, 4),
                mean_pain=round(float(members["pain"].mean()), 3),
                dominant_time_of_day=tod,
                dominant_symptoms=symptoms,
                sample_count=size,
                tier=tier_for(size),
            )
        )
    out.sort(key=lambda c: (-c.size, c.id))
    log.info("   Clustering: %d clusters from %d unique profiles", len(out), len(profiles))
    return out
