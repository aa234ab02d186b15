"""
Configuration defaults and loading.

Components take plain nested dictionaries. ``merge_config`` lays user
overrides over ``DEFAULT_CONFIG`` and rejects keys it does not know, so a
typo in a configuration file fails loudly instead of being ignored.
"""
import copy
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

_ICP = {
    "max_iterations": 30,
    "convergence_threshold": 1e-6,
    "distance_threshold": 0.15,
    "min_correspondences": 10,
    "max_condition_number": 1e8,
}

_ICP_MODEL = dict(
    _ICP,
    mahalanobis_gate=11.345,
    coarse_iterations=3,
    num_candidates=5,
    model_window=5,
)

_RANSAC = {
    "max_iterations": 200,
    "inlier_threshold": 0.03,
    "min_inliers": 6,
    "min_correspondences": 10,
    "refine_iterations": 10,
    "matching": "mutual",
    "ratio_threshold": 0.8,
    "max_descriptor_distance": float("inf"),
    "seed": 0,
}

DEFAULT_CONFIG: Dict[str, Any] = {
    "frame": {
        "max_range": 5.5,
        "max_stdev": 0.03,
        "depth_model": "mixture",
        "pixel_stdev": 1.0,
        "agreement_sigmas": 3.0,
    },
    "features": {
        "detector": "ORB",
        "max_features": 1000,
        "smooth": 0,
    },
    "registration": {
        "type": "icp_prob_model",
        "failure_policy": "identity",
    },
    "icp": dict(_ICP),
    "icp_model": dict(_ICP_MODEL),
    "icp_prob_model": dict(_ICP_MODEL, max_model_size=3000, max_age=20),
    "ransac": dict(_RANSAC),
    "ransac_model": dict(_RANSAC, max_model_size=3000, max_age=20, distance_threshold=0.15),
    "keyframe": {
        "kf_dist_eps": 0.10,
        "kf_angle_eps": 10.0,
        "kf_min_overlap": 0.5,
        "promotion_metric": "displacement",
    },
    "loop_closure": {
        "enabled": True,
        "background": True,
        "scan_interval": 5,
        "max_candidate_distance": 1.0,
        "max_candidate_angle": 45.0,
        "min_graph_distance": 3,
        "max_candidates": 3,
        "min_fitness_inliers": 15,
        "particle_loop": {
            "num_particles": 100,
            "num_rounds": 15,
            "translation_noise": 0.05,
            "rotation_noise": 0.05,
            "annealing": 0.7,
            "truncation_distance": 0.1,
            "inlier_threshold": 0.05,
            "min_inlier_ratio": 0.3,
            "use_ransac_seed": True,
            "min_correspondences": 10,
            "max_iterations": 30,
            "seed": 0,
            "icp": dict(_ICP, distance_threshold=0.1),
            "ransac": dict(_RANSAC, inlier_threshold=0.05),
        },
        "solver": {
            "min_translation": 1e-3,
            "min_rotation": 1e-3,
        },
    },
}


def merge_config(
    overrides: Optional[Dict[str, Any]] = None, base: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """
    Deep-merge configuration overrides into the defaults.

    Args:
        overrides: Nested dictionary of values to change
        base: Configuration to merge into (``DEFAULT_CONFIG`` by default)

    Returns:
        A new configuration dictionary

    Raises:
        ValueError: If an override names an unknown key or replaces a
            section with a plain value
    """
    result = copy.deepcopy(base if base is not None else DEFAULT_CONFIG)
    if overrides:
        _merge_into(result, overrides, "")
    return result


def _merge_into(target: Dict[str, Any], overrides: Dict[str, Any], prefix: str):
    if not isinstance(overrides, dict):
        raise ValueError(f"Configuration section '{prefix or '<root>'}' must be a mapping")

    for key, value in overrides.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if key not in target:
            raise ValueError(f"Unknown configuration key: {path}")

        if isinstance(target[key], dict):
            _merge_into(target[key], value, path)
        elif isinstance(value, dict):
            raise ValueError(f"Configuration key '{path}' does not take a mapping")
        else:
            target[key] = value


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """
    Load a YAML configuration file and merge it into the defaults.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the file holds unknown keys
    """
    with open(path, "r") as f:
        overrides = yaml.safe_load(f)
    return merge_config(overrides or {})
