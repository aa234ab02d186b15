"""
Motion estimation strategies.

Every strategy implements ``estimate_motion(frame, reference, initial_guess)``
and returns a ``MotionEstimate`` whose transform maps current-frame
coordinates into the reference frame.
"""
from typing import Dict

from .base import BaseMotionEstimator, MotionEstimate
from .feature_model import FeatureModel
from .icp import ICPEstimator
from .icp_model import CovarianceICPEstimator
from .icp_prob_model import ProbabilisticModelEstimator
from .particle_loop import ParticleLoopEstimator
from .ransac import RansacEstimator, RansacModelEstimator

STRATEGIES = {
    cls.name: cls
    for cls in (
        ICPEstimator,
        CovarianceICPEstimator,
        ProbabilisticModelEstimator,
        RansacEstimator,
        RansacModelEstimator,
        ParticleLoopEstimator,
    )
}


def create_estimator(name: str, config: Dict = None) -> BaseMotionEstimator:
    """
    Create a motion estimator by strategy name.

    Args:
        name: One of 'icp', 'icp_model', 'icp_prob_model', 'ransac',
            'ransac_model' or 'particle_loop'
        config: Strategy configuration

    Returns:
        Motion estimator instance
    """
    if name not in STRATEGIES:
        raise ValueError(f"Unknown registration strategy: {name}")
    return STRATEGIES[name](config)


__all__ = [
    "BaseMotionEstimator",
    "MotionEstimate",
    "FeatureModel",
    "ICPEstimator",
    "CovarianceICPEstimator",
    "ProbabilisticModelEstimator",
    "RansacEstimator",
    "RansacModelEstimator",
    "ParticleLoopEstimator",
    "STRATEGIES",
    "create_estimator",
]
