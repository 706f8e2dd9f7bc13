"""
Mutual-information cost between lidar reflectance and image intensity.
"""

from lidarcalib.mi.cost import MutualInformationCost, entropy, evaluate_cost, mutual_information
from lidarcalib.mi.density import ProbabilityDistribution, estimate_density, silverman_bandwidth
from lidarcalib.mi.histogram import Histogram, build_histogram, quantize

__all__ = [
    "Histogram",
    "MutualInformationCost",
    "ProbabilityDistribution",
    "build_histogram",
    "entropy",
    "estimate_density",
    "evaluate_cost",
    "mutual_information",
    "quantize",
    "silverman_bandwidth",
]
