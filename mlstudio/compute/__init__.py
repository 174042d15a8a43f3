"""Compute targets and their runtime node pools"""

from .cluster import ComputeCluster
from .target import AmlCompute, ComputeTarget, ProvisioningConfiguration, LOCAL_COMPUTE_NAME

__all__ = [
    "AmlCompute",
    "ComputeCluster",
    "ComputeTarget",
    "ProvisioningConfiguration",
    "LOCAL_COMPUTE_NAME",
]
