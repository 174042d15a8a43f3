"""Registered tabular datasets"""

from .dataset import Dataset, TabularDataset, DatasetConsumptionConfig

__all__ = ["Dataset", "TabularDataset", "DatasetConsumptionConfig"]
