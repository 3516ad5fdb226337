"""
OM Trajectories - Oral Mucositis Severity Trajectory Analysis

This package groups patients by the shape of their longitudinal oral
mucositis (OM) severity scores.

Main modules:
- data: Validated loading of the symptom and clinical tables
- features: Time-grid interpolation and missing-aware distances
- models: Gap-statistic cluster selection and Ward clustering
- pipeline: End-to-end trajectory clustering
"""

__version__ = "0.1.0"
__author__ = "OM Trajectories Team"
