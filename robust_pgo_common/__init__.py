"""Common utilities shared by the robust back-end and its drivers.

This package hosts modules that are independent of the outlier-rejection
pipeline (KPI logging, stage timing, trajectory metrics, plotting).
"""
