"""LabCare: encounter workflow core for diagnostic laboratory visits."""

__version__ = "0.1.0"
