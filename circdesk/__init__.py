"""Library circulation desk: loans, fines and clearance for students and faculty."""

__version__ = "1.0.0"
