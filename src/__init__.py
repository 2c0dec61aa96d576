"""
PatientMatch - Master Patient Index Matching and Merge Engine

Resolves duplicate patient identity records created across intake channels,
drives human review of candidate pairs, executes transactional merges and
reconciles field-level conflicts between external sources and local records.
"""

__version__ = "1.0.0"
__author__ = "PatientMatch Team"
