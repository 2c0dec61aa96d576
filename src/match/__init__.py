"""
Matching engine for PatientMatch.

Field-level similarity and weighted candidate scoring for patient
duplicate detection.
"""
