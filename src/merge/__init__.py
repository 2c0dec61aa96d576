"""
Merge execution for PatientMatch.
"""
