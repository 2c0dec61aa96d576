"""
Ingestion checks for PatientMatch.
"""
