"""
Service interface for PatientMatch.
"""
