"""
Human review workflow for PatientMatch match candidates.
"""
